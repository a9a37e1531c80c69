"""Tests for conflict resolution."""

from datetime import timedelta

from fieldsync.conflict_resolver import ConflictResolver, resolve
from fieldsync.models import ConflictPolicy, SystemSide

from conftest import make_appointment, utc


def versions(fss_modified, crm_modified):
    start = utc(2024, 3, 1, 9)
    fss = make_appointment(SystemSide.FSS, 'f1', start, last_modified=fss_modified)
    crm = make_appointment(SystemSide.CRM, 'c1', start, last_modified=crm_modified)
    return fss, crm


def test_fixed_policies_ignore_timestamps():
    fss, crm = versions(utc(2024, 1, 1), utc(2024, 2, 1))

    assert resolve(fss, crm, ConflictPolicy.FSS_WINS).winner == SystemSide.FSS
    assert resolve(fss, crm, ConflictPolicy.CRM_WINS).winner == SystemSide.CRM


def test_timestamp_policy_picks_newer():
    t = utc(2024, 3, 1, 12)

    fss, crm = versions(t + timedelta(seconds=1), t)
    resolution = resolve(fss, crm, ConflictPolicy.TIMESTAMP)
    assert resolution.winner == SystemSide.FSS
    assert resolution.record is fss

    fss, crm = versions(t, t + timedelta(seconds=1))
    assert resolve(fss, crm, ConflictPolicy.TIMESTAMP).winner == SystemSide.CRM


def test_equal_timestamps_go_to_crm():
    t = utc(2024, 3, 1, 12)
    fss, crm = versions(t, t)

    resolution = resolve(fss, crm, ConflictPolicy.TIMESTAMP)

    assert resolution.winner == SystemSide.CRM
    assert 'tiebreaker' in resolution.reason


def test_missing_timestamp_is_older():
    t = utc(2024, 3, 1, 12)

    fss, crm = versions(None, t)
    assert resolve(fss, crm, ConflictPolicy.TIMESTAMP).winner == SystemSide.CRM

    fss, crm = versions(t, None)
    assert resolve(fss, crm, ConflictPolicy.TIMESTAMP).winner == SystemSide.FSS

    fss, crm = versions(None, None)
    assert resolve(fss, crm, ConflictPolicy.TIMESTAMP).winner == SystemSide.CRM


def test_accepts_plain_dicts_and_policy_values():
    resolver = ConflictResolver('timestamp')

    resolution = resolver.resolve({'last_modified': utc(2024, 3, 2)}, {'last_modified': utc(2024, 3, 1)})

    assert resolution.winner == SystemSide.FSS
    assert resolver.policy == ConflictPolicy.TIMESTAMP
