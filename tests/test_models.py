"""Tests for data models."""

import pytest
from datetime import datetime, timedelta

import pytz

from fieldsync.models import (
    Appointment, AppointmentSyncResult, IntegrationConfig, Quote, SyncAction, SyncAllReport,
    SystemSide, parse_timestamp
)


class TestAppointment:
    """Tests for Appointment model."""

    def test_create_basic_appointment(self):
        """Test creating a basic appointment."""
        start = datetime.now(pytz.UTC)
        end = start + timedelta(hours=1)

        appointment = Appointment(id=123, source=SystemSide.FSS, start=start, end=end, team_id=7)

        assert appointment.id == "123"
        assert appointment.team_id == "7"
        assert appointment.status == "scheduled"
        assert not appointment.is_cancelled

    def test_timezone_normalization(self):
        """Naive times are assumed UTC and offsets are converted to UTC."""
        appointment = Appointment(
            id="a1",
            source=SystemSide.CRM,
            start=datetime(2024, 3, 1, 9, 0),
            end="2024-03-01T11:00:00+01:00",
        )

        assert appointment.start.tzinfo is not None
        assert appointment.start == datetime(2024, 3, 1, 9, 0, tzinfo=pytz.UTC)
        assert appointment.end == datetime(2024, 3, 1, 10, 0, tzinfo=pytz.UTC)

    def test_end_must_follow_start(self):
        start = datetime(2024, 3, 1, 9, 0, tzinfo=pytz.UTC)
        with pytest.raises(ValueError):
            Appointment(id="a1", source=SystemSide.FSS, start=start, end=start)

    def test_content_hash_ignores_platform_placement(self):
        """The same booking hashes identically on both platforms."""
        start = datetime(2024, 3, 1, 9, 0, tzinfo=pytz.UTC)
        end = start + timedelta(hours=2)
        fss = Appointment(id="f1", source=SystemSide.FSS, start=start, end=end, team_id="T1", title="Clean")
        crm = Appointment(id="c1", source=SystemSide.CRM, start=start, end=end, calendar_id="C1", title="Clean")

        assert fss.content_hash() == crm.content_hash()

        moved = fss.model_copy(update={'end': end + timedelta(minutes=30)})
        assert moved.content_hash() != fss.content_hash()

    def test_cancelled_spellings(self):
        start = datetime(2024, 3, 1, 9, 0, tzinfo=pytz.UTC)
        for status in ('cancelled', 'canceled'):
            appointment = Appointment(id="a", source=SystemSide.FSS, start=start,
                                      end=start + timedelta(hours=1), status=status)
            assert appointment.is_cancelled


class TestParseTimestamp:

    def test_epoch_milliseconds_and_seconds(self):
        expected = datetime(2024, 1, 1, tzinfo=pytz.UTC)
        assert parse_timestamp(1704067200000) == expected
        assert parse_timestamp(1704067200) == expected
        assert parse_timestamp("1704067200000") == expected

    def test_empty_values(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_unparseable(self):
        with pytest.raises(ValueError):
            parse_timestamp("not a date")
        with pytest.raises(ValueError):
            parse_timestamp(["2024-01-01"])


class TestQuote:

    def test_hash_tracks_fields(self):
        quote = Quote(id=10, fields={'QuoteId': 10, 'Email': 'a@example.com'})
        changed = Quote(id=10, fields={'QuoteId': 10, 'Email': 'b@example.com'})

        assert quote.id == "10"
        assert quote.content_hash() == Quote(id="10", fields={'Email': 'a@example.com', 'QuoteId': 10}).content_hash()
        assert quote.content_hash() != changed.content_hash()


class TestIntegrationConfig:

    def test_poll_due_at(self):
        config = IntegrationConfig(location_id="L1", quote_polling_interval=15, last_quote_poll_at=1_000_000)
        assert config.quote_poll_due_at() == 1_000_000 + 15 * 60000

    def test_tags_are_cleaned(self):
        config = IntegrationConfig(location_id="L1", crm_tags=[" quote ", "", "lead"])
        assert config.crm_tags == ["quote", "lead"]

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            IntegrationConfig(location_id="L1", quote_polling_interval=0)


class TestSyncAllReport:
    """Tests for SyncAllReport counting."""

    def test_counts(self):
        report = SyncAllReport(location_id="L1")
        report.add(AppointmentSyncResult(success=True, action=SyncAction.CREATED))
        report.add(AppointmentSyncResult(success=True, action=SyncAction.LINKED))
        report.add(AppointmentSyncResult(success=True, action=SyncAction.UNCHANGED))
        report.add(AppointmentSyncResult(success=True, action=SyncAction.SKIPPED_CONFLICT))
        report.add(AppointmentSyncResult(success=False, action=SyncAction.FAILED))

        assert report.synced == 2
        assert report.skipped == 2
        assert report.errors == 1
        assert report.total_operations == 5
