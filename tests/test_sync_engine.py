"""Tests for the appointment sync engine."""

import pytest
from datetime import datetime, timedelta

import pytz

from fieldsync.errors import InvalidTimeRange, MissingIdentifier
from fieldsync.models import ConflictPolicy, SyncAction, SyncErrorCode, SyncState, SystemSide, now_ms
from fieldsync.sync_engine import AppointmentSyncEngine, as_observed, find_duplicate, has_changed

from conftest import future, make_appointment


def fss_appointment(appointment_id, team_id='T1', start=None, hours=1, **kwargs):
    return make_appointment(SystemSide.FSS, appointment_id, start or future(), hours, team_id=team_id, **kwargs)


def crm_appointment(appointment_id, calendar_id='C1', start=None, hours=1, **kwargs):
    return make_appointment(SystemSide.CRM, appointment_id, start or future(), hours, calendar_id=calendar_id, **kwargs)


@pytest.fixture
def engine(settings, db, fss, crm, team_calendars, location):
    return AppointmentSyncEngine(settings, db, fss, crm, team_calendars)


def set_policy(db, policy):
    with db.get_session() as session:
        db.upsert_integration_config(session, 'L1', appointment_conflict_resolution=policy)


def record_for(engine, **ids):
    return engine._load_record(**ids)


class TestFssToCrm:

    async def test_creates_counterpart_on_mapped_calendar(self, engine, fss, crm):
        appointment = fss.add(fss_appointment('f1', email='pat@example.com', first_name='Pat'))

        result = await engine.sync_from_fss_to_crm(appointment, 'L1')

        assert result.success
        assert result.action == SyncAction.CREATED
        assert result.crm_appointment_id == 'crm-1'
        assert crm.appointments['crm-1'].calendar_id == 'C1'
        assert crm.contact_writes[0]['email'] == 'pat@example.com'

        record = record_for(engine, fss_appointment_id='f1')
        assert record.crm_appointment_id == 'crm-1'
        assert record.sync_state == SyncState.SYNCED
        assert record.fss_content_hash == record.crm_content_hash

    async def test_redelivery_is_idempotent(self, engine, fss, crm):
        """The same webhook delivered twice writes to the CRM once."""
        appointment = fss.add(fss_appointment('f1', last_modified=datetime.now(pytz.UTC)))

        first = await engine.sync_from_fss_to_crm(appointment, 'L1')
        second = await engine.sync_from_fss_to_crm(appointment, 'L1')

        assert first.action == SyncAction.CREATED
        assert second.action == SyncAction.UNCHANGED
        assert crm.writes == [('create', 'crm-1')]

    async def test_newer_change_updates_counterpart(self, engine, fss, crm):
        appointment = fss.add(fss_appointment('f1'))
        await engine.sync_from_fss_to_crm(appointment, 'L1')

        moved = appointment.model_copy(update={
            'end': appointment.end + timedelta(minutes=30),
            'last_modified': datetime.now(pytz.UTC) + timedelta(minutes=5),
        })
        result = await engine.sync_from_fss_to_crm(moved, 'L1')

        assert result.action == SyncAction.UPDATED
        assert crm.writes == [('create', 'crm-1'), ('update', 'crm-1')]
        assert crm.appointments['crm-1'].end == moved.end

    async def test_out_of_order_payload_is_ignored(self, engine, fss, crm):
        now = datetime.now(pytz.UTC)
        appointment = fss.add(fss_appointment('f1', last_modified=now))
        await engine.sync_from_fss_to_crm(appointment, 'L1')

        stale = appointment.model_copy(update={
            'title': 'Old title',
            'last_modified': now - timedelta(hours=1),
        })
        result = await engine.sync_from_fss_to_crm(stale, 'L1')

        assert result.action == SyncAction.UNCHANGED
        assert len(crm.writes) == 1

    async def test_accepts_raw_payload(self, engine, crm):
        start = future()
        payload = {
            'Id': 501,
            'TeamId': 'T2',
            'StartTime': start.isoformat(),
            'EndTime': (start + timedelta(hours=2)).isoformat(),
            'Status': 'Scheduled',
        }

        result = await engine.sync_from_fss_to_crm(payload, 'L1')

        assert result.action == SyncAction.CREATED
        assert result.fss_appointment_id == '501'
        assert crm.appointments[result.crm_appointment_id].calendar_id == 'C2'

    async def test_malformed_input_raises(self, engine):
        start = future()
        with pytest.raises(MissingIdentifier):
            await engine.sync_from_fss_to_crm({'StartTime': start.isoformat()}, 'L1')
        with pytest.raises(InvalidTimeRange):
            await engine.sync_from_fss_to_crm(
                {'Id': 1, 'StartTime': start.isoformat(), 'EndTime': (start - timedelta(hours=1)).isoformat()},
                'L1'
            )
        with pytest.raises(MissingIdentifier):
            await engine.sync_from_fss_to_crm(fss_appointment('f1'), '')

    async def test_unmapped_team_reports_mapping_missing(self, engine, crm):
        result = await engine.sync_from_fss_to_crm(fss_appointment('f1', team_id='T9'), 'L1')

        assert not result.success
        assert result.error_code == SyncErrorCode.TEAM_MAPPING_MISSING
        assert crm.writes == []

    async def test_disabled_mapping_is_not_routed(self, engine, team_calendars, crm):
        team_calendars.set_enabled('L1', 'T1', False)

        result = await engine.sync_from_fss_to_crm(fss_appointment('f1'), 'L1')

        assert result.error_code == SyncErrorCode.TEAM_MAPPING_MISSING
        assert crm.writes == []

    async def test_no_team_uses_default_calendar(self, engine, crm):
        result = await engine.sync_from_fss_to_crm(fss_appointment('f1', team_id=None), 'L1')

        assert result.action == SyncAction.CREATED
        assert crm.appointments[result.crm_appointment_id].calendar_id == 'C-default'

    async def test_disabled_integration_skips(self, engine, db, crm):
        with db.get_session() as session:
            db.upsert_integration_config(session, 'L1', enabled=False)

        result = await engine.sync_from_fss_to_crm(fss_appointment('f1'), 'L1')

        assert result.success
        assert result.action == SyncAction.SKIPPED
        assert result.reason == "Integration disabled"
        assert crm.writes == []

    async def test_failed_create_is_retried(self, engine, crm):
        """A failed remote create leaves an fss_only row that the next pass completes."""
        appointment = fss_appointment('f1')
        crm.fail_writes = True

        result = await engine.sync_from_fss_to_crm(appointment, 'L1')

        assert not result.success
        assert result.error_code == SyncErrorCode.REMOTE_WRITE_FAILED
        record = record_for(engine, fss_appointment_id='f1')
        assert record.sync_state == SyncState.FSS_ONLY
        assert record.crm_appointment_id is None

        crm.fail_writes = False
        result = await engine.sync_from_fss_to_crm(appointment, 'L1')

        assert result.action == SyncAction.CREATED
        assert record_for(engine, fss_appointment_id='f1').sync_state == SyncState.SYNCED

    async def test_new_cancelled_appointment_is_skipped(self, engine, crm):
        result = await engine.sync_from_fss_to_crm(fss_appointment('f1', status='cancelled'), 'L1')

        assert result.action == SyncAction.SKIPPED
        assert crm.writes == []

    async def test_cancellation_flows_as_status(self, engine, fss, crm):
        appointment = fss.add(fss_appointment('f1'))
        await engine.sync_from_fss_to_crm(appointment, 'L1')

        cancelled = appointment.model_copy(update={
            'status': 'cancelled',
            'last_modified': datetime.now(pytz.UTC) + timedelta(minutes=5),
        })
        result = await engine.sync_from_fss_to_crm(cancelled, 'L1')

        assert result.action == SyncAction.UPDATED
        assert crm.appointments['crm-1'].status == 'cancelled'
        assert record_for(engine, fss_appointment_id='f1').status == 'cancelled'


class TestConflicts:

    async def test_discarded_change_is_pushed_by_winning_direction(self, engine, db, fss, crm):
        appointment = fss.add(fss_appointment('f1'))
        await engine.sync_from_fss_to_crm(appointment, 'L1')
        set_policy(db, ConflictPolicy.CRM_WINS)

        changed = appointment.model_copy(update={
            'title': 'Changed in FSS',
            'last_modified': datetime.now(pytz.UTC) + timedelta(minutes=5),
        })
        result = await engine.sync_from_fss_to_crm(changed, 'L1')

        assert result.success
        assert result.action == SyncAction.SKIPPED_CONFLICT
        assert result.error_code == SyncErrorCode.STALE_CONFLICT_DISCARDED
        assert record_for(engine, fss_appointment_id='f1').sync_state == SyncState.CONFLICT_PENDING
        assert len(crm.writes) == 1

        # The CRM version has not changed, but the pending conflict forces it through
        result = await engine.sync_from_crm_to_fss(crm.appointments['crm-1'], 'L1')

        assert result.action == SyncAction.UPDATED
        assert fss.writes == [('update', 'f1')]
        assert fss.appointments['f1'].title == appointment.title
        assert record_for(engine, fss_appointment_id='f1').sync_state == SyncState.SYNCED

    async def test_both_sides_changed_in_full_pass(self, engine, db, fss, crm):
        appointment = fss.add(fss_appointment('f1'))
        await engine.sync_from_fss_to_crm(appointment, 'L1')

        later = datetime.now(pytz.UTC) + timedelta(minutes=10)
        fss.add(appointment.model_copy(update={'title': 'FSS edit', 'last_modified': later - timedelta(minutes=1)}))
        crm.add(crm.appointments['crm-1'].model_copy(update={'title': 'CRM edit', 'last_modified': later}))

        report = await engine.sync_all('L1')

        assert report.errors == 0
        assert report.synced == 1
        assert fss.writes == [('update', 'f1')]
        assert fss.appointments['f1'].title == 'CRM edit'

    async def test_fss_edit_without_timestamp_wins_over_stored_crm_time(self, engine, fss, crm):
        start = future(hour=9)
        appointment = fss.add(fss_appointment('f1', start=start))
        await engine.sync_from_fss_to_crm(appointment, 'L1')
        assert record_for(engine, fss_appointment_id='f1').crm_last_modified is not None

        moved = appointment.model_copy(update={
            'start': start + timedelta(hours=2),
            'end': start + timedelta(hours=3),
        })
        result = await engine.sync_from_fss_to_crm(moved, 'L1')

        assert result.action == SyncAction.UPDATED
        assert crm.appointments['crm-1'].start == start + timedelta(hours=2)

        # The full pass must not revert the move from the CRM copy
        fss.add(moved)
        report = await engine.sync_all('L1')

        assert report.errors == 0
        assert fss.writes == []
        assert crm.appointments['crm-1'].start == start + timedelta(hours=2)

    async def test_full_pass_stamps_untimed_fss_side_when_both_changed(self, engine, fss, crm):
        start = future(hour=9)
        appointment = fss.add(fss_appointment('f1', start=start))
        await engine.sync_from_fss_to_crm(appointment, 'L1')
        # A pending conflict counts both sides as changed
        engine._store_record(
            'L1', fss_appointment_id='f1', crm_appointment_id='crm-1', sync_state=SyncState.CONFLICT_PENDING
        )

        fss.add(appointment.model_copy(update={'title': 'FSS edit'}))
        crm.add(crm.appointments['crm-1'].model_copy(update={
            'title': 'CRM edit',
            'last_modified': datetime.now(pytz.UTC) - timedelta(minutes=1),
        }))

        report = await engine.sync_all('L1')

        assert report.errors == 0
        assert crm.appointments['crm-1'].title == 'FSS edit'
        assert fss.writes == []


class TestCrmToFss:

    async def test_books_mapped_team(self, engine, fss):
        start = future()
        payload = {
            'id': 'c1',
            'calendarId': 'C1',
            'startTime': start.isoformat(),
            'endTime': (start + timedelta(hours=1)).isoformat(),
            'appointmentStatus': 'confirmed',
        }

        result = await engine.sync_from_crm_to_fss(payload, 'L1')

        assert result.action == SyncAction.CREATED
        created = fss.appointments[result.fss_appointment_id]
        assert created.team_id == 'T1'
        assert created.status == 'confirmed'

    async def test_busy_mapped_team_falls_back(self, engine, fss):
        start = future()
        fss.add(fss_appointment('busy', team_id='T1', start=start - timedelta(minutes=30)))

        result = await engine.sync_from_crm_to_fss(crm_appointment('c1', start=start), 'L1')

        assert result.action == SyncAction.CREATED
        assert fss.appointments[result.fss_appointment_id].team_id == 'T2'

    async def test_no_free_team_is_slot_unavailable(self, engine, fss):
        start = future()
        fss.add(fss_appointment('b1', team_id='T1', start=start))
        fss.add(fss_appointment('b2', team_id='T2', start=start))

        result = await engine.sync_from_crm_to_fss(crm_appointment('c1', start=start), 'L1')

        assert not result.success
        assert result.error_code == SyncErrorCode.SLOT_UNAVAILABLE
        assert fss.writes == []

    async def test_default_calendar_takes_first_free_team(self, engine, fss):
        result = await engine.sync_from_crm_to_fss(crm_appointment('c1', calendar_id='C-default'), 'L1')

        assert fss.appointments[result.fss_appointment_id].team_id == 'T1'

    async def test_unmapped_calendar(self, engine, fss):
        result = await engine.sync_from_crm_to_fss(crm_appointment('c1', calendar_id='C9'), 'L1')

        assert result.error_code == SyncErrorCode.TEAM_MAPPING_MISSING
        assert fss.writes == []

    async def test_reschedule_onto_busy_slot_is_refused(self, engine, fss, crm):
        start = future()
        original = crm.add(crm_appointment('c1', start=start))
        result = await engine.sync_from_crm_to_fss(original, 'L1')
        fss.add(fss_appointment('other', team_id='T1', start=start + timedelta(hours=3)))

        moved = original.model_copy(update={
            'start': start + timedelta(hours=3),
            'end': start + timedelta(hours=4),
            'last_modified': datetime.now(pytz.UTC) + timedelta(minutes=5),
        })
        result = await engine.sync_from_crm_to_fss(moved, 'L1')

        assert result.error_code == SyncErrorCode.SLOT_UNAVAILABLE
        assert fss.writes == [('create', 'fss-1')]


class TestSyncAll:

    async def test_second_pass_writes_nothing(self, engine, fss, crm):
        fss.add(fss_appointment('f1', start=future(hour=9)))
        crm.add(crm_appointment('c1', calendar_id='C2', start=future(hour=14)))

        first = await engine.sync_all('L1')
        writes = (list(fss.writes), list(crm.writes))
        second = await engine.sync_all('L1')

        assert first.synced == 2
        assert first.errors == 0
        assert second.synced == 0
        assert second.errors == 0
        assert all(r.action == SyncAction.UNCHANGED for r in second.results)
        assert (fss.writes, crm.writes) == writes

    async def test_one_failure_does_not_abort_batch(self, engine, fss, crm):
        for i, hour in enumerate((8, 11, 14), start=1):
            fss.add(fss_appointment(f"f{i}", start=future(hour=hour)))
        crm.fail_write_ids.add('f2')

        report = await engine.sync_all('L1')

        assert report.synced == 2
        assert report.errors == 1
        failed = [r for r in report.results if not r.success]
        assert failed[0].fss_appointment_id == 'f2'
        assert failed[0].error_code == SyncErrorCode.REMOTE_WRITE_FAILED

        crm.fail_write_ids.clear()
        report = await engine.sync_all('L1')

        assert report.synced == 1
        assert report.errors == 0
        assert record_for(engine, fss_appointment_id='f2').sync_state == SyncState.SYNCED

    async def test_listing_failure_is_reported(self, engine, fss, crm):
        fss.add(fss_appointment('f1'))
        fss.failing_owners.add('T2')

        report = await engine.sync_all('L1')

        codes = [r.error_code for r in report.results if not r.success]
        assert codes == [SyncErrorCode.REMOTE_READ_FAILED]
        assert report.synced == 1

    async def test_existing_duplicates_are_linked(self, engine, fss, crm):
        start = future()
        fss.add(fss_appointment('f1', start=start, email='Pat@Example.com'))
        crm.add(crm_appointment('c1', start=start + timedelta(minutes=2), email='pat@example.com'))

        report = await engine.sync_all('L1')

        assert [r.action for r in report.results] == [SyncAction.LINKED]
        assert fss.writes == [] and crm.writes == []
        assert record_for(engine, crm_appointment_id='c1').fss_appointment_id == 'f1'

    async def test_scans_enabled_teams_and_calendars(self, engine, fss, crm, team_calendars):
        team_calendars.set_enabled('L1', 'T2', False)

        await engine.sync_all('L1')

        assert fss.list_calls == ['T1']
        assert crm.list_calls == ['C1', 'C-default']

    async def test_skipped_location(self, engine, db, fss):
        with db.get_session() as session:
            db.upsert_integration_config(session, 'L1', sync_appointments=False)

        report = await engine.sync_all('L1')

        assert report.reason == "Appointment sync disabled"
        assert report.total_operations == 0
        assert fss.list_calls == []

    async def test_scheduled_sync_keeps_cadence_across_engines(self, engine, settings, db, fss, crm, team_calendars):
        fss.add(fss_appointment('f1'))
        now = now_ms()

        first = await engine.sync_due_locations(now)

        assert [r.location_id for r in first] == ['L1']
        assert first[0].synced == 1

        # A restarted scheduler reads the schedule from the store
        restarted = AppointmentSyncEngine(settings, db, fss, crm, team_calendars)
        assert await restarted.sync_due_locations(now + 60000) == []

        later = await restarted.sync_due_locations(now + 15 * 60000)
        assert [r.location_id for r in later] == ['L1']
        assert later[0].synced == 0

    async def test_scheduled_sync_skips_disabled_locations(self, engine, db, fss):
        with db.get_session() as session:
            db.upsert_integration_config(session, 'L1', sync_appointments=False)

        assert await engine.sync_due_locations(now_ms()) == []
        assert fss.list_calls == []

    async def test_status(self, engine, fss):
        fss.add(fss_appointment('f1'))
        await engine.sync_all('L1')

        status = engine.get_sync_status('L1')

        assert status['total_appointments'] == 1
        assert status['by_state']['synced'] == 1
        assert status['enabled_team_mappings'] == 2


class TestHelpers:

    def test_has_changed(self):
        now = datetime.now(pytz.UTC)
        appointment = fss_appointment('f1', last_modified=now)

        assert not has_changed(appointment, now - timedelta(hours=1), appointment.content_hash())
        assert has_changed(appointment, now - timedelta(hours=1), 'other')
        assert not has_changed(appointment, now, 'other')
        assert has_changed(appointment, None, None)

    def test_as_observed_only_stamps_missing_times(self):
        now = datetime.now(pytz.UTC)
        stamped = fss_appointment('f1', last_modified=now - timedelta(days=1))

        assert as_observed(stamped, now) is stamped
        assert as_observed(fss_appointment('f2'), now).last_modified == now
        assert as_observed(fss_appointment('f3')).last_modified is not None

    def test_find_duplicate_by_phone(self):
        start = future()
        appointment = fss_appointment('f1', start=start, phone='(555) 123-4567')
        far = crm_appointment('c1', start=start + timedelta(minutes=30), phone='555-123-4567')
        near = crm_appointment('c2', start=start + timedelta(minutes=4), phone='5551234567')

        assert find_duplicate(appointment, [far, near]).id == 'c2'
        assert find_duplicate(fss_appointment('f2', start=start), [near]) is None
