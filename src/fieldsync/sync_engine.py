"""Appointment reconciliation engine between the FSS and the CRM."""

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytz

from .availability import AvailabilityChecker
from .config import Settings
from .conflict_resolver import ConflictResolver
from .database import DatabaseManager
from .errors import (
    FieldSyncError, MissingIdentifier, SlotUnavailable, StaleConflictDiscarded, TeamMappingMissing
)
from .mappers import appointment_contact_fields, crm_appointment_from_payload, fss_appointment_from_payload
from .models import (
    Appointment, AppointmentSyncRecord, AppointmentSyncResult, IntegrationConfig, SyncAction,
    SyncAllReport, SyncDirection, SyncErrorCode, SyncState, SystemSide, now_ms
)
from .services.base import BaseGateway, GatewayError, NotFoundError
from .team_calendars import TeamCalendarManager

logger = logging.getLogger(__name__)

# Start times this close together with a matching contact are the same booking
DUPLICATE_WINDOW_MINUTES = 5


def _digits(value: Optional[str]) -> str:
    return re.sub(r'\D', '', value or '')


def find_duplicate(
    appointment: Appointment,
    candidates: Iterable[Appointment],
    window_minutes: int = DUPLICATE_WINDOW_MINUTES
) -> Optional[Appointment]:
    """Find an uncorrelated counterpart booked for the same customer at the same time.

    Matches on email (case-insensitive) or phone digits, with start times no
    more than ``window_minutes`` apart.
    """
    window = timedelta(minutes=window_minutes)
    email = (appointment.email or '').strip().lower()
    phone = _digits(appointment.phone)

    for candidate in candidates:
        if abs(candidate.start - appointment.start) > window:
            continue
        if email and email == (candidate.email or '').strip().lower():
            return candidate
        if phone and phone == _digits(candidate.phone):
            return candidate
    return None


def has_changed(appointment: Appointment, stored_modified: Optional[datetime], stored_hash: Optional[str]) -> bool:
    """Staleness gate for one side of a correlation.

    Identical scheduling content is never a change. Otherwise, with timestamps
    on both the payload and the record, only a strictly newer payload counts
    (older payloads are out-of-order deliveries); without them any content
    difference counts.
    """
    if stored_hash is not None and appointment.content_hash() == stored_hash:
        return False
    if appointment.last_modified is not None and stored_modified is not None:
        return appointment.last_modified > stored_modified
    return True


def as_observed(appointment: Appointment, now: Optional[datetime] = None) -> Appointment:
    """Version of a live payload for conflict resolution.

    A payload without a modification time was modified no later than the
    moment it was observed, so it is stamped with ``now``. Stored versions
    are never stamped.
    """
    if appointment.last_modified is not None:
        return appointment
    return appointment.model_copy(update={'last_modified': now or datetime.now(pytz.UTC)})


class AppointmentSyncEngine:
    """Orchestrates one-directional and full reconciliation passes per location."""

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        fss_gateway: BaseGateway,
        crm_gateway: BaseGateway,
        team_calendars: Optional[TeamCalendarManager] = None,
        availability: Optional[AvailabilityChecker] = None
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            db_manager: Database manager (sync state, mappings, config)
            fss_gateway: FSS gateway
            crm_gateway: CRM gateway
            team_calendars: Mapping store (built from db_manager if omitted)
            availability: Availability checker (built from the FSS gateway if omitted)
        """
        self.settings = settings
        self.db_manager = db_manager
        self.fss_gateway = fss_gateway
        self.crm_gateway = crm_gateway
        self.team_calendars = team_calendars or TeamCalendarManager(db_manager)
        self.availability = availability or AvailabilityChecker(fss_gateway, self.team_calendars)
        self.logger = logger.getChild('sync_engine')

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.cleanup()

    async def cleanup(self) -> None:
        """Close both gateways."""
        await self.fss_gateway.close()
        await self.crm_gateway.close()

    # Store helpers

    def get_config(self, location_id: str) -> Optional[IntegrationConfig]:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_integration_config(session, location_id)
            return row.to_model() if row else None

    def _load_record(
        self,
        fss_appointment_id: Optional[str] = None,
        crm_appointment_id: Optional[str] = None
    ) -> Optional[AppointmentSyncRecord]:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_appointment_sync(session, fss_appointment_id, crm_appointment_id)
            return row.to_model() if row else None

    def _store_record(
        self,
        location_id: str,
        fss_appointment_id: Optional[str] = None,
        crm_appointment_id: Optional[str] = None,
        **fields
    ) -> AppointmentSyncRecord:
        with self.db_manager.get_session() as session:
            row = self.db_manager.upsert_appointment_sync(
                session, location_id, fss_appointment_id, crm_appointment_id, **fields
            )
            return row.to_model()

    def get_sync_status(self, location_id: str) -> Dict[str, Any]:
        """Counts of sync records per state for a location."""
        with self.db_manager.get_session() as session:
            return self.db_manager.get_sync_status(session, location_id)

    # Input handling

    def _coerce(self, appointment: Any, side: SystemSide) -> Appointment:
        """Accept a normalized appointment or a raw payload from the given side."""
        if isinstance(appointment, Appointment):
            if not appointment.id:
                raise MissingIdentifier(f"{side.value} appointment has no identifier")
            return appointment
        if side == SystemSide.FSS:
            return fss_appointment_from_payload(appointment)
        return crm_appointment_from_payload(appointment)

    def _skip_reason(self, config: Optional[IntegrationConfig]) -> Optional[str]:
        if config is None:
            return "No integration config for location"
        if not config.enabled:
            return "Integration disabled"
        if not config.sync_appointments:
            return "Appointment sync disabled"
        return None

    def _failure(
        self,
        direction: SyncDirection,
        appointment: Appointment,
        error: Exception
    ) -> AppointmentSyncResult:
        if isinstance(error, FieldSyncError):
            code = error.code
        elif isinstance(error, GatewayError):
            code = SyncErrorCode.REMOTE_WRITE_FAILED
        else:
            code = SyncErrorCode.INTERNAL_ERROR

        self.logger.warning(f"{direction.value} sync of {appointment.source.value} appointment {appointment.id} failed ({code.value}): {error}")
        result = AppointmentSyncResult(
            success=False,
            action=SyncAction.FAILED,
            direction=direction,
            error_code=code,
            error=str(error),
        )
        if appointment.source == SystemSide.FSS:
            result.fss_appointment_id = appointment.id
        else:
            result.crm_appointment_id = appointment.id
        return result

    # FSS -> CRM

    async def sync_from_fss_to_crm(self, appointment: Any, location_id: str) -> AppointmentSyncResult:
        """Propagate an FSS appointment into the CRM.

        New appointments are routed to their team's calendar and created;
        changed ones are resolved against the stored CRM version with the
        location's policy; unchanged ones are a no-op.

        Args:
            appointment: FSS appointment (normalized or raw payload)
            location_id: Location ID

        Returns:
            Per-item result. Expected failures are reported, not raised.

        Raises:
            MissingIdentifier: If the appointment or location has no ID
            InvalidTimeRange: If the appointment's times are malformed
        """
        if not location_id:
            raise MissingIdentifier("location_id is required")
        appointment = self._coerce(appointment, SystemSide.FSS)

        config = self.get_config(location_id)
        reason = self._skip_reason(config)
        if reason:
            return AppointmentSyncResult(
                success=True, action=SyncAction.SKIPPED, direction=SyncDirection.FSS_TO_CRM,
                fss_appointment_id=appointment.id, reason=reason
            )

        try:
            return await self._fss_to_crm(appointment, location_id, config)
        except (FieldSyncError, GatewayError) as e:
            return self._failure(SyncDirection.FSS_TO_CRM, appointment, e)

    async def _fss_to_crm(
        self,
        appointment: Appointment,
        location_id: str,
        config: IntegrationConfig,
        force: bool = False
    ) -> AppointmentSyncResult:
        record = self._load_record(fss_appointment_id=appointment.id)

        if record is None or record.crm_appointment_id is None:
            return await self._create_in_crm(appointment, location_id, config)

        pending = record.sync_state == SyncState.CONFLICT_PENDING
        if not (force or pending) and not has_changed(appointment, record.fss_last_modified, record.fss_content_hash):
            return self._unchanged(SyncDirection.FSS_TO_CRM, appointment, record)

        if not force:
            resolution = ConflictResolver(config.appointment_conflict_resolution).resolve(
                as_observed(appointment), {'last_modified': record.crm_last_modified}
            )
            if resolution.winner != SystemSide.FSS:
                return self._discard(SyncDirection.FSS_TO_CRM, appointment, record, resolution.reason)

        return await self._update_in_crm(appointment, record, location_id, config)

    def _route_to_calendar(self, appointment: Appointment, location_id: str, config: IntegrationConfig) -> str:
        """Calendar receiving an FSS appointment.

        Raises:
            TeamMappingMissing: If the team has no enabled mapping, or there is no
                team and no default calendar
        """
        if appointment.team_id:
            mapping = self.team_calendars.get_calendar_for_team(location_id, appointment.team_id)
            if mapping is None:
                raise TeamMappingMissing(f"No enabled calendar mapping for team {appointment.team_id}")
            return mapping.crm_calendar_id
        if config.crm_calendar_id:
            return config.crm_calendar_id
        raise TeamMappingMissing(f"Appointment {appointment.id} has no team and the location has no default calendar")

    async def _create_in_crm(
        self,
        appointment: Appointment,
        location_id: str,
        config: IntegrationConfig
    ) -> AppointmentSyncResult:
        if appointment.is_cancelled:
            return AppointmentSyncResult(
                success=True, action=SyncAction.SKIPPED, direction=SyncDirection.FSS_TO_CRM,
                fss_appointment_id=appointment.id, reason="Cancelled appointment has no counterpart to update"
            )

        calendar_id = self._route_to_calendar(appointment, location_id, config)

        # Claim: record the trigger side only, with no timestamp, so a failed
        # create is retried by the next pass instead of looking unchanged
        self._store_record(
            location_id,
            fss_appointment_id=appointment.id,
            crm_calendar_id=calendar_id,
            fss_team_id=appointment.team_id,
            fss_last_modified=None,
            fss_content_hash=None,
            sync_state=SyncState.FSS_ONLY,
            sync_direction=SyncDirection.FSS_TO_CRM,
            conflict_resolution=config.appointment_conflict_resolution,
            status=appointment.status,
        )

        contact_id = await self._ensure_crm_contact(appointment, location_id)
        written = await self.crm_gateway.upsert_appointment(
            calendar_id, appointment, location_id, contact_id=contact_id
        )

        now = datetime.now(pytz.UTC)
        content_hash = appointment.content_hash()
        record = self._store_record(
            location_id,
            fss_appointment_id=appointment.id,
            crm_appointment_id=written.id,
            crm_calendar_id=calendar_id,
            fss_team_id=appointment.team_id,
            fss_last_modified=appointment.last_modified,
            crm_last_modified=written.last_modified or now,
            fss_content_hash=content_hash,
            crm_content_hash=content_hash,
            sync_state=SyncState.SYNCED,
            sync_direction=SyncDirection.FSS_TO_CRM,
            conflict_resolution=config.appointment_conflict_resolution,
            status=appointment.status,
            last_sync_at=now,
        )
        self.logger.info(f"Created CRM appointment {written.id} for FSS appointment {appointment.id}")
        return AppointmentSyncResult(
            success=True, action=SyncAction.CREATED, direction=SyncDirection.FSS_TO_CRM,
            fss_appointment_id=appointment.id, crm_appointment_id=written.id, state=record.sync_state
        )

    async def _update_in_crm(
        self,
        appointment: Appointment,
        record: AppointmentSyncRecord,
        location_id: str,
        config: IntegrationConfig
    ) -> AppointmentSyncResult:
        calendar_id = record.crm_calendar_id
        if appointment.team_id and appointment.team_id != record.fss_team_id:
            # Reassigned to another team: follow its calendar when it has one
            mapping = self.team_calendars.get_calendar_for_team(location_id, appointment.team_id)
            if mapping is not None:
                calendar_id = mapping.crm_calendar_id
        if calendar_id is None:
            calendar_id = self._route_to_calendar(appointment, location_id, config)

        written = await self.crm_gateway.upsert_appointment(
            calendar_id, appointment, location_id, existing_id=record.crm_appointment_id
        )

        now = datetime.now(pytz.UTC)
        content_hash = appointment.content_hash()
        stored = self._store_record(
            location_id,
            fss_appointment_id=appointment.id,
            crm_appointment_id=written.id,
            crm_calendar_id=calendar_id,
            fss_team_id=appointment.team_id or record.fss_team_id,
            fss_last_modified=appointment.last_modified or record.fss_last_modified,
            crm_last_modified=written.last_modified or now,
            fss_content_hash=content_hash,
            crm_content_hash=content_hash,
            sync_state=SyncState.SYNCED,
            sync_direction=SyncDirection.FSS_TO_CRM,
            conflict_resolution=config.appointment_conflict_resolution,
            status=appointment.status,
            last_sync_at=now,
        )
        self.logger.info(f"Updated CRM appointment {written.id} from FSS appointment {appointment.id}")
        return AppointmentSyncResult(
            success=True, action=SyncAction.UPDATED, direction=SyncDirection.FSS_TO_CRM,
            fss_appointment_id=appointment.id, crm_appointment_id=written.id, state=stored.sync_state
        )

    async def _ensure_crm_contact(self, appointment: Appointment, location_id: str) -> Optional[str]:
        """Upsert the appointment's customer as a CRM contact when it carries contact details."""
        fields = appointment_contact_fields(appointment)
        if not fields.get('email') and not fields.get('phone'):
            return None
        contact = await self.crm_gateway.upsert_contact(location_id, fields)
        return contact.id

    # CRM -> FSS

    async def sync_from_crm_to_fss(self, appointment: Any, location_id: str) -> AppointmentSyncResult:
        """Propagate a CRM appointment into the FSS.

        Symmetric to :meth:`sync_from_fss_to_crm`. New appointments are booked on
        the team mapped to their calendar when it is free, otherwise on the first
        free interchangeable team.

        Raises:
            MissingIdentifier: If the appointment or location has no ID
            InvalidTimeRange: If the appointment's times are malformed
        """
        if not location_id:
            raise MissingIdentifier("location_id is required")
        appointment = self._coerce(appointment, SystemSide.CRM)

        config = self.get_config(location_id)
        reason = self._skip_reason(config)
        if reason:
            return AppointmentSyncResult(
                success=True, action=SyncAction.SKIPPED, direction=SyncDirection.CRM_TO_FSS,
                crm_appointment_id=appointment.id, reason=reason
            )

        try:
            return await self._crm_to_fss(appointment, location_id, config)
        except (FieldSyncError, GatewayError) as e:
            return self._failure(SyncDirection.CRM_TO_FSS, appointment, e)

    async def _crm_to_fss(
        self,
        appointment: Appointment,
        location_id: str,
        config: IntegrationConfig,
        force: bool = False
    ) -> AppointmentSyncResult:
        record = self._load_record(crm_appointment_id=appointment.id)

        if record is None or record.fss_appointment_id is None:
            return await self._create_in_fss(appointment, location_id, config)

        pending = record.sync_state == SyncState.CONFLICT_PENDING
        if not (force or pending) and not has_changed(appointment, record.crm_last_modified, record.crm_content_hash):
            return self._unchanged(SyncDirection.CRM_TO_FSS, appointment, record)

        if not force:
            resolution = ConflictResolver(config.appointment_conflict_resolution).resolve(
                {'last_modified': record.fss_last_modified}, as_observed(appointment)
            )
            if resolution.winner != SystemSide.CRM:
                return self._discard(SyncDirection.CRM_TO_FSS, appointment, record, resolution.reason)

        return await self._update_in_fss(appointment, record, location_id, config)

    async def _pick_team(self, appointment: Appointment, location_id: str, config: IntegrationConfig) -> str:
        """Team to book a new CRM appointment on without double-booking.

        Raises:
            TeamMappingMissing: If the calendar is neither mapped nor the location default
            SlotUnavailable: If no interchangeable team is free
        """
        preferred = None
        if appointment.calendar_id:
            mapping = self.team_calendars.get_team_for_calendar(location_id, appointment.calendar_id)
            if mapping is not None:
                preferred = mapping.fss_team_id
            elif appointment.calendar_id != config.crm_calendar_id:
                raise TeamMappingMissing(f"No enabled team mapping for calendar {appointment.calendar_id}")

        buffer_minutes = self.settings.default_buffer_minutes
        if preferred is not None:
            team_result = await self.availability.check_team_availability(
                preferred, appointment.start, appointment.end, location_id, buffer_minutes=buffer_minutes
            )
            if team_result.available:
                return preferred
            self.logger.info(f"Team {preferred} is busy for CRM appointment {appointment.id}, trying other teams")

        result = await self.availability.check_availability(
            appointment.start, appointment.end, location_id, buffer_minutes=buffer_minutes
        )
        if not result.available_teams:
            raise SlotUnavailable(
                f"No team is free {appointment.start.isoformat()} - {appointment.end.isoformat()}"
            )
        return result.available_teams[0].team_id

    async def _create_in_fss(
        self,
        appointment: Appointment,
        location_id: str,
        config: IntegrationConfig
    ) -> AppointmentSyncResult:
        if appointment.is_cancelled:
            return AppointmentSyncResult(
                success=True, action=SyncAction.SKIPPED, direction=SyncDirection.CRM_TO_FSS,
                crm_appointment_id=appointment.id, reason="Cancelled appointment has no counterpart to update"
            )

        team_id = await self._pick_team(appointment, location_id, config)

        self._store_record(
            location_id,
            crm_appointment_id=appointment.id,
            crm_calendar_id=appointment.calendar_id,
            fss_team_id=team_id,
            crm_last_modified=None,
            crm_content_hash=None,
            sync_state=SyncState.CRM_ONLY,
            sync_direction=SyncDirection.CRM_TO_FSS,
            conflict_resolution=config.appointment_conflict_resolution,
            status=appointment.status,
        )

        written = await self.fss_gateway.upsert_appointment(
            team_id, appointment, location_id, crm_appointment_id=appointment.id
        )

        now = datetime.now(pytz.UTC)
        content_hash = appointment.content_hash()
        record = self._store_record(
            location_id,
            fss_appointment_id=written.id,
            crm_appointment_id=appointment.id,
            crm_calendar_id=appointment.calendar_id,
            fss_team_id=team_id,
            fss_last_modified=written.last_modified or now,
            crm_last_modified=appointment.last_modified,
            fss_content_hash=content_hash,
            crm_content_hash=content_hash,
            sync_state=SyncState.SYNCED,
            sync_direction=SyncDirection.CRM_TO_FSS,
            conflict_resolution=config.appointment_conflict_resolution,
            status=appointment.status,
            last_sync_at=now,
        )
        self.logger.info(f"Created FSS appointment {written.id} on team {team_id} for CRM appointment {appointment.id}")
        return AppointmentSyncResult(
            success=True, action=SyncAction.CREATED, direction=SyncDirection.CRM_TO_FSS,
            fss_appointment_id=written.id, crm_appointment_id=appointment.id, state=record.sync_state
        )

    async def _update_in_fss(
        self,
        appointment: Appointment,
        record: AppointmentSyncRecord,
        location_id: str,
        config: IntegrationConfig
    ) -> AppointmentSyncResult:
        team_id = record.fss_team_id
        if team_id is None:
            team_id = await self._pick_team(appointment, location_id, config)
        elif not appointment.is_cancelled:
            team_result = await self.availability.check_team_availability(
                team_id, appointment.start, appointment.end, location_id,
                exclude_appointment_ids=[record.fss_appointment_id],
                buffer_minutes=self.settings.default_buffer_minutes
            )
            if not team_result.available:
                raise SlotUnavailable(
                    f"Team {team_id} is not free for the rescheduled window of CRM appointment {appointment.id}"
                )

        written = await self.fss_gateway.upsert_appointment(
            team_id, appointment, location_id,
            existing_id=record.fss_appointment_id, crm_appointment_id=appointment.id
        )

        now = datetime.now(pytz.UTC)
        content_hash = appointment.content_hash()
        stored = self._store_record(
            location_id,
            fss_appointment_id=written.id,
            crm_appointment_id=appointment.id,
            crm_calendar_id=appointment.calendar_id or record.crm_calendar_id,
            fss_team_id=team_id,
            fss_last_modified=written.last_modified or now,
            crm_last_modified=appointment.last_modified or record.crm_last_modified,
            fss_content_hash=content_hash,
            crm_content_hash=content_hash,
            sync_state=SyncState.SYNCED,
            sync_direction=SyncDirection.CRM_TO_FSS,
            conflict_resolution=config.appointment_conflict_resolution,
            status=appointment.status,
            last_sync_at=now,
        )
        self.logger.info(f"Updated FSS appointment {written.id} from CRM appointment {appointment.id}")
        return AppointmentSyncResult(
            success=True, action=SyncAction.UPDATED, direction=SyncDirection.CRM_TO_FSS,
            fss_appointment_id=written.id, crm_appointment_id=appointment.id, state=stored.sync_state
        )

    # Deletions

    async def cancel_deleted(self, side: SystemSide, appointment_id: str, location_id: str) -> AppointmentSyncResult:
        """Cancel the counterpart of an appointment its own platform no longer returns.

        Delete events often carry only an id, and a deleted appointment cannot
        be read back. The counterpart is read from the other platform and
        replayed as a ``cancelled`` version of the deleted appointment through
        the normal direction pass.

        Args:
            side: Platform the appointment was deleted from
            appointment_id: ID of the deleted appointment on that platform
            location_id: Location ID

        Returns:
            Sync result; ``skipped`` when the appointment was never synced or
            its counterpart is gone as well
        """
        if not location_id:
            raise MissingIdentifier("location_id is required")

        if side == SystemSide.FSS:
            direction = SyncDirection.FSS_TO_CRM
            record = self._load_record(fss_appointment_id=appointment_id)
            counterpart_id = record.crm_appointment_id if record else None
            counterpart_gateway = self.crm_gateway
            result = AppointmentSyncResult(
                success=True, action=SyncAction.SKIPPED, direction=direction,
                fss_appointment_id=appointment_id, crm_appointment_id=counterpart_id
            )
        else:
            direction = SyncDirection.CRM_TO_FSS
            record = self._load_record(crm_appointment_id=appointment_id)
            counterpart_id = record.fss_appointment_id if record else None
            counterpart_gateway = self.fss_gateway
            result = AppointmentSyncResult(
                success=True, action=SyncAction.SKIPPED, direction=direction,
                fss_appointment_id=counterpart_id, crm_appointment_id=appointment_id
            )

        if counterpart_id is None:
            result.reason = "Deleted appointment was never synced"
            self.logger.info(f"{side.value} appointment {appointment_id} deleted before it was synced")
            return result

        try:
            counterpart = await counterpart_gateway.get_appointment(counterpart_id)
        except NotFoundError:
            result.reason = "Counterpart no longer exists"
            self.logger.info(f"{side.value} appointment {appointment_id} and its counterpart {counterpart_id} are both gone")
            return result
        except GatewayError as e:
            self.logger.warning(f"Failed to read counterpart {counterpart_id} of deleted appointment {appointment_id}: {e}")
            result.success = False
            result.action = SyncAction.FAILED
            result.error_code = SyncErrorCode.REMOTE_READ_FAILED
            result.error = str(e)
            return result

        update = {'id': appointment_id, 'source': side, 'status': 'cancelled', 'last_modified': None}
        if side == SystemSide.FSS:
            update['team_id'] = record.fss_team_id
        else:
            update['calendar_id'] = record.crm_calendar_id
        cancelled = counterpart.model_copy(update=update)

        self.logger.info(f"{side.value} appointment {appointment_id} was deleted, cancelling {counterpart_id}")
        if side == SystemSide.FSS:
            return await self.sync_from_fss_to_crm(cancelled, location_id)
        return await self.sync_from_crm_to_fss(cancelled, location_id)

    # Shared outcomes

    def _unchanged(
        self,
        direction: SyncDirection,
        appointment: Appointment,
        record: AppointmentSyncRecord
    ) -> AppointmentSyncResult:
        return AppointmentSyncResult(
            success=True,
            action=SyncAction.UNCHANGED,
            direction=direction,
            fss_appointment_id=record.fss_appointment_id,
            crm_appointment_id=record.crm_appointment_id,
            state=record.sync_state,
        )

    def _discard(
        self,
        direction: SyncDirection,
        appointment: Appointment,
        record: AppointmentSyncRecord,
        reason: str
    ) -> AppointmentSyncResult:
        """The other side won: drop this side's change and leave the row for the winning direction."""
        self._store_record(
            record.location_id,
            fss_appointment_id=record.fss_appointment_id,
            crm_appointment_id=record.crm_appointment_id,
            sync_state=SyncState.CONFLICT_PENDING,
        )
        notice = StaleConflictDiscarded(f"{appointment.source.value} change to {appointment.id} discarded: {reason}")
        self.logger.info(str(notice))
        return AppointmentSyncResult(
            success=True,
            action=SyncAction.SKIPPED_CONFLICT,
            direction=direction,
            fss_appointment_id=record.fss_appointment_id,
            crm_appointment_id=record.crm_appointment_id,
            state=SyncState.CONFLICT_PENDING,
            error_code=notice.code,
            reason=reason,
        )

    # Full pass

    async def _collect(
        self,
        gateway: BaseGateway,
        owner_ids: List[str],
        start: datetime,
        end: datetime,
        location_id: str,
        report: SyncAllReport
    ) -> Dict[str, Appointment]:
        """List appointments per team/calendar; listing failures become report items."""
        appointments: Dict[str, Appointment] = {}
        for owner_id in owner_ids:
            try:
                for appointment in await gateway.list_appointments(owner_id, start, end, location_id):
                    appointments.setdefault(appointment.id, appointment)
            except Exception as e:
                self.logger.error(f"Failed to list {gateway.side.value} appointments for {owner_id}: {e}")
                report.add(AppointmentSyncResult(
                    success=False,
                    action=SyncAction.FAILED,
                    error_code=SyncErrorCode.REMOTE_READ_FAILED,
                    error=f"{gateway.side.value} {owner_id}: {e}",
                ))
        return appointments

    def _pair(
        self,
        fss_appointments: Dict[str, Appointment],
        crm_appointments: Dict[str, Appointment]
    ) -> List[Tuple[Optional[Appointment], Optional[Appointment], Optional[AppointmentSyncRecord]]]:
        """Pair listed appointments through their sync records."""
        pairs = []
        paired_crm = set()
        for fss_appointment in fss_appointments.values():
            record = self._load_record(fss_appointment_id=fss_appointment.id)
            crm_appointment = None
            if record is not None and record.crm_appointment_id:
                crm_appointment = crm_appointments.get(record.crm_appointment_id)
                paired_crm.add(record.crm_appointment_id)
            pairs.append((fss_appointment, crm_appointment, record))

        for crm_appointment in crm_appointments.values():
            if crm_appointment.id in paired_crm:
                continue
            record = self._load_record(crm_appointment_id=crm_appointment.id)
            pairs.append((None, crm_appointment, record))
        return pairs

    def _link(
        self,
        fss_appointment: Appointment,
        crm_appointment: Appointment,
        location_id: str,
        config: IntegrationConfig
    ) -> AppointmentSyncResult:
        """Correlate two uncorrelated appointments that are the same booking."""
        now = datetime.now(pytz.UTC)
        record = self._store_record(
            location_id,
            fss_appointment_id=fss_appointment.id,
            crm_appointment_id=crm_appointment.id,
            crm_calendar_id=crm_appointment.calendar_id,
            fss_team_id=fss_appointment.team_id,
            fss_last_modified=fss_appointment.last_modified,
            crm_last_modified=crm_appointment.last_modified,
            fss_content_hash=fss_appointment.content_hash(),
            crm_content_hash=crm_appointment.content_hash(),
            sync_state=SyncState.SYNCED,
            sync_direction=SyncDirection.BIDIRECTIONAL,
            conflict_resolution=config.appointment_conflict_resolution,
            status=fss_appointment.status,
            last_sync_at=now,
        )
        self.logger.info(f"Linked FSS appointment {fss_appointment.id} with CRM appointment {crm_appointment.id}")
        return AppointmentSyncResult(
            success=True, action=SyncAction.LINKED, direction=SyncDirection.BIDIRECTIONAL,
            fss_appointment_id=fss_appointment.id, crm_appointment_id=crm_appointment.id, state=record.sync_state
        )

    async def _reconcile(
        self,
        fss_appointment: Optional[Appointment],
        crm_appointment: Optional[Appointment],
        record: Optional[AppointmentSyncRecord],
        location_id: str,
        config: IntegrationConfig
    ) -> AppointmentSyncResult:
        if fss_appointment is not None and crm_appointment is not None and record is not None:
            pending = record.sync_state == SyncState.CONFLICT_PENDING
            fss_changed = pending or has_changed(fss_appointment, record.fss_last_modified, record.fss_content_hash)
            crm_changed = pending or has_changed(crm_appointment, record.crm_last_modified, record.crm_content_hash)

            if fss_changed and crm_changed:
                observed_at = datetime.now(pytz.UTC)
                resolution = ConflictResolver(config.appointment_conflict_resolution).resolve(
                    as_observed(fss_appointment, observed_at), as_observed(crm_appointment, observed_at)
                )
                self.logger.info(
                    f"Both sides of {fss_appointment.id}/{crm_appointment.id} changed: {resolution.reason}"
                )
                if resolution.winner == SystemSide.FSS:
                    return await self._fss_to_crm(fss_appointment, location_id, config, force=True)
                return await self._crm_to_fss(crm_appointment, location_id, config, force=True)
            if fss_changed:
                return await self._fss_to_crm(fss_appointment, location_id, config)
            if crm_changed:
                return await self._crm_to_fss(crm_appointment, location_id, config)
            return self._unchanged(SyncDirection.BIDIRECTIONAL, fss_appointment, record)

        if fss_appointment is not None:
            return await self._fss_to_crm(fss_appointment, location_id, config)
        return await self._crm_to_fss(crm_appointment, location_id, config)

    async def sync_all(self, location_id: str) -> SyncAllReport:
        """Reconcile every appointment of a location inside the sync window.

        Appointments are listed per enabled team on the FSS and per mapped
        calendar (plus the location default) on the CRM, paired through their
        sync records, and reconciled one by one. A failing item is recorded in
        the report and never aborts its siblings.

        Args:
            location_id: Location ID

        Returns:
            Report with synced/skipped/error counts and per-item results
        """
        if not location_id:
            raise MissingIdentifier("location_id is required")

        report = SyncAllReport(location_id=location_id)
        config = self.get_config(location_id)
        reason = self._skip_reason(config)
        if reason:
            report.reason = reason
            report.completed_at = datetime.now(pytz.UTC)
            self.logger.info(f"Skipping sync for location {location_id}: {reason}")
            return report

        now = datetime.now(pytz.UTC)
        window_start = now - timedelta(days=self.settings.sync_lookback_days)
        window_end = now + timedelta(days=self.settings.sync_lookahead_days)
        self.logger.info(f"Starting sync {report.sync_id} for location {location_id} ({window_start} - {window_end})")

        mappings = self.team_calendars.list_mappings(location_id, enabled_only=True)
        team_ids = [m.fss_team_id for m in mappings]
        calendar_ids = []
        for calendar_id in [m.crm_calendar_id for m in mappings] + [config.crm_calendar_id]:
            if calendar_id and calendar_id not in calendar_ids:
                calendar_ids.append(calendar_id)

        fss_appointments = await self._collect(self.fss_gateway, team_ids, window_start, window_end, location_id, report)
        crm_appointments = await self._collect(self.crm_gateway, calendar_ids, window_start, window_end, location_id, report)

        pairs = self._pair(fss_appointments, crm_appointments)

        # Correlate uncorrelated bookings that already exist on both sides
        unmatched_crm = [c for f, c, r in pairs if f is None and r is None]
        linked_crm = set()
        for fss_appointment, crm_appointment, record in pairs:
            if fss_appointment is None or record is not None:
                continue
            duplicate = find_duplicate(fss_appointment, [c for c in unmatched_crm if c.id not in linked_crm])
            if duplicate is not None:
                linked_crm.add(duplicate.id)
                report.add(self._link(fss_appointment, duplicate, location_id, config))

        for fss_appointment, crm_appointment, record in pairs:
            if fss_appointment is None and crm_appointment.id in linked_crm:
                continue
            if fss_appointment is not None and record is None and self._load_record(fss_appointment_id=fss_appointment.id):
                # Linked above
                continue

            item = fss_appointment or crm_appointment
            direction = SyncDirection.FSS_TO_CRM if fss_appointment is not None else SyncDirection.CRM_TO_FSS
            try:
                result = await self._reconcile(fss_appointment, crm_appointment, record, location_id, config)
            except (FieldSyncError, GatewayError) as e:
                result = self._failure(direction, item, e)
            except Exception as e:
                self.logger.exception(f"Unexpected error reconciling appointment {item.id}")
                result = self._failure(direction, item, e)
            report.add(result)

        report.completed_at = datetime.now(pytz.UTC)
        self.logger.info(
            f"Sync {report.sync_id} for location {location_id} completed: "
            f"{report.synced} synced, {report.skipped} skipped, {report.errors} errors"
        )
        return report

    async def sync_due_locations(self, now: Optional[int] = None) -> List[SyncAllReport]:
        """Run :meth:`sync_all` for every location whose scheduled sync is due.

        The schedule lives in the store: ``last_appointment_sync_at`` is claimed
        with a compare-and-set before the pass, so restarts keep the cadence and
        two schedulers never run the same location twice.

        Args:
            now: Current time in epoch milliseconds (defaults to the wall clock)

        Returns:
            One report per location that ran
        """
        now = now if now is not None else now_ms()
        with self.db_manager.get_session() as session:
            configs = [row.to_model() for row in self.db_manager.list_integration_configs(session)]

        reports = []
        for config in configs:
            if self._skip_reason(config):
                continue
            if config.last_appointment_sync_at is not None and now < config.appointment_sync_due_at():
                continue

            with self.db_manager.get_session() as session:
                claimed = self.db_manager.claim_appointment_sync(
                    session, config.location_id, config.last_appointment_sync_at, now
                )
            if not claimed:
                self.logger.debug(f"Appointment sync for {config.location_id} claimed elsewhere")
                continue

            try:
                reports.append(await self.sync_all(config.location_id))
            except Exception as e:
                self.logger.exception(f"Appointment sync failed for location {config.location_id}")
                report = SyncAllReport(location_id=config.location_id)
                report.add(AppointmentSyncResult(
                    success=False, action=SyncAction.FAILED, error_code=SyncErrorCode.INTERNAL_ERROR, error=str(e)
                ))
                reports.append(report)
        return reports
