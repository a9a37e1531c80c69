"""Availability checking across a location's interchangeable teams."""

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional, Tuple

from .errors import InvalidTimeRange
from .models import (
    Appointment, AvailabilityConflict, AvailabilityResult, OverlapResult, OverlapType,
    TeamAvailabilityResult, TeamRef, TimeSlot, parse_timestamp
)
from .services.base import BaseGateway
from .team_calendars import TeamCalendarManager

logger = logging.getLogger(__name__)


def validate_time_range(start_time: Any, end_time: Any, buffer_minutes: int = 0) -> Tuple[datetime, datetime]:
    """Parse and validate a candidate window.

    Raises:
        InvalidTimeRange: If either bound is missing or unparseable, start is not
            strictly before end, or the buffer is negative
    """
    try:
        start = parse_timestamp(start_time)
        end = parse_timestamp(end_time)
    except ValueError as e:
        raise InvalidTimeRange(str(e)) from e

    if start is None or end is None:
        raise InvalidTimeRange("Both start and end time are required")
    if start >= end:
        raise InvalidTimeRange(f"Start time ({start}) must be before end time ({end})")
    if buffer_minutes is None or buffer_minutes < 0:
        raise InvalidTimeRange(f"Buffer must be non-negative, got {buffer_minutes}")
    return start, end


def detect_overlaps(
    appointments: Iterable[Appointment],
    start: datetime,
    end: datetime,
    buffer_minutes: int = 0,
    team: Optional[TeamRef] = None
) -> OverlapResult:
    """Find every appointment overlapping ``[start - buffer, end + buffer]``.

    An appointment overlaps iff ``appt.start < end + buffer`` and
    ``appt.end > start - buffer``; touching boundaries never overlap.
    """
    buffer = timedelta(minutes=buffer_minutes)
    buffered_start = start - buffer
    buffered_end = end + buffer

    conflicts = []
    for appointment in appointments:
        if not (appointment.start < buffered_end and appointment.end > buffered_start):
            continue

        overlap_start = max(appointment.start, buffered_start)
        overlap_end = min(appointment.end, buffered_end)

        contains_window = appointment.start <= buffered_start and appointment.end >= buffered_end
        within_window = buffered_start <= appointment.start and buffered_end >= appointment.end
        if contains_window or within_window:
            overlap_type = OverlapType.FULL
        elif appointment.end <= start or appointment.start >= end:
            # Clear of the requested window, inside its buffer zone
            overlap_type = OverlapType.ADJACENT
        else:
            overlap_type = OverlapType.PARTIAL

        conflicts.append(AvailabilityConflict(
            team_id=team.team_id if team else (appointment.team_id or ''),
            team_name=team.team_name if team else None,
            competing_appointment=appointment,
            overlap_type=overlap_type,
            overlap_start=overlap_start,
            overlap_end=overlap_end,
        ))

    return OverlapResult(has_conflict=bool(conflicts), conflicts=conflicts)


def find_available_slots(
    appointments: Iterable[Appointment],
    range_start: datetime,
    range_end: datetime,
    slot_minutes: int,
    buffer_minutes: int = 0
) -> List[TimeSlot]:
    """List free slots of a fixed length for one team within a range.

    Slots are laid back to back from the range start, separated by the buffer,
    and never come closer than the buffer to an existing appointment.
    """
    if slot_minutes <= 0:
        raise InvalidTimeRange(f"Slot length must be positive, got {slot_minutes}")
    range_start, range_end = validate_time_range(range_start, range_end, buffer_minutes)

    slot = timedelta(minutes=slot_minutes)
    buffer = timedelta(minutes=buffer_minutes)
    slots: List[TimeSlot] = []
    current = range_start

    for appointment in sorted(appointments, key=lambda a: a.start):
        if appointment.end <= range_start:
            continue
        if appointment.start >= range_end:
            break
        while current + slot <= appointment.start - buffer and current + slot <= range_end:
            slots.append(TimeSlot(start=current, end=current + slot))
            current = current + slot + buffer
        if appointment.end + buffer > current:
            current = appointment.end + buffer

    while current + slot <= range_end:
        slots.append(TimeSlot(start=current, end=current + slot))
        current = current + slot + buffer

    return slots


class AvailabilityChecker:
    """Determines which interchangeable teams can serve a candidate window."""

    def __init__(self, fss_gateway: BaseGateway, team_calendars: TeamCalendarManager):
        """Initialize availability checker.

        Args:
            fss_gateway: Gateway listing FSS team appointments
            team_calendars: Team-calendar mapping store
        """
        self.fss_gateway = fss_gateway
        self.team_calendars = team_calendars
        self.logger = logger.getChild('availability')

    async def _team_conflicts(
        self,
        team: TeamRef,
        start: datetime,
        end: datetime,
        location_id: str,
        exclude_ids: set,
        buffer_minutes: int
    ) -> List[AvailabilityConflict]:
        """Conflicts for one team. A failed fetch yields a single error conflict (fail-closed)."""
        buffer = timedelta(minutes=buffer_minutes)
        try:
            appointments = await self.fss_gateway.list_appointments(
                team.team_id, start - buffer, end + buffer, location_id
            )
        except Exception as e:
            self.logger.error(f"Failed to fetch appointments for team {team.team_id}, treating as unavailable: {e}")
            return [AvailabilityConflict(team_id=team.team_id, team_name=team.team_name, error=str(e))]

        relevant = [a for a in appointments if str(a.id) not in exclude_ids and not a.is_cancelled]
        return detect_overlaps(relevant, start, end, buffer_minutes, team=team).conflicts

    async def check_availability(
        self,
        start_time: Any,
        end_time: Any,
        location_id: str,
        exclude_appointment_ids: Optional[Iterable[Any]] = None,
        buffer_minutes: int = 0
    ) -> AvailabilityResult:
        """Check a window against every enabled team of a location.

        Args:
            start_time: Window start (datetime, ISO string or epoch ms)
            end_time: Window end
            location_id: Location ID
            exclude_appointment_ids: Appointments to ignore (the one being rescheduled)
            buffer_minutes: Minutes of padding required around existing appointments

        Returns:
            Availability with per-team conflicts and the free teams in mapping order

        Raises:
            InvalidTimeRange: Before any I/O, for a malformed window
        """
        start, end = validate_time_range(start_time, end_time, buffer_minutes)
        exclude_ids = {str(i) for i in (exclude_appointment_ids or [])}

        conflicts: List[AvailabilityConflict] = []
        available_teams: List[TeamRef] = []

        for team in self.team_calendars.enabled_teams(location_id):
            team_conflicts = await self._team_conflicts(team, start, end, location_id, exclude_ids, buffer_minutes)
            if team_conflicts:
                conflicts.extend(team_conflicts)
            else:
                available_teams.append(team)

        self.logger.debug(
            f"Availability {start} - {end} at {location_id}: "
            f"{len(available_teams)} free teams, {len(conflicts)} conflicts"
        )
        return AvailabilityResult(
            available=bool(available_teams),
            conflicts=conflicts,
            available_teams=available_teams,
        )

    async def check_team_availability(
        self,
        team_id: str,
        start_time: Any,
        end_time: Any,
        location_id: str,
        exclude_appointment_ids: Optional[Iterable[Any]] = None,
        buffer_minutes: int = 0
    ) -> TeamAvailabilityResult:
        """Same overlap test scoped to one team.

        A team without an enabled mapping is reported unavailable.
        """
        start, end = validate_time_range(start_time, end_time, buffer_minutes)
        exclude_ids = {str(i) for i in (exclude_appointment_ids or [])}

        mapping = self.team_calendars.get_calendar_for_team(location_id, str(team_id))
        if mapping is None:
            return TeamAvailabilityResult(
                team_id=str(team_id),
                available=False,
                conflicts=[AvailabilityConflict(team_id=str(team_id), error="No enabled calendar mapping for team")],
            )

        team = TeamRef(team_id=mapping.fss_team_id, team_name=mapping.fss_team_name)
        conflicts = await self._team_conflicts(team, start, end, location_id, exclude_ids, buffer_minutes)
        return TeamAvailabilityResult(
            team_id=team.team_id,
            team_name=team.team_name,
            available=not conflicts,
            conflicts=conflicts,
        )

    async def find_available_teams(self, *args, **kwargs) -> List[TeamRef]:
        result = await self.check_availability(*args, **kwargs)
        return result.available_teams

    async def is_time_slot_available(self, *args, **kwargs) -> bool:
        result = await self.check_availability(*args, **kwargs)
        return result.available

    async def find_team_slots(
        self,
        team_id: str,
        range_start: Any,
        range_end: Any,
        location_id: str,
        slot_minutes: int,
        buffer_minutes: int = 0
    ) -> List[TimeSlot]:
        """Free slots of one team within a range."""
        start, end = validate_time_range(range_start, range_end, buffer_minutes)
        appointments = await self.fss_gateway.list_appointments(str(team_id), start, end, location_id)
        active = [a for a in appointments if not a.is_cancelled]
        return find_available_slots(active, start, end, slot_minutes, buffer_minutes)
