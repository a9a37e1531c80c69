"""Data models for appointment and quote reconciliation."""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, List, Union
from uuid import UUID, uuid4

from dateutil.parser import parse as parse_date
from pydantic import BaseModel, Field, validator
import pytz


def ensure_timezone_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Return dt as a timezone-aware datetime, assuming UTC for naive values."""
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize dt to an aware UTC datetime."""
    if dt is None:
        return None
    return ensure_timezone_aware(dt).astimezone(pytz.UTC)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO string, epoch milliseconds/seconds or datetime into an aware datetime.

    Returns None for empty values. Raises ValueError for unparseable input.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Values past year 2286 in seconds are treated as milliseconds
        seconds = value / 1000 if value > 1e10 else value
        return datetime.fromtimestamp(seconds, tz=pytz.UTC)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return parse_timestamp(int(stripped))
        try:
            return to_utc(parse_date(stripped))
        except (ValueError, OverflowError) as e:
            raise ValueError(f"Unparseable timestamp: {value!r}") from e
    raise ValueError(f"Unsupported timestamp type: {type(value).__name__}")


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(utc_now().timestamp() * 1000)


class SystemSide(str, Enum):
    """Which external platform a record came from."""

    FSS = "fss"
    CRM = "crm"


class SyncDirection(str, Enum):
    """Direction tag stored on a sync record."""

    FSS_TO_CRM = "fss_to_crm"
    CRM_TO_FSS = "crm_to_fss"
    BIDIRECTIONAL = "bidirectional"


class ConflictPolicy(str, Enum):
    """Conflict resolution policies."""

    FSS_WINS = "fss_wins"  # Field-service version always wins
    CRM_WINS = "crm_wins"  # CRM version always wins
    TIMESTAMP = "timestamp"  # Most recently modified wins, CRM on ties


class SyncState(str, Enum):
    """Correlation state of one logical appointment."""

    UNSYNCED = "unsynced"
    FSS_ONLY = "fss_only"
    CRM_ONLY = "crm_only"
    SYNCED = "synced"
    CONFLICT_PENDING = "conflict_pending"


class SyncAction(str, Enum):
    """Outcome of a single reconciliation item."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    SKIPPED_CONFLICT = "skipped_conflict"
    LINKED = "linked"  # Existing counterpart found and correlated, nothing written
    FAILED = "failed"


class SyncErrorCode(str, Enum):
    """Per-item error taxonomy surfaced in results."""

    INVALID_TIME_RANGE = "invalid_time_range"
    MISSING_IDENTIFIER = "missing_identifier"
    TEAM_MAPPING_MISSING = "team_mapping_missing"
    REMOTE_WRITE_FAILED = "remote_write_failed"
    REMOTE_READ_FAILED = "remote_read_failed"
    STALE_CONFLICT_DISCARDED = "stale_conflict_discarded"
    SLOT_UNAVAILABLE = "slot_unavailable"
    DISCOVERY_UNAVAILABLE = "discovery_unavailable"
    INTERNAL_ERROR = "internal_error"


class OverlapType(str, Enum):
    """How an existing appointment overlaps a candidate window."""

    FULL = "full"
    PARTIAL = "partial"
    ADJACENT = "adjacent"


class Appointment(BaseModel):
    """Normalized appointment from either platform."""

    id: str = Field(..., description="Appointment ID on its own platform")
    source: SystemSide = Field(..., description="Platform the appointment was read from")
    start: datetime = Field(..., description="Appointment start time")
    end: datetime = Field(..., description="Appointment end time")
    status: str = Field("scheduled", description="Normalized status (cancelled is a status, not a deletion)")
    last_modified: Optional[datetime] = Field(None, description="Last modification time on the source platform")
    team_id: Optional[str] = Field(None, description="FSS team the appointment is booked on")
    calendar_id: Optional[str] = Field(None, description="CRM calendar the appointment lives in")
    title: str = Field("Service Appointment")
    notes: Optional[str] = None
    contact_id: Optional[str] = Field(None, description="Customer/contact ID on the source platform")
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict, description="Original payload")

    @validator('id', 'team_id', 'calendar_id', 'contact_id', pre=True)
    def coerce_identifier(cls, v):
        """External IDs arrive as ints or strings; store them as strings."""
        if v is None or v == '':
            return None
        return str(v)

    @validator('start', 'end', 'last_modified', pre=True)
    def parse_times(cls, v):
        return parse_timestamp(v)

    @validator('end')
    def end_after_start(cls, v, values):
        if 'start' in values and values['start'] is not None and v <= values['start']:
            raise ValueError(f"End time ({v}) must be after start time ({values['start']})")
        return v

    @property
    def is_cancelled(self) -> bool:
        return self.status in ('cancelled', 'canceled')

    def content_hash(self) -> str:
        """Hash of the scheduling content.

        Platform-specific placement (team, calendar) is left out so the same
        appointment hashes identically on both sides.
        """
        content = {
            'start': self.start.isoformat(),
            'end': self.end.isoformat(),
            'status': self.status,
            'title': self.title,
            'notes': self.notes or '',
        }
        return hashlib.sha256(json.dumps(content, sort_keys=True).encode()).hexdigest()


class Quote(BaseModel):
    """Quote (or lead carrying a quote) read from the field-service system."""

    id: str
    lead_id: Optional[str] = None
    quote_number: Optional[str] = None
    total_amount: Optional[float] = None
    last_modified: Optional[datetime] = None
    fields: Dict[str, Any] = Field(default_factory=dict, description="Flattened source fields")

    @validator('id', 'lead_id', 'quote_number', pre=True)
    def coerce_identifier(cls, v):
        if v is None or v == '':
            return None
        return str(v)

    @validator('last_modified', pre=True)
    def parse_modified(cls, v):
        return parse_timestamp(v)

    def content_hash(self) -> str:
        content_str = json.dumps(self.fields, sort_keys=True, default=str)
        return hashlib.sha256(content_str.encode()).hexdigest()


class TimeSlot(BaseModel):
    start: datetime
    end: datetime


class TeamRef(BaseModel):
    team_id: str
    team_name: Optional[str] = None


class AvailabilityConflict(BaseModel):
    """One overlapping appointment (or fetch failure) for a team."""

    team_id: str
    team_name: Optional[str] = None
    competing_appointment: Optional[Appointment] = None
    overlap_type: Optional[OverlapType] = None
    overlap_start: Optional[datetime] = None
    overlap_end: Optional[datetime] = None
    error: Optional[str] = Field(None, description="Set when the team's appointments could not be fetched")


class AvailabilityResult(BaseModel):
    """Availability across all interchangeable teams of a location."""

    available: bool
    conflicts: List[AvailabilityConflict] = Field(default_factory=list)
    available_teams: List[TeamRef] = Field(default_factory=list)


class TeamAvailabilityResult(BaseModel):
    team_id: str
    team_name: Optional[str] = None
    available: bool
    conflicts: List[AvailabilityConflict] = Field(default_factory=list)


class OverlapResult(BaseModel):
    has_conflict: bool
    conflicts: List[AvailabilityConflict] = Field(default_factory=list)


class Resolution(BaseModel):
    """Outcome of the conflict resolver."""

    winner: SystemSide
    record: Any = None
    reason: str = ""


class AppointmentSyncResult(BaseModel):
    """Result of reconciling one appointment."""

    success: bool
    action: SyncAction
    direction: Optional[SyncDirection] = None
    fss_appointment_id: Optional[str] = None
    crm_appointment_id: Optional[str] = None
    state: Optional[SyncState] = None
    error_code: Optional[SyncErrorCode] = None
    error: Optional[str] = None
    reason: Optional[str] = None


class SyncAllReport(BaseModel):
    """Aggregated report of a full reconciliation pass."""

    sync_id: UUID = Field(default_factory=uuid4)
    location_id: str
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    reason: Optional[str] = Field(None, description="Why the pass was skipped")
    synced: int = 0
    skipped: int = 0
    errors: int = 0
    results: List[AppointmentSyncResult] = Field(default_factory=list)

    def add(self, result: AppointmentSyncResult) -> None:
        self.results.append(result)
        if not result.success:
            self.errors += 1
        elif result.action in (SyncAction.CREATED, SyncAction.UPDATED, SyncAction.LINKED):
            self.synced += 1
        else:
            self.skipped += 1

    @property
    def total_operations(self) -> int:
        return len(self.results)


class QuoteSyncResult(BaseModel):
    success: bool
    quote_id: Optional[str] = None
    contact_id: Optional[str] = None
    opportunity_id: Optional[str] = None
    skipped: bool = False
    error_code: Optional[SyncErrorCode] = None
    error: Optional[str] = None


class LocationPollResult(BaseModel):
    """Per-location outcome of a quote poll tick."""

    location_id: str
    skipped: bool = False
    reason: Optional[str] = None
    quotes_synced: int = 0
    quotes_skipped: int = 0
    errors: int = 0
    error_details: List[QuoteSyncResult] = Field(default_factory=list)
    discovery_error_code: Optional[SyncErrorCode] = None
    last_poll_at: Optional[int] = None
    next_poll_in_minutes: Optional[int] = None


class AppointmentSyncRecord(BaseModel):
    """Snapshot of a stored appointment correlation."""

    location_id: str
    fss_appointment_id: Optional[str] = None
    crm_appointment_id: Optional[str] = None
    crm_calendar_id: Optional[str] = None
    fss_team_id: Optional[str] = None
    fss_last_modified: Optional[datetime] = None
    crm_last_modified: Optional[datetime] = None
    fss_content_hash: Optional[str] = None
    crm_content_hash: Optional[str] = None
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    conflict_resolution: ConflictPolicy = ConflictPolicy.TIMESTAMP
    sync_state: SyncState = SyncState.UNSYNCED
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None

    @validator('fss_last_modified', 'crm_last_modified', 'created_at', 'updated_at', 'last_sync_at')
    def assume_utc(cls, v):
        return ensure_timezone_aware(v)


class TeamCalendarMapping(BaseModel):
    """Correspondence between an FSS team and a CRM calendar within a location."""

    location_id: str
    fss_team_id: str
    fss_team_name: Optional[str] = None
    crm_calendar_id: str
    crm_calendar_name: Optional[str] = None
    enabled: bool = True


class FieldMapping(BaseModel):
    """User-defined FSS field -> CRM field mapping."""

    fss_field: str
    crm_field: str


class IntegrationConfig(BaseModel):
    """Per-location integration settings consumed by the engines."""

    location_id: str
    enabled: bool = False
    sync_appointments: bool = False
    appointment_sync_interval: int = Field(15, ge=1, description="Minutes")
    appointment_conflict_resolution: ConflictPolicy = ConflictPolicy.TIMESTAMP
    last_appointment_sync_at: Optional[int] = Field(None, description="Epoch milliseconds")
    sync_quotes: bool = True
    quote_polling_enabled: bool = False
    quote_polling_interval: int = Field(15, ge=1, description="Minutes")
    last_quote_poll_at: Optional[int] = Field(None, description="Epoch milliseconds")
    crm_calendar_id: Optional[str] = Field(None, description="Default CRM calendar for unmapped teams")
    create_opportunities: bool = True
    crm_tags: List[str] = Field(default_factory=list)
    custom_field_prefix: str = "fss_quote_"
    crm_pipeline_id: Optional[str] = None
    crm_pipeline_stage_id: Optional[str] = None
    quote_discovery_cursor: Optional[str] = None
    field_mappings: List[FieldMapping] = Field(default_factory=list)

    @validator('crm_tags', pre=True)
    def clean_tags(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [t.strip() for t in v if t and t.strip()]

    def quote_poll_due_at(self) -> int:
        """Epoch ms at which the next quote poll becomes due."""
        return (self.last_quote_poll_at or 0) + self.quote_polling_interval * 60000

    def appointment_sync_due_at(self) -> int:
        """Epoch ms at which the next scheduled appointment sync becomes due."""
        return (self.last_appointment_sync_at or 0) + self.appointment_sync_interval * 60000


AppointmentLike = Union[Appointment, Dict[str, Any]]
