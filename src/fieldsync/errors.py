"""Error taxonomy for the reconciliation engine."""

from typing import Optional

from .models import SyncErrorCode


class FieldSyncError(Exception):
    """Base exception for reconciliation errors."""

    code: SyncErrorCode = SyncErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, code: Optional[SyncErrorCode] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class InvalidTimeRange(FieldSyncError, ValueError):
    """Start is not strictly before end, a bound is unparseable, or the buffer is negative."""

    code = SyncErrorCode.INVALID_TIME_RANGE


class MissingIdentifier(FieldSyncError, ValueError):
    """A required identifier (appointment, quote or location) is absent."""

    code = SyncErrorCode.MISSING_IDENTIFIER


class TeamMappingMissing(FieldSyncError):
    """No enabled calendar mapping exists for the appointment's team or calendar."""

    code = SyncErrorCode.TEAM_MAPPING_MISSING


class RemoteWriteFailed(FieldSyncError):
    """A gateway call failed; the next scheduled pass retries it."""

    code = SyncErrorCode.REMOTE_WRITE_FAILED


class StaleConflictDiscarded(FieldSyncError):
    """The other side won conflict resolution. Informational only."""

    code = SyncErrorCode.STALE_CONFLICT_DISCARDED


class DiscoveryUnavailable(FieldSyncError):
    """Quote discovery failed or found nothing."""

    code = SyncErrorCode.DISCOVERY_UNAVAILABLE


class SlotUnavailable(FieldSyncError):
    """No team can take the appointment's window without double-booking."""

    code = SyncErrorCode.SLOT_UNAVAILABLE
