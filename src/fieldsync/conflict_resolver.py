"""Conflict resolution between the FSS and CRM versions of an appointment."""

import logging
from datetime import datetime
from typing import Any, Optional

from .models import ConflictPolicy, Resolution, SystemSide, ensure_timezone_aware

logger = logging.getLogger(__name__)


def _last_modified(version: Any) -> Optional[datetime]:
    if version is None:
        return None
    if isinstance(version, dict):
        value = version.get('last_modified')
    else:
        value = getattr(version, 'last_modified', None)
    return ensure_timezone_aware(value)


def resolve(fss_version: Any, crm_version: Any, policy: ConflictPolicy) -> Resolution:
    """Pick the winning version of one logical appointment.

    ``fss_wins`` and ``crm_wins`` always pick their side. ``timestamp`` picks the
    strictly newer ``last_modified``; equal timestamps go to the CRM. A missing
    timestamp is older than any present one, and two missing timestamps tie.

    Pure: callers apply the winner to the losing system.
    """
    policy = ConflictPolicy(policy)

    if policy == ConflictPolicy.FSS_WINS:
        return Resolution(winner=SystemSide.FSS, record=fss_version, reason="fss_wins policy")
    if policy == ConflictPolicy.CRM_WINS:
        return Resolution(winner=SystemSide.CRM, record=crm_version, reason="crm_wins policy")

    fss_modified = _last_modified(fss_version)
    crm_modified = _last_modified(crm_version)

    if fss_modified is not None and (crm_modified is None or fss_modified > crm_modified):
        return Resolution(
            winner=SystemSide.FSS,
            record=fss_version,
            reason=f"FSS version is more recent ({fss_modified} > {crm_modified})"
        )
    if crm_modified is not None and (fss_modified is None or crm_modified > fss_modified):
        return Resolution(
            winner=SystemSide.CRM,
            record=crm_version,
            reason=f"CRM version is more recent ({crm_modified} > {fss_modified})"
        )
    return Resolution(winner=SystemSide.CRM, record=crm_version, reason="Equal timestamps, CRM wins (tiebreaker)")


class ConflictResolver:
    """Resolver bound to a location's configured policy."""

    def __init__(self, policy: ConflictPolicy):
        """Initialize conflict resolver.

        Args:
            policy: Conflict resolution policy
        """
        self.policy = ConflictPolicy(policy)
        self.logger = logger.getChild('conflict_resolver')

    def resolve(self, fss_version: Any, crm_version: Any) -> Resolution:
        resolution = resolve(fss_version, crm_version, self.policy)
        self.logger.debug(f"Resolved conflict for {resolution.winner.value}: {resolution.reason}")
        return resolution
