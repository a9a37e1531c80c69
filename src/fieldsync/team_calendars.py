"""Team to calendar mapping management."""

import logging
from typing import List, Optional

from .database import DatabaseManager, TeamCalendarMappingDB
from .models import TeamCalendarMapping, TeamRef
from .services.base import BaseGateway

logger = logging.getLogger(__name__)


def _to_model(row: TeamCalendarMappingDB) -> TeamCalendarMapping:
    return TeamCalendarMapping(
        location_id=row.location_id,
        fss_team_id=row.fss_team_id,
        fss_team_name=row.fss_team_name,
        crm_calendar_id=row.crm_calendar_id,
        crm_calendar_name=row.crm_calendar_name,
        enabled=row.enabled,
    )


class TeamCalendarManager:
    """Bidirectional lookup between FSS teams and CRM calendars.

    Disabled mappings are kept (history keeps referencing the team) but are
    invisible to team enumeration for availability and to appointment routing.
    """

    def __init__(self, db_manager: DatabaseManager):
        """Initialize team calendar manager.

        Args:
            db_manager: Database manager
        """
        self.db_manager = db_manager
        self.logger = logger.getChild('team_calendars')

    def list_mappings(self, location_id: str, enabled_only: bool = False) -> List[TeamCalendarMapping]:
        """List a location's mappings in stable order."""
        with self.db_manager.get_session() as session:
            rows = self.db_manager.get_team_mappings(session, location_id, enabled_only=enabled_only)
            return [_to_model(row) for row in rows]

    def enabled_teams(self, location_id: str) -> List[TeamRef]:
        """Teams eligible for availability checks and routing."""
        return [
            TeamRef(team_id=m.fss_team_id, team_name=m.fss_team_name)
            for m in self.list_mappings(location_id, enabled_only=True)
        ]

    def get_mapping(self, location_id: str, fss_team_id: str) -> Optional[TeamCalendarMapping]:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_team_mapping(session, location_id, str(fss_team_id))
            return _to_model(row) if row else None

    def get_calendar_for_team(self, location_id: str, fss_team_id: str) -> Optional[TeamCalendarMapping]:
        """Enabled mapping routing a team's appointments, or None."""
        mapping = self.get_mapping(location_id, fss_team_id)
        if mapping is None or not mapping.enabled:
            return None
        return mapping

    def get_team_for_calendar(self, location_id: str, crm_calendar_id: str) -> Optional[TeamCalendarMapping]:
        """Enabled mapping owning a CRM calendar, or None."""
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_team_mapping_by_calendar(session, location_id, str(crm_calendar_id))
            return _to_model(row) if row else None

    def set_mapping(
        self,
        location_id: str,
        fss_team_id: str,
        crm_calendar_id: str,
        fss_team_name: Optional[str] = None,
        crm_calendar_name: Optional[str] = None,
        enabled: bool = True
    ) -> TeamCalendarMapping:
        """Create or replace the mapping for (location, team)."""
        with self.db_manager.get_session() as session:
            row = self.db_manager.upsert_team_mapping(
                session,
                location_id,
                str(fss_team_id),
                str(crm_calendar_id),
                fss_team_name=fss_team_name,
                crm_calendar_name=crm_calendar_name,
                enabled=enabled
            )
            self.logger.info(f"Mapped team {fss_team_id} -> calendar {crm_calendar_id} for location {location_id}")
            return _to_model(row)

    def set_enabled(self, location_id: str, fss_team_id: str, enabled: bool) -> Optional[TeamCalendarMapping]:
        with self.db_manager.get_session() as session:
            row = self.db_manager.set_team_mapping_enabled(session, location_id, str(fss_team_id), enabled)
            if row is None:
                return None
            self.logger.info(f"{'Enabled' if enabled else 'Disabled'} mapping for team {fss_team_id}")
            return _to_model(row)

    def delete_mapping(self, location_id: str, fss_team_id: str) -> bool:
        with self.db_manager.get_session() as session:
            return self.db_manager.delete_team_mapping(session, location_id, str(fss_team_id))

    async def find_unmapped_teams(self, fss_gateway: BaseGateway, location_id: str) -> List[TeamRef]:
        """FSS teams of a location that have no mapping yet.

        Args:
            fss_gateway: FSS gateway used to list teams
            location_id: Location ID

        Returns:
            Teams without a mapping, in the order the FSS lists them
        """
        teams = await fss_gateway.list_teams(location_id)
        mapped = {m.fss_team_id for m in self.list_mappings(location_id)}
        unmapped = [t for t in teams if t.team_id not in mapped]
        self.logger.info(f"Location {location_id}: {len(teams)} FSS teams, {len(unmapped)} unmapped")
        return unmapped
