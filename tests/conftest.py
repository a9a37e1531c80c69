"""Shared fixtures: isolated settings, a SQLite store and in-memory gateways."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from fieldsync.config import Settings
from fieldsync.database import DatabaseManager
from fieldsync.models import Appointment, Quote, SystemSide, TeamRef
from fieldsync.services.base import BaseGateway, GatewayError, NotFoundError, UpsertResult
from fieldsync.team_calendars import TeamCalendarManager


class IsolatedSettings(Settings):
    """Settings that don't read from .env files or the secrets directory."""
    model_config = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None
    )


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=pytz.UTC)


def future(days: int = 1, hour: int = 9, minute: int = 0) -> datetime:
    """A whole-minute UTC time inside the default sync window."""
    base = datetime.now(pytz.UTC).replace(hour=hour, minute=minute, second=0, microsecond=0)
    return base + timedelta(days=days)


class FakeGateway(BaseGateway):
    """In-memory platform keyed by appointment id; owner is team (FSS) or calendar (CRM)."""

    owner_field = 'team_id'
    id_prefix = 'x'

    def __init__(self, settings: Settings, side: SystemSide):
        super().__init__(settings, side)
        self.appointments: Dict[str, Appointment] = {}
        self.writes: List[tuple] = []
        self.failing_owners = set()
        self.fail_writes = False
        self.fail_write_ids = set()
        self.list_calls: List[str] = []
        self._counter = 0

    @property
    def base_url(self) -> str:
        return f"http://{self.side.value}.test"

    async def _auth_headers(self) -> Dict[str, str]:
        return {}

    def add(self, appointment: Appointment) -> Appointment:
        self.appointments[appointment.id] = appointment
        return appointment

    async def list_appointments(self, owner_id, start, end, location_id=None) -> List[Appointment]:
        self.list_calls.append(owner_id)
        if owner_id in self.failing_owners:
            raise GatewayError(f"listing {owner_id} timed out")
        return [
            a for a in self.appointments.values()
            if getattr(a, self.owner_field) == owner_id and a.start < end and a.end > start
        ]

    async def get_appointment(self, appointment_id: str) -> Appointment:
        if appointment_id not in self.appointments:
            raise NotFoundError(f"{appointment_id} not found", status_code=404)
        return self.appointments[appointment_id]

    async def upsert_appointment(self, owner_id, appointment, location_id, existing_id=None, **extra) -> UpsertResult:
        if self.fail_writes or appointment.id in self.fail_write_ids:
            raise GatewayError(f"{self.side.value} write failed", status_code=503)

        if existing_id:
            appointment_id = existing_id
            self.writes.append(('update', appointment_id))
        else:
            self._counter += 1
            appointment_id = f"{self.id_prefix}-{self._counter}"
            self.writes.append(('create', appointment_id))

        modified = datetime.now(pytz.UTC)
        update = {'id': appointment_id, 'source': self.side, 'last_modified': modified, self.owner_field: owner_id}
        self.appointments[appointment_id] = appointment.model_copy(update=update)
        return UpsertResult(id=appointment_id, last_modified=modified)


class FakeFSSGateway(FakeGateway):
    owner_field = 'team_id'
    id_prefix = 'fss'

    def __init__(self, settings: Settings):
        super().__init__(settings, SystemSide.FSS)
        self.teams: List[TeamRef] = []
        self.quotes: Dict[str, Quote] = {}
        self.fail_list_quotes = False
        self.quote_list_calls: List[Dict[str, Any]] = []

    async def list_teams(self, location_id: str) -> List[TeamRef]:
        return list(self.teams)

    async def list_quotes(self, location_id, since_id=None, modified_since=None, limit=None) -> List[Quote]:
        self.quote_list_calls.append({'since_id': since_id, 'modified_since': modified_since})
        if self.fail_list_quotes:
            raise GatewayError("quote listing failed", status_code=500)
        quotes = sorted(self.quotes.values(), key=lambda q: int(q.id))
        if since_id is not None:
            quotes = [q for q in quotes if int(q.id) > int(since_id)]
        return quotes[:limit] if limit else quotes

    async def get_quote(self, quote_id: str) -> Quote:
        if quote_id not in self.quotes:
            raise NotFoundError(f"quote {quote_id} not found", status_code=404)
        return self.quotes[quote_id]


class FakeCRMGateway(FakeGateway):
    owner_field = 'calendar_id'
    id_prefix = 'crm'

    def __init__(self, settings: Settings):
        super().__init__(settings, SystemSide.CRM)
        self.contacts: Dict[str, Dict[str, Any]] = {}
        self.contact_writes: List[Dict[str, Any]] = []
        self.tags: Dict[str, List[str]] = {}
        self.opportunities: Dict[str, Dict[str, Any]] = {}
        self.fail_contacts = False
        self.fail_tags = False

    async def upsert_appointment(self, owner_id, appointment, location_id, existing_id=None,
                                 contact_id: Optional[str] = None, **extra) -> UpsertResult:
        return await super().upsert_appointment(owner_id, appointment, location_id, existing_id)

    async def upsert_contact(self, location_id: str, fields: Dict[str, Any]) -> UpsertResult:
        if self.fail_contacts:
            raise GatewayError("contact upsert failed", status_code=500)
        self.contact_writes.append(fields)
        key = fields.get('email') or fields.get('phone') or f"anon-{len(self.contacts)}"
        contact_id = f"contact-{key}"
        self.contacts[contact_id] = fields
        return UpsertResult(id=contact_id)

    async def add_contact_tags(self, contact_id: str, tags: List[str]) -> None:
        if self.fail_tags:
            raise GatewayError("tagging failed", status_code=500)
        self.tags.setdefault(contact_id, []).extend(tags)

    async def upsert_opportunity(self, location_id, contact_id, fields, existing_id=None) -> UpsertResult:
        opportunity_id = existing_id or f"opp-{len(self.opportunities) + 1}"
        self.opportunities[opportunity_id] = dict(fields, contactId=contact_id)
        return UpsertResult(id=opportunity_id)


@pytest.fixture
def settings(tmp_path):
    return IsolatedSettings(
        fss_username='fss-user',
        fss_password='fss-pass',
        crm_api_token='crm-token',
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/test.db'
    )


@pytest.fixture
def db(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    return manager


@pytest.fixture
def team_calendars(db):
    return TeamCalendarManager(db)


@pytest.fixture
def fss(settings):
    return FakeFSSGateway(settings)


@pytest.fixture
def crm(settings):
    return FakeCRMGateway(settings)


@pytest.fixture
def location(db, team_calendars):
    """Location L1 with two mapped teams (T1 -> C1, T2 -> C2) and appointment sync on."""
    with db.get_session() as session:
        db.upsert_integration_config(
            session, 'L1',
            enabled=True,
            sync_appointments=True,
            crm_calendar_id='C-default',
        )
    team_calendars.set_mapping('L1', 'T1', 'C1', fss_team_name='Team One')
    team_calendars.set_mapping('L1', 'T2', 'C2', fss_team_name='Team Two')
    return 'L1'


def make_appointment(source: SystemSide, appointment_id: str, start: datetime, hours: float = 1, **kwargs) -> Appointment:
    return Appointment(
        id=appointment_id,
        source=source,
        start=start,
        end=start + timedelta(hours=hours),
        **kwargs
    )
