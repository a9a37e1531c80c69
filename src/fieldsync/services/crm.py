"""CRM gateway (calendars, contacts, opportunities)."""

from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from .base import BaseGateway, GatewayError, AuthenticationError, UpsertResult
from ..config import Settings
from ..errors import FieldSyncError
from ..extraction import RESPONSE_MODIFIED_FIELDS, extract_first, extract_id, extract_list, unwrap_entity
from ..mappers import appointment_to_crm_payload, crm_appointment_from_payload
from ..models import Appointment, SystemSide, parse_timestamp


def _epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


class CRMGateway(BaseGateway):
    """CRM REST client authenticated with a bearer token and a Version header."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(settings, SystemSide.CRM, transport)

    @property
    def base_url(self) -> str:
        return self.settings.crm_api_base_url

    async def _auth_headers(self) -> Dict[str, str]:
        if not self.settings.crm_api_token:
            raise AuthenticationError("CRM API token not configured")
        return {
            'Authorization': f"Bearer {self.settings.crm_api_token}",
            'Version': self.settings.crm_api_version,
            'Accept': 'application/json',
        }

    async def list_appointments(
        self,
        owner_id: str,
        start: datetime,
        end: datetime,
        location_id: Optional[str] = None
    ) -> List[Appointment]:
        """List a calendar's events in a window."""
        params: Dict[str, Any] = {
            'calendarId': owner_id,
            'startTime': _epoch_ms(start),
            'endTime': _epoch_ms(end),
        }
        if location_id:
            params['locationId'] = location_id

        data = await self._request('GET', '/calendars/events', params=params)
        appointments = []
        for item in extract_list(data):
            try:
                appointments.append(crm_appointment_from_payload(item, calendar_id=owner_id))
            except FieldSyncError as e:
                self.logger.warning(f"Skipping malformed CRM event on calendar {owner_id}: {e}")
        return appointments

    async def get_appointment(self, appointment_id: str) -> Appointment:
        data = await self._request('GET', f"/calendars/events/appointments/{appointment_id}")
        return crm_appointment_from_payload(unwrap_entity(data))

    async def upsert_appointment(
        self,
        owner_id: str,
        appointment: Appointment,
        location_id: str,
        existing_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        **extra
    ) -> UpsertResult:
        body = appointment_to_crm_payload(appointment, owner_id, location_id, contact_id)
        if existing_id:
            data = await self._request('PUT', f"/calendars/events/appointments/{existing_id}", json=body)
        else:
            data = await self._request('POST', '/calendars/events/appointments', json=body)

        appointment_id = extract_id(data) or existing_id
        if not appointment_id:
            raise GatewayError("CRM appointment write returned no appointment id")

        try:
            last_modified = parse_timestamp(extract_first(data, RESPONSE_MODIFIED_FIELDS))
        except ValueError:
            last_modified = None
        return UpsertResult(id=appointment_id, last_modified=last_modified)

    async def upsert_contact(self, location_id: str, fields: Dict[str, Any]) -> UpsertResult:
        """Create or update a contact, matched by the CRM on email/phone."""
        data = await self._request('POST', '/contacts/upsert', json=dict(fields, locationId=location_id))
        contact_id = extract_id(data, ('contact.id', 'id'))
        if not contact_id:
            raise GatewayError("CRM contact upsert returned no contact id")
        return UpsertResult(id=contact_id)

    async def add_contact_tags(self, contact_id: str, tags: List[str]) -> None:
        if not tags:
            return
        await self._request('POST', f"/contacts/{contact_id}/tags", json={'tags': tags})

    async def upsert_opportunity(
        self,
        location_id: str,
        contact_id: str,
        fields: Dict[str, Any],
        existing_id: Optional[str] = None
    ) -> UpsertResult:
        body = dict(fields, locationId=location_id, contactId=contact_id)
        if existing_id:
            data = await self._request('PUT', f"/opportunities/{existing_id}", json=body)
        else:
            data = await self._request('POST', '/opportunities/', json=body)

        opportunity_id = extract_id(data, ('opportunity.id', 'id')) or existing_id
        if not opportunity_id:
            raise GatewayError("CRM opportunity write returned no opportunity id")
        return UpsertResult(id=opportunity_id)
