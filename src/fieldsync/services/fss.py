"""Field-service system (FSS) gateway."""

import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .base import (
    BaseGateway, GatewayError, AuthenticationError, GatewayTimeout, RateLimitError, UpsertResult
)
from ..config import Settings
from ..errors import FieldSyncError
from ..extraction import (
    FSS_TEAM_FIELDS, RESPONSE_MODIFIED_FIELDS, extract_fields, extract_first, extract_id,
    extract_list, unwrap_entity
)
from ..mappers import appointment_to_fss_payload, fss_appointment_from_payload, quote_from_payload
from ..models import Appointment, Quote, SystemSide, TeamRef, parse_timestamp

# Seconds before expiry at which a cached token is considered stale
TOKEN_EXPIRY_MARGIN = 60
DEFAULT_TOKEN_LIFETIME = 3600


class FieldServiceGateway(BaseGateway):
    """FSS REST client with password-grant token handling."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize FSS gateway.

        Args:
            settings: Application settings
            transport: Optional httpx transport
        """
        super().__init__(settings, SystemSide.FSS, transport)
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._token_expires_at: float = 0.0

    @property
    def base_url(self) -> str:
        return self.settings.fss_api_base_url

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self._get_token()
        return {
            'Authorization': f"Bearer {token}",
            'Accept': 'application/json',
        }

    async def _get_token(self) -> str:
        if self._access_token and self._token_expires_at - TOKEN_EXPIRY_MARGIN > time.time():
            return self._access_token
        return await self._password_grant()

    async def _on_unauthorized(self) -> None:
        """Refresh the token after a 401, falling back to the password grant."""
        self._access_token = None
        if self._refresh_token:
            try:
                await self._fetch_token({
                    'grant_type': 'refresh_token',
                    'refresh_token': self._refresh_token,
                    'username': self.settings.fss_username,
                    'password': self.settings.fss_password,
                })
                return
            except GatewayError as e:
                self.logger.warning(f"FSS token refresh failed, using password grant: {e}")
        await self._password_grant()

    async def _password_grant(self) -> str:
        if not self.settings.fss_username or not self.settings.fss_password:
            raise AuthenticationError("FSS credentials not configured")
        return await self._fetch_token({
            'grant_type': 'password',
            'username': self.settings.fss_username,
            'password': self.settings.fss_password,
        })

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((GatewayTimeout, RateLimitError)),
        reraise=True
    )
    async def _fetch_token(self, form: Dict[str, str]) -> str:
        """POST the token endpoint and cache the result."""
        response = await self._send(
            'POST', '/token',
            data=form,
            headers={'Content-Type': 'application/x-www-form-urlencoded'}
        )
        if response.status_code in (400, 401, 403):
            raise AuthenticationError(
                f"FSS authentication failed ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code
            )
        self._raise_for_status('POST', '/token', response)

        data = response.json()
        token = data.get('access_token')
        if not token:
            raise AuthenticationError("FSS token response carried no access_token")

        self._access_token = token
        self._refresh_token = data.get('refresh_token') or self._refresh_token
        self._token_expires_at = time.time() + float(data.get('expires_in') or DEFAULT_TOKEN_LIFETIME)
        self.logger.debug("Obtained FSS access token")
        return token

    async def list_teams(self, location_id: str) -> List[TeamRef]:
        """List the location's teams."""
        data = await self._request('GET', '/teams', params={'locationId': location_id})
        teams = []
        for item in extract_list(data):
            fields = extract_fields(item, FSS_TEAM_FIELDS)
            if fields['team_id'] is None:
                continue
            teams.append(TeamRef(team_id=str(fields['team_id']), team_name=fields['team_name']))
        return teams

    async def list_appointments(
        self,
        owner_id: str,
        start: datetime,
        end: datetime,
        location_id: Optional[str] = None
    ) -> List[Appointment]:
        """List a team's appointments in a window, following pagination."""
        page_size = self.settings.page_size
        params: Dict[str, Any] = {
            'teamId': owner_id,
            'startDate': start.isoformat(),
            'endDate': end.isoformat(),
            'pageSize': page_size,
        }
        if location_id:
            params['locationId'] = location_id

        appointments = []
        page = 1
        while True:
            params['page'] = page
            data = await self._request('GET', '/appointments', params=params)
            items = extract_list(data)
            for item in items:
                try:
                    appointments.append(fss_appointment_from_payload(item, team_id=owner_id))
                except FieldSyncError as e:
                    self.logger.warning(f"Skipping malformed FSS appointment for team {owner_id}: {e}")

            if len(items) < page_size:
                break
            page += 1

        return appointments

    async def get_appointment(self, appointment_id: str) -> Appointment:
        data = await self._request('GET', f"/appointments/{appointment_id}")
        return fss_appointment_from_payload(unwrap_entity(data))

    async def upsert_appointment(
        self,
        owner_id: str,
        appointment: Appointment,
        location_id: str,
        existing_id: Optional[str] = None,
        crm_appointment_id: Optional[str] = None,
        **extra
    ) -> UpsertResult:
        body = appointment_to_fss_payload(appointment, owner_id, location_id, crm_appointment_id)
        if existing_id:
            data = await self._request('PUT', f"/appointments/{existing_id}", json=body)
        else:
            data = await self._request('POST', '/appointments', json=body)

        appointment_id = extract_id(data) or existing_id
        if not appointment_id:
            raise GatewayError("FSS appointment write returned no appointment id")
        return UpsertResult(
            id=appointment_id,
            last_modified=_parse_optional(extract_first(data, RESPONSE_MODIFIED_FIELDS)),
        )

    async def list_quotes(
        self,
        location_id: str,
        since_id: Optional[str] = None,
        modified_since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Quote]:
        """List quotes, optionally after a quote ID or modified after a time."""
        params: Dict[str, Any] = {
            'locationId': location_id,
            'limit': limit or self.settings.quote_discovery_page_size,
        }
        if since_id:
            params['sinceId'] = since_id
        if modified_since:
            params['modifiedSince'] = modified_since.isoformat()

        data = await self._request('GET', '/quotes', params=params)
        quotes = []
        for item in extract_list(data):
            try:
                quotes.append(quote_from_payload(item))
            except FieldSyncError as e:
                self.logger.warning(f"Skipping malformed FSS quote: {e}")
        return quotes

    async def get_quote(self, quote_id: str) -> Quote:
        data = await self._request('GET', f"/quotes/{quote_id}")
        return quote_from_payload(unwrap_entity(data))


def _parse_optional(value: Any) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except ValueError:
        return None
