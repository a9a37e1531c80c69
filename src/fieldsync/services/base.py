"""Base gateway interface for the external platforms."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

import httpx
from pydantic import BaseModel

from ..config import Settings
from ..models import Appointment, Quote, SystemSide, TeamRef

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Base exception for gateway errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(GatewayError):
    """Authentication-related errors."""
    pass


class GatewayTimeout(GatewayError):
    """Request exceeded the configured timeout or the transport failed."""
    pass


class RateLimitError(GatewayError):
    """Rate limiting errors."""
    pass


class NotFoundError(GatewayError):
    """Entity not found errors."""
    pass


class UpsertResult(BaseModel):
    """Identifier (and modification time, when reported) of a written entity."""

    id: str
    last_modified: Optional[datetime] = None


class BaseGateway(ABC):
    """Abstract base class for platform gateways.

    Every gateway exposes the same operation set. Operations a platform does not
    own (quotes on the CRM, contacts on the FSS) raise :class:`GatewayError`.
    """

    def __init__(self, settings: Settings, side: SystemSide, transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize gateway.

        Args:
            settings: Application settings
            side: Platform this gateway talks to
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.settings = settings
        self.side = side
        self.logger = logger.getChild(side.value)
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    @abstractmethod
    def base_url(self) -> str:
        pass

    @abstractmethod
    async def _auth_headers(self) -> Dict[str, str]:
        """Headers authenticating a data request.

        Raises:
            AuthenticationError: If credentials are missing or rejected
        """
        pass

    async def _on_unauthorized(self) -> None:
        """Hook run once after a 401 before the request is replayed."""
        raise AuthenticationError(f"{self.side.value} rejected the credentials", status_code=401)

    # Appointments

    @abstractmethod
    async def list_appointments(
        self,
        owner_id: str,
        start: datetime,
        end: datetime,
        location_id: Optional[str] = None
    ) -> List[Appointment]:
        """List appointments of a team (FSS) or calendar (CRM) intersecting a window.

        Args:
            owner_id: FSS team ID or CRM calendar ID
            start: Window start
            end: Window end
            location_id: Location scope

        Returns:
            Normalized appointments

        Raises:
            GatewayError: If the appointments cannot be retrieved
        """
        pass

    @abstractmethod
    async def get_appointment(self, appointment_id: str) -> Appointment:
        """Get one appointment.

        Raises:
            NotFoundError: If the appointment does not exist
            GatewayError: If the appointment cannot be retrieved
        """
        pass

    @abstractmethod
    async def upsert_appointment(
        self,
        owner_id: str,
        appointment: Appointment,
        location_id: str,
        existing_id: Optional[str] = None,
        **extra
    ) -> UpsertResult:
        """Create (no existing_id) or update an appointment on this platform.

        Args:
            owner_id: FSS team ID or CRM calendar ID receiving the appointment
            appointment: Normalized appointment carrying the data to write
            location_id: Location scope
            existing_id: Platform ID of the appointment to update

        Returns:
            ID of the written appointment

        Raises:
            GatewayError: If the write fails
        """
        pass

    # Quotes, contacts and opportunities

    async def list_teams(self, location_id: str) -> List[TeamRef]:
        raise GatewayError(f"{self.side.value} gateway does not expose teams")

    async def list_quotes(
        self,
        location_id: str,
        since_id: Optional[str] = None,
        modified_since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Quote]:
        raise GatewayError(f"{self.side.value} gateway does not expose quotes")

    async def get_quote(self, quote_id: str) -> Quote:
        raise GatewayError(f"{self.side.value} gateway does not expose quotes")

    async def upsert_contact(self, location_id: str, fields: Dict[str, Any]) -> UpsertResult:
        raise GatewayError(f"{self.side.value} gateway does not expose contacts")

    async def add_contact_tags(self, contact_id: str, tags: List[str]) -> None:
        raise GatewayError(f"{self.side.value} gateway does not expose contacts")

    async def upsert_opportunity(
        self,
        location_id: str,
        contact_id: str,
        fields: Dict[str, Any],
        existing_id: Optional[str] = None
    ) -> UpsertResult:
        raise GatewayError(f"{self.side.value} gateway does not expose opportunities")

    # HTTP plumbing

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.settings.request_timeout_seconds,
                limits=httpx.Limits(
                    max_connections=self.settings.max_concurrent_requests
                ),
                transport=self._transport,
            )
        return self._http_client

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request, translating transport failures into gateway errors."""
        client = self._get_client()
        try:
            return await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayTimeout(f"{self.side.value} {method} {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise GatewayTimeout(f"{self.side.value} {method} {path} failed: {e}") from e

    def _raise_for_status(self, method: str, path: str, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        detail = response.text[:200]
        message = f"{self.side.value} {method} {path} returned {status}: {detail}"
        if status == 401 or status == 403:
            raise AuthenticationError(message, status_code=status)
        if status == 404:
            raise NotFoundError(message, status_code=status)
        if status == 429:
            raise RateLimitError(message, status_code=status)
        raise GatewayError(message, status_code=status)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        retry_auth: bool = True
    ) -> Any:
        """Perform an authenticated JSON request.

        A 401 runs :meth:`_on_unauthorized` and replays the request once.

        Returns:
            Decoded JSON body ({} for empty bodies)

        Raises:
            GatewayError: On transport failure, timeout or non-2xx status
        """
        headers = await self._auth_headers()
        response = await self._send(method, path, params=params, json=json, headers=headers)

        if response.status_code == 401 and retry_auth:
            self.logger.info(f"{self.side.value} returned 401 for {method} {path}, re-authenticating")
            await self._on_unauthorized()
            return await self._request(method, path, params=params, json=json, retry_auth=False)

        self._raise_for_status(method, path, response)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(f"{self.side.value} {method} {path} returned invalid JSON") from e

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def health_check(self) -> bool:
        """Check that the gateway can authenticate.

        Returns:
            True if healthy, False otherwise
        """
        try:
            await self._auth_headers()
            return True
        except GatewayError as e:
            self.logger.warning(f"{self.side.value} health check failed: {e}")
            return False
