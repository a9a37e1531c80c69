"""Dispatch of inbound platform events onto the sync engines."""

import logging
from typing import Any, Dict, Optional

from .errors import MissingIdentifier
from .extraction import (
    WEBHOOK_EVENT_TYPE_FIELDS, WEBHOOK_PAYLOAD_FIELDS, WEBHOOK_QUOTE_ID_FIELDS, extract_first, extract_id
)
from .mappers import crm_appointment_from_payload, fss_appointment_from_payload
from .models import Appointment, AppointmentSyncResult, QuoteSyncResult, SystemSide
from .quote_sync import QuoteSyncEngine
from .services.base import NotFoundError
from .sync_engine import AppointmentSyncEngine

logger = logging.getLogger(__name__)

CREATE_OR_UPDATE = 'upsert'
CANCEL = 'cancel'


def event_kind(event_type: Optional[str]) -> Optional[str]:
    """Classify an event type string (``AppointmentCreate``, ``appointment.deleted``, ...)."""
    if not event_type:
        return None
    lowered = str(event_type).lower()
    if 'cancel' in lowered or 'delete' in lowered:
        return CANCEL
    if 'create' in lowered or 'update' in lowered or 'book' in lowered or 'reschedul' in lowered:
        return CREATE_OR_UPDATE
    return None


def event_payload(body: Dict[str, Any]) -> Dict[str, Any]:
    """Entity carried by an event, or the body itself for flat events."""
    for key in WEBHOOK_PAYLOAD_FIELDS:
        value = body.get(key)
        if isinstance(value, dict):
            return value
    return body


class WebhookDispatcher:
    """Routes appointment and quote events to the matching sync direction.

    Cancellation and deletion flow as a ``cancelled`` status update, never as a
    deletion on the other platform.
    """

    def __init__(self, sync_engine: AppointmentSyncEngine, quote_engine: Optional[QuoteSyncEngine] = None):
        self.sync_engine = sync_engine
        self.quote_engine = quote_engine
        self.logger = logger.getChild('webhooks')

    def _appointment_id(self, payload: Dict[str, Any], side: SystemSide) -> str:
        if side == SystemSide.CRM:
            appointment_id = extract_id(payload, ('id', 'appointmentId', 'eventId'))
        else:
            appointment_id = extract_id(payload, ('Id', 'AppointmentId', 'BookingId', 'id'))
        if not appointment_id:
            raise MissingIdentifier(f"{side.value} event carries no appointment id")
        return appointment_id

    async def _appointment(self, body: Dict[str, Any], side: SystemSide, kind: str) -> Appointment:
        payload = event_payload(body)
        appointment_id = self._appointment_id(payload, side)
        if side == SystemSide.CRM:
            has_times = extract_first(payload, ('startTime', 'start')) is not None
        else:
            has_times = extract_first(payload, ('StartTime', 'ScheduledStart', 'ServiceDate', 'startTime')) is not None

        if has_times:
            if side == SystemSide.CRM:
                appointment = crm_appointment_from_payload(payload)
            else:
                appointment = fss_appointment_from_payload(payload)
        else:
            # Delete events often carry only the id
            gateway = self.sync_engine.crm_gateway if side == SystemSide.CRM else self.sync_engine.fss_gateway
            appointment = await gateway.get_appointment(appointment_id)

        if kind == CANCEL and not appointment.is_cancelled:
            appointment = appointment.model_copy(update={'status': 'cancelled'})
        return appointment

    async def _handle_appointment_event(
        self,
        body: Dict[str, Any],
        location_id: str,
        side: SystemSide
    ) -> Optional[AppointmentSyncResult]:
        if not location_id:
            raise MissingIdentifier("location_id is required")
        event_type = extract_first(body, WEBHOOK_EVENT_TYPE_FIELDS)
        kind = event_kind(event_type)
        if kind is None:
            self.logger.debug(f"Ignoring {side.value} event {event_type!r}")
            return None

        try:
            appointment = await self._appointment(body, side, kind)
        except NotFoundError:
            if kind != CANCEL:
                raise
            # Already gone from its own platform: cancel through the sync record
            appointment_id = self._appointment_id(event_payload(body), side)
            self.logger.info(f"{side.value} event {event_type} for deleted appointment {appointment_id}")
            return await self.sync_engine.cancel_deleted(side, appointment_id, location_id)

        self.logger.info(f"{side.value} event {event_type} for appointment {appointment.id}")
        if side == SystemSide.CRM:
            return await self.sync_engine.sync_from_crm_to_fss(appointment, location_id)
        return await self.sync_engine.sync_from_fss_to_crm(appointment, location_id)

    async def handle_crm_appointment_event(
        self,
        body: Dict[str, Any],
        location_id: str
    ) -> Optional[AppointmentSyncResult]:
        """Handle a CRM appointment event by syncing it into the FSS.

        A delete naming an appointment the CRM no longer returns cancels its
        FSS counterpart, or is skipped when it was never synced.

        Returns:
            Sync result, or None for event types that are not appointment changes

        Raises:
            MissingIdentifier: If the event has no appointment or location id
        """
        return await self._handle_appointment_event(body, location_id, SystemSide.CRM)

    async def handle_fss_appointment_event(
        self,
        body: Dict[str, Any],
        location_id: str
    ) -> Optional[AppointmentSyncResult]:
        """Handle an FSS appointment event by syncing it into the CRM."""
        return await self._handle_appointment_event(body, location_id, SystemSide.FSS)

    async def handle_quote_event(self, body: Dict[str, Any], location_id: str) -> QuoteSyncResult:
        """Propagate the quote named by an FSS quote event."""
        if not location_id:
            raise MissingIdentifier("location_id is required")
        if self.quote_engine is None:
            raise RuntimeError("Quote events need a quote sync engine")

        quote_id = extract_id(body, WEBHOOK_QUOTE_ID_FIELDS)
        if not quote_id:
            raise MissingIdentifier("Quote event carries no quote id")
        return await self.quote_engine.sync_quote(location_id, quote_id)
