"""Quote polling and propagation of FSS quotes into CRM contacts and opportunities."""

import logging
import math
from datetime import datetime
from typing import List, Optional

import pytz

from .config import Settings
from .database import DatabaseManager
from .errors import FieldSyncError, MissingIdentifier
from .mappers import map_quote_to_contact, quote_opportunity_fields
from .models import (
    IntegrationConfig, LocationPollResult, Quote, QuoteSyncResult, SyncErrorCode, ensure_timezone_aware, now_ms
)
from .quote_discovery import QuoteDiscoveryStrategy, create_discovery_strategy
from .services.base import BaseGateway, GatewayError

logger = logging.getLogger(__name__)


def _ms_to_datetime(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=pytz.UTC)


class QuoteSyncEngine:
    """Discovers FSS quotes per location and propagates them idempotently into the CRM."""

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        fss_gateway: BaseGateway,
        crm_gateway: BaseGateway,
        discovery: Optional[QuoteDiscoveryStrategy] = None
    ):
        """Initialize quote sync engine.

        Args:
            settings: Application settings
            db_manager: Database manager
            fss_gateway: FSS gateway (quote source)
            crm_gateway: CRM gateway (contact/opportunity target)
            discovery: Discovery strategy (built from settings if omitted)
        """
        self.settings = settings
        self.db_manager = db_manager
        self.fss_gateway = fss_gateway
        self.crm_gateway = crm_gateway
        self.discovery = discovery or create_discovery_strategy(settings, fss_gateway, db_manager)
        self.logger = logger.getChild('quote_sync')

    def _load_config(self, location_id: str) -> Optional[IntegrationConfig]:
        with self.db_manager.get_session() as session:
            row = self.db_manager.get_integration_config(session, location_id)
            return row.to_model() if row else None

    def _is_unchanged(self, location_id: str, quote: Quote) -> Optional[QuoteSyncResult]:
        """Skip result for an already propagated, unchanged quote; None when it must be propagated."""
        with self.db_manager.get_session() as session:
            record = self.db_manager.get_quote_sync(session, location_id, quote.id)
            if record is None or record.crm_contact_id is None or record.last_synced_at is None:
                return None

            stored_modified = ensure_timezone_aware(record.quote_last_modified)
            if quote.last_modified is not None and stored_modified is not None:
                changed = quote.last_modified > stored_modified
            else:
                changed = quote.content_hash() != record.content_hash
            if changed:
                return None

            return QuoteSyncResult(
                success=True,
                quote_id=quote.id,
                contact_id=record.crm_contact_id,
                opportunity_id=record.crm_opportunity_id,
                skipped=True,
            )

    async def sync_quote(
        self,
        location_id: str,
        quote_id: str,
        config: Optional[IntegrationConfig] = None
    ) -> QuoteSyncResult:
        """Propagate one quote into a CRM contact (and opportunity).

        Args:
            location_id: Location ID
            quote_id: FSS quote ID
            config: Location config (loaded when omitted)

        Returns:
            Result with the contact and opportunity IDs, or the failure

        Raises:
            MissingIdentifier: If location_id or quote_id is empty
        """
        if not location_id or not quote_id:
            raise MissingIdentifier("location_id and quote_id are required")
        quote_id = str(quote_id)

        if config is None:
            config = self._load_config(location_id) or IntegrationConfig(location_id=location_id)

        try:
            quote = await self.fss_gateway.get_quote(quote_id)
        except GatewayError as e:
            self.logger.warning(f"Failed to read quote {quote_id}: {e}")
            return QuoteSyncResult(
                success=False, quote_id=quote_id, error_code=SyncErrorCode.REMOTE_READ_FAILED, error=str(e)
            )
        except FieldSyncError as e:
            self.logger.warning(f"Quote {quote_id} is malformed: {e}")
            return QuoteSyncResult(success=False, quote_id=quote_id, error_code=e.code, error=str(e))

        skipped = self._is_unchanged(location_id, quote)
        if skipped is not None:
            self.logger.debug(f"Quote {quote_id} already synced and unchanged")
            return skipped

        with self.db_manager.get_session() as session:
            record = self.db_manager.get_quote_sync(session, location_id, quote_id)
            existing_opportunity_id = record.crm_opportunity_id if record else None

        contact_fields = map_quote_to_contact(quote, config.field_mappings, config.custom_field_prefix)
        try:
            contact = await self.crm_gateway.upsert_contact(location_id, contact_fields)
        except GatewayError as e:
            self.logger.error(f"Failed to upsert contact for quote {quote_id}: {e}")
            return QuoteSyncResult(
                success=False, quote_id=quote_id, error_code=SyncErrorCode.REMOTE_WRITE_FAILED, error=str(e)
            )

        if config.crm_tags:
            try:
                await self.crm_gateway.add_contact_tags(contact.id, config.crm_tags)
            except GatewayError as e:
                self.logger.warning(f"Failed to tag contact {contact.id} for quote {quote_id}: {e}")

        opportunity_id = existing_opportunity_id
        if config.create_opportunities:
            try:
                opportunity = await self.crm_gateway.upsert_opportunity(
                    location_id,
                    contact.id,
                    quote_opportunity_fields(quote, config.crm_pipeline_id, config.crm_pipeline_stage_id),
                    existing_id=existing_opportunity_id
                )
                opportunity_id = opportunity.id
            except GatewayError as e:
                self.logger.warning(f"Failed to upsert opportunity for quote {quote_id}: {e}")

        with self.db_manager.get_session() as session:
            self.db_manager.upsert_quote_sync(
                session,
                location_id,
                quote_id,
                fss_lead_id=quote.lead_id,
                crm_contact_id=contact.id,
                crm_opportunity_id=opportunity_id,
                content_hash=quote.content_hash(),
                quote_last_modified=quote.last_modified,
                last_synced_at=datetime.now(pytz.UTC),
            )

        self.logger.info(f"Synced quote {quote_id} to contact {contact.id} (opportunity {opportunity_id})")
        return QuoteSyncResult(
            success=True, quote_id=quote_id, contact_id=contact.id, opportunity_id=opportunity_id
        )

    def _skip_reason(self, config: IntegrationConfig) -> Optional[str]:
        if not config.enabled:
            return "Integration disabled"
        if not config.sync_quotes:
            return "Quote sync disabled"
        if not config.quote_polling_enabled:
            return "Quote polling disabled"
        return None

    async def poll_location(self, config: IntegrationConfig, now: int) -> LocationPollResult:
        """Run one poll attempt for a location if it is due.

        The poll timestamp is claimed before discovery, so it advances whatever
        the outcome and a concurrent invocation that lost the claim skips.
        The discovery position only moves after the quotes were processed,
        and never past a quote that failed.
        """
        result = LocationPollResult(location_id=config.location_id, last_poll_at=config.last_quote_poll_at)

        reason = self._skip_reason(config)
        if reason:
            result.skipped = True
            result.reason = reason
            return result

        due_at = config.quote_poll_due_at()
        if config.last_quote_poll_at is not None and now < due_at:
            result.skipped = True
            result.next_poll_in_minutes = math.ceil((due_at - now) / 60000)
            result.reason = f"Next poll due in {result.next_poll_in_minutes} minutes"
            return result

        with self.db_manager.get_session() as session:
            claimed = self.db_manager.claim_quote_poll(session, config.location_id, config.last_quote_poll_at, now)
        if not claimed:
            result.skipped = True
            result.reason = "Poll claimed by a concurrent invocation"
            return result
        result.last_poll_at = now

        since = _ms_to_datetime(config.last_quote_poll_at)
        try:
            quotes = await self.discovery.discover(config, since)
        except FieldSyncError as e:
            self.logger.info(f"Quote discovery for {config.location_id}: {e}")
            result.discovery_error_code = e.code
            return result

        failed_ids = set()
        for quote in quotes:
            try:
                quote_result = await self.sync_quote(config.location_id, quote.id, config)
            except Exception as e:
                self.logger.exception(f"Unexpected error syncing quote {quote.id}")
                quote_result = QuoteSyncResult(
                    success=False, quote_id=quote.id, error_code=SyncErrorCode.INTERNAL_ERROR, error=str(e)
                )

            if not quote_result.success:
                failed_ids.add(quote.id)
                result.errors += 1
                result.error_details.append(quote_result)
            elif quote_result.skipped:
                result.quotes_skipped += 1
            else:
                result.quotes_synced += 1

        self.discovery.settle(config, since, quotes, failed_ids)

        self.logger.info(
            f"Quote poll for {config.location_id}: {result.quotes_synced} synced, "
            f"{result.quotes_skipped} unchanged, {result.errors} errors"
        )
        return result

    async def poll_due_locations(self, now: Optional[int] = None) -> List[LocationPollResult]:
        """Poll every location whose quote poll is due.

        Args:
            now: Current time in epoch milliseconds (defaults to the wall clock)

        Returns:
            One result per configured location, skipped ones included
        """
        now = now if now is not None else now_ms()
        with self.db_manager.get_session() as session:
            configs = [row.to_model() for row in self.db_manager.list_integration_configs(session)]

        results = []
        for config in configs:
            try:
                results.append(await self.poll_location(config, now))
            except Exception as e:
                self.logger.exception(f"Quote poll failed for location {config.location_id}")
                results.append(LocationPollResult(
                    location_id=config.location_id,
                    errors=1,
                    error_details=[QuoteSyncResult(
                        success=False, error_code=SyncErrorCode.INTERNAL_ERROR, error=str(e)
                    )],
                ))
        return results
