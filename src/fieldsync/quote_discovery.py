"""Strategies for discovering quotes that may need propagation."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

import pytz

from .config import Settings
from .database import DatabaseManager
from .errors import DiscoveryUnavailable
from .models import IntegrationConfig, Quote, parse_timestamp
from .services.base import BaseGateway, GatewayError

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=pytz.UTC)


class QuoteDiscoveryStrategy(ABC):
    """Finds candidate quotes for a location since its previous poll.

    Discovery is read-only. Once the poll has processed the quotes it calls
    :meth:`settle` with the ids that failed, and only then may the strategy
    move its position forward, so failed quotes are found again next time.
    """

    name = 'base'

    def __init__(self, fss_gateway: BaseGateway, db_manager: DatabaseManager, page_size: int = 100):
        self.fss_gateway = fss_gateway
        self.db_manager = db_manager
        self.page_size = page_size
        self.logger = logger.getChild(self.name)

    @abstractmethod
    async def discover(self, config: IntegrationConfig, since: Optional[datetime]) -> List[Quote]:
        """Return candidate quotes.

        Args:
            config: Location integration config
            since: Time of the previous poll (None on the first poll)

        Raises:
            DiscoveryUnavailable: If discovery failed or found nothing
        """
        pass

    def settle(
        self,
        config: IntegrationConfig,
        since: Optional[datetime],
        quotes: List[Quote],
        failed_ids: Iterable[str]
    ) -> None:
        """Advance the discovery position past the quotes that were processed.

        Args:
            config: Location config the quotes were discovered with
            since: Time of the previous poll, as given to :meth:`discover`
            quotes: Quotes returned by :meth:`discover`
            failed_ids: IDs of quotes that failed and must be discovered again
        """
        pass

    async def _list(self, config: IntegrationConfig, **kwargs) -> List[Quote]:
        try:
            return await self.fss_gateway.list_quotes(config.location_id, limit=self.page_size, **kwargs)
        except GatewayError as e:
            raise DiscoveryUnavailable(f"Quote listing failed for location {config.location_id}: {e}") from e

    def _store_cursor(self, config: IntegrationConfig, cursor: Optional[str]) -> None:
        if cursor == config.quote_discovery_cursor:
            return
        with self.db_manager.get_session() as session:
            self.db_manager.set_quote_discovery_cursor(session, config.location_id, cursor)
        self.logger.debug(f"Moved quote discovery cursor for {config.location_id} to {cursor}")


def _numeric(ids: List[str]) -> bool:
    return bool(ids) and all(i.isdigit() for i in ids)


def _cursor_after(current: Optional[str], quotes: List[Quote]) -> Optional[str]:
    """Highest numeric quote id, or the last id when ids are not numeric."""
    ids = [q.id for q in quotes]
    if _numeric(ids):
        highest = max(int(i) for i in ids)
        if current is not None and current.isdigit() and int(current) > highest:
            return current
        return str(highest)
    return ids[-1] if ids else current


def settled_prefix(quotes: List[Quote], failed_ids: Iterable[str]) -> List[Quote]:
    """Quotes ahead of the first failure, in id order (listing order for non-numeric ids)."""
    failed = set(failed_ids)
    ordered = list(quotes)
    if _numeric([q.id for q in ordered]):
        ordered.sort(key=lambda q: int(q.id))

    prefix = []
    for quote in ordered:
        if quote.id in failed:
            break
        prefix.append(quote)
    return prefix


class CursorQuoteDiscovery(QuoteDiscoveryStrategy):
    """Lists quotes after a stored id cursor."""

    name = 'cursor'

    async def discover(self, config: IntegrationConfig, since: Optional[datetime]) -> List[Quote]:
        quotes = await self._list(config, since_id=config.quote_discovery_cursor)
        if not quotes:
            raise DiscoveryUnavailable(
                f"No quotes after cursor {config.quote_discovery_cursor} for location {config.location_id}"
            )
        return quotes

    def settle(self, config, since, quotes, failed_ids) -> None:
        prefix = settled_prefix(quotes, failed_ids)
        if len(prefix) < len(quotes):
            self.logger.info(
                f"Quote cursor for {config.location_id} held back by {len(quotes) - len(prefix)} unsettled quotes"
            )
        self._store_cursor(config, _cursor_after(config.quote_discovery_cursor, prefix))


class RecentlyModifiedQuoteDiscovery(QuoteDiscoveryStrategy):
    """Lists quotes modified after the previous poll.

    While quotes keep failing, the cursor holds the modification time they
    were first discovered from, and listing restarts there instead of at the
    previous poll.
    """

    name = 'recent'

    def _watermark(self, config: IntegrationConfig, since: Optional[datetime]) -> Optional[datetime]:
        if config.quote_discovery_cursor:
            try:
                return parse_timestamp(config.quote_discovery_cursor)
            except ValueError:
                self.logger.warning(
                    f"Ignoring unreadable quote watermark {config.quote_discovery_cursor} for {config.location_id}"
                )
        return since

    async def discover(self, config: IntegrationConfig, since: Optional[datetime]) -> List[Quote]:
        since = self._watermark(config, since)
        quotes = await self._list(config, modified_since=since)
        if since is not None:
            # The FSS may ignore the filter; quotes without a timestamp are kept
            quotes = [q for q in quotes if q.last_modified is None or q.last_modified > since]
        if not quotes:
            raise DiscoveryUnavailable(f"No quotes modified since {since} for location {config.location_id}")
        return quotes

    def settle(self, config, since, quotes, failed_ids) -> None:
        if set(failed_ids):
            held = self._watermark(config, since) or EPOCH
            self._store_cursor(config, held.isoformat())
        else:
            self._store_cursor(config, None)


STRATEGIES = {
    CursorQuoteDiscovery.name: CursorQuoteDiscovery,
    RecentlyModifiedQuoteDiscovery.name: RecentlyModifiedQuoteDiscovery,
}


def create_discovery_strategy(
    settings: Settings,
    fss_gateway: BaseGateway,
    db_manager: DatabaseManager
) -> QuoteDiscoveryStrategy:
    """Build the strategy named by ``settings.quote_discovery_strategy``."""
    strategy_class = STRATEGIES[settings.quote_discovery_strategy]
    return strategy_class(fss_gateway, db_manager, page_size=settings.quote_discovery_page_size)
