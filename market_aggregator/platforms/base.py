"""
Base class for venue data sources.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from ..ingestion.batch_fetch import fetch_each
from ..transformers.orderbook import build_snapshots


class BaseVenue(ABC):
    """
    Everything the pipeline needs from one venue: paginated raw fetches
    and the transforms into the unified schema.

    Events and markets fetches raise UpstreamFetchError on failure.
    Per-market fetches (prices, orderbooks) skip failing markets.
    """

    # Optional phases this venue can serve
    supports_prices = False
    supports_traders = False
    supports_market_activity = False

    ORDERBOOK_BATCH_SIZE = 5
    ORDERBOOK_BATCH_DELAY = 0.5

    @property
    @abstractmethod
    def protocol(self) -> str:
        """Protocol discriminator stored on every record"""
        pass

    @abstractmethod
    async def fetch_events(self, max_events: int = 0) -> List[dict]:
        pass

    @abstractmethod
    async def fetch_markets(self, active_only: bool = True, max_markets: int = 0) -> List[dict]:
        pass

    @abstractmethod
    async def fetch_market_trades(self, market: dict, max_trades: int) -> List[dict]:
        """Raw trades of one market, newest first, at most max_trades"""
        pass

    @abstractmethod
    def transform_markets(
        self,
        markets: List[dict],
        events: List[dict],
        prices: Dict[str, float],
        orderbooks: Dict[str, dict],
        activity: Dict[str, dict],
        fetched_at: Optional[datetime] = None,
    ) -> List[dict]:
        pass

    @abstractmethod
    def transform_events(
        self,
        events: List[dict],
        markets: List[dict],
        fetched_at: Optional[datetime] = None,
    ) -> List[dict]:
        pass

    @abstractmethod
    def transform_trades(self, market: dict, trades: List[dict], fetched_at: Optional[datetime] = None) -> List[dict]:
        pass

    @abstractmethod
    def orderbook_keys(self, markets: List[dict]) -> Dict[str, str]:
        """Orderbook key (token id or ticker) -> market id"""
        pass

    @abstractmethod
    async def fetch_orderbook(self, key: str) -> Optional[dict]:
        """Summary of one orderbook, or None if the book is empty"""
        pass

    def market_label(self, market: dict) -> str:
        return str(market.get("id", ""))

    async def fetch_orderbooks(self, markets: List[dict]) -> Dict[str, dict]:
        keys = self.orderbook_keys(markets)
        return await fetch_each(
            keys,
            self.fetch_orderbook,
            batch_size=self.ORDERBOOK_BATCH_SIZE,
            batch_delay=self.ORDERBOOK_BATCH_DELAY,
            label="orderbook",
        )

    def orderbook_snapshots(
        self,
        markets: List[dict],
        orderbooks: Dict[str, dict],
        fetched_at: Optional[datetime] = None,
    ) -> List[dict]:
        return build_snapshots(self.protocol, orderbooks, self.orderbook_keys(markets), fetched_at)

    async def fetch_prices(self, markets: List[dict]) -> Dict[str, float]:
        return {}

    def compute_activity(self, market: dict, trades: List[dict]) -> Optional[dict]:
        """24h activity of one market from its unified trades"""
        return None

    async def fetch_traders(self, limit: int) -> List[dict]:
        return []

    async def fetch_positions(self, user_addresses: List[str]) -> List[dict]:
        return []

    async def close(self):
        pass
