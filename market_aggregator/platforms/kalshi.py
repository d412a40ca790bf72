"""
Kalshi venue: cursor-paginated REST v2 events, markets, orderbooks
and trades.
"""

from typing import Dict, List, Optional

from loguru import logger

from ..core.kalshi_client import KalshiClient
from ..ingestion.pagination import paginate_cursor
from ..ingestion.trade_fetcher import TRADES_PAGE_SIZE
from ..transformers import kalshi as transform
from ..transformers.orderbook import summarize_binary_book
from .base import BaseVenue


class KalshiVenue(BaseVenue):
    """Kalshi data source"""

    EVENTS_PAGE_SIZE = 200
    MARKETS_PAGE_SIZE = 1000

    def __init__(self, client: KalshiClient):
        self.client = client

    @property
    def protocol(self) -> str:
        return transform.PROTOCOL

    async def close(self):
        await self.client.close()

    async def fetch_events(self, max_events: int = 0) -> List[dict]:
        async def page(cursor: Optional[str], limit: int):
            data = await self.client.get_events(cursor=cursor, limit=limit, status="open")
            return data.get("events") or [], data.get("cursor")

        events = await paginate_cursor(page, self.EVENTS_PAGE_SIZE, max_items=max_events, label="events")
        logger.info(f"Fetched {len(events)} Kalshi events")
        return events

    async def fetch_markets(self, active_only: bool = True, max_markets: int = 0) -> List[dict]:
        async def page(cursor: Optional[str], limit: int):
            data = await self.client.get_markets(
                cursor=cursor, limit=limit, status="open" if active_only else None
            )
            return data.get("markets") or [], data.get("cursor")

        markets = await paginate_cursor(page, self.MARKETS_PAGE_SIZE, max_items=max_markets, label="markets")
        if active_only:
            markets = [m for m in markets if not transform.is_closed(m.get("status"))]
        logger.info(f"Fetched {len(markets)} Kalshi markets")
        return markets

    def transform_markets(self, markets, events, prices, orderbooks, activity, fetched_at=None):
        return transform.transform_markets(markets, orderbooks, fetched_at)

    def transform_events(self, events, markets, fetched_at=None):
        return transform.transform_events(events, markets, fetched_at)

    def orderbook_keys(self, markets: List[dict]) -> Dict[str, str]:
        return {m["ticker"]: m["ticker"] for m in markets if m.get("ticker")}

    async def fetch_orderbook(self, key: str) -> Optional[dict]:
        return summarize_binary_book(await self.client.get_orderbook(key))

    def market_label(self, market: dict) -> str:
        return market.get("ticker", "")

    async def fetch_market_trades(self, market: dict, max_trades: int) -> List[dict]:
        ticker = market.get("ticker")
        if not ticker:
            return []

        async def page(cursor: Optional[str], limit: int):
            data = await self.client.get_trades(ticker, cursor=cursor, limit=limit)
            return data.get("trades") or [], data.get("cursor")

        return await paginate_cursor(page, TRADES_PAGE_SIZE, max_items=max_trades, label=f"trades for {ticker}")

    def transform_trades(self, market, trades, fetched_at=None):
        return transform.transform_trades(trades, market.get("event_ticker") or "", fetched_at)
