"""
DFlow venue: offset-paginated events and markets, per-ticker orderbooks
and cursor-paginated trades.
"""

from typing import Dict, List, Optional

from loguru import logger

from ..core.dflow_client import DFlowClient
from ..ingestion.pagination import paginate_cursor, paginate_offset
from ..ingestion.trade_fetcher import TRADES_PAGE_SIZE
from ..transformers import dflow as transform
from ..transformers.orderbook import summarize_book
from .base import BaseVenue


class DFlowVenue(BaseVenue):
    """DFlow data source"""

    PAGE_SIZE = 500

    def __init__(self, client: DFlowClient):
        self.client = client

    @property
    def protocol(self) -> str:
        return transform.PROTOCOL

    async def close(self):
        await self.client.close()

    async def fetch_events(self, max_events: int = 0) -> List[dict]:
        events = await paginate_offset(
            lambda limit, offset: self.client.get_events(limit=limit, offset=offset, status="active"),
            self.PAGE_SIZE,
            max_items=max_events,
            label="events",
        )
        logger.info(f"Fetched {len(events)} DFlow events")
        return events

    async def fetch_markets(self, active_only: bool = True, max_markets: int = 0) -> List[dict]:
        markets = await paginate_offset(
            lambda limit, offset: self.client.get_markets(
                limit=limit, offset=offset, status="active" if active_only else None
            ),
            self.PAGE_SIZE,
            max_items=max_markets,
            label="markets",
        )
        if active_only:
            markets = [m for m in markets if m.get("status") == "active"]
        logger.info(f"Fetched {len(markets)} DFlow markets")
        return markets

    def transform_markets(self, markets, events, prices, orderbooks, activity, fetched_at=None):
        return transform.transform_markets(markets, events, orderbooks, fetched_at)

    def transform_events(self, events, markets, fetched_at=None):
        return transform.transform_events(events, markets, fetched_at)

    def orderbook_keys(self, markets: List[dict]) -> Dict[str, str]:
        return {m.get("ticker") or m["id"]: m["id"] for m in markets if m.get("id")}

    async def fetch_orderbook(self, key: str) -> Optional[dict]:
        return summarize_book(await self.client.get_orderbook(key))

    def market_label(self, market: dict) -> str:
        return market.get("ticker") or market.get("id", "")

    async def fetch_market_trades(self, market: dict, max_trades: int) -> List[dict]:
        ticker = market.get("ticker") or market.get("id")
        if not ticker:
            return []

        async def page(cursor: Optional[str], limit: int):
            data = await self.client.get_trades(ticker, cursor=cursor, limit=limit)
            return data.get("trades") or [], data.get("nextCursor")

        return await paginate_cursor(page, TRADES_PAGE_SIZE, max_items=max_trades, label=f"trades for {ticker}")

    def transform_trades(self, market, trades, fetched_at=None):
        return transform.transform_trades(trades, fetched_at)
