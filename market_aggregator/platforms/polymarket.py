"""
Polymarket venue: Gamma metadata, CLOB prices/orderbooks and Data API
trades, leaderboard and positions.
"""

import asyncio
from typing import Dict, List, Optional

from loguru import logger

from ..core.polymarket_client import PolymarketClient
from ..errors import UpstreamFetchError
from ..ingestion.batch_fetch import fetch_each
from ..ingestion.pagination import paginate_offset
from ..ingestion.trade_fetcher import TRADES_PAGE_SIZE
from ..transformers import polymarket as transform
from ..transformers.common import utcnow
from ..transformers.orderbook import summarize_book
from .base import BaseVenue


class PolymarketVenue(BaseVenue):
    """Polymarket data source"""

    supports_prices = True
    supports_traders = True
    supports_market_activity = True

    GAMMA_PAGE_SIZE = 100
    PRICE_BATCH_SIZE = 50
    PRICE_BATCH_DELAY = 0.2
    LEADERBOARD_PAGE_SIZE = 50

    def __init__(self, client: PolymarketClient):
        self.client = client

    @property
    def protocol(self) -> str:
        return transform.PROTOCOL

    async def close(self):
        await self.client.close()

    # ==================== Events / Markets ====================

    async def fetch_events(self, max_events: int = 0) -> List[dict]:
        events = await paginate_offset(
            lambda limit, offset: self.client.get_events(limit=limit, offset=offset, active_only=True),
            self.GAMMA_PAGE_SIZE,
            max_items=max_events,
            label="events",
        )
        logger.info(f"Fetched {len(events)} Polymarket events")
        return events

    async def fetch_markets(self, active_only: bool = True, max_markets: int = 0) -> List[dict]:
        markets = await paginate_offset(
            lambda limit, offset: self.client.get_markets(limit=limit, offset=offset, active_only=active_only),
            self.GAMMA_PAGE_SIZE,
            max_items=max_markets,
            label="markets",
        )
        if active_only:
            markets = [m for m in markets if m.get("active") and not m.get("closed")]
        logger.info(f"Fetched {len(markets)} Polymarket markets")
        return markets

    def transform_markets(self, markets, events, prices, orderbooks, activity, fetched_at=None):
        return transform.transform_markets(markets, events, prices, orderbooks, activity, fetched_at)

    def transform_events(self, events, markets, fetched_at=None):
        return transform.transform_events(events, markets, fetched_at)

    # ==================== Prices / Orderbooks ====================

    async def fetch_prices(self, markets: List[dict]) -> Dict[str, float]:
        """
        Mid prices for every outcome token, 50 tokens per request.

        A failed batch falls back to one request per side per token.
        """
        token_ids = list(dict.fromkeys(t for m in markets for t in transform.get_token_ids(m)))
        prices: Dict[str, float] = {}

        for start in range(0, len(token_ids), self.PRICE_BATCH_SIZE):
            batch = token_ids[start : start + self.PRICE_BATCH_SIZE]
            try:
                batch_prices = await self.client.get_prices_both_sides(batch)
            except UpstreamFetchError as e:
                logger.warning(f"Price batch at {start} failed, fetching individually: {e}")
                batch_prices = await fetch_each(
                    batch, self._fetch_single_price, batch_size=len(batch), batch_delay=0, label="price"
                )

            prices.update({t: p for t, p in batch_prices.items() if p and p > 0})

            if start + self.PRICE_BATCH_SIZE < len(token_ids):
                await asyncio.sleep(self.PRICE_BATCH_DELAY)

        logger.info(f"Fetched prices for {len(prices)}/{len(token_ids)} tokens")
        return prices

    async def _fetch_single_price(self, token_id: str) -> Optional[float]:
        sides = [await self.client.get_price(token_id, side) for side in ("BUY", "SELL")]
        sides = [p for p in sides if p is not None]
        if not sides:
            return None
        return sum(sides) / len(sides)

    def orderbook_keys(self, markets: List[dict]) -> Dict[str, str]:
        # Only the primary (YES) token's book feeds the market summary
        keys = {}
        for market in markets:
            token_ids = transform.get_token_ids(market)
            if token_ids:
                keys[token_ids[0]] = str(market.get("id", ""))
        return keys

    async def fetch_orderbook(self, key: str) -> Optional[dict]:
        return summarize_book(await self.client.get_orderbook(key))

    # ==================== Trades ====================

    def market_label(self, market: dict) -> str:
        return market.get("conditionId") or str(market.get("id", ""))

    async def fetch_market_trades(self, market: dict, max_trades: int) -> List[dict]:
        condition_id = market.get("conditionId")
        if not condition_id:
            return []
        return await paginate_offset(
            lambda limit, offset: self.client.get_trades(condition_id, limit=limit, offset=offset),
            TRADES_PAGE_SIZE,
            max_items=max_trades,
            label=f"trades for {condition_id[:12]}",
        )

    def transform_trades(self, market, trades, fetched_at=None):
        return transform.transform_trades(trades, fetched_at)

    def compute_activity(self, market: dict, trades: List[dict]) -> Optional[dict]:
        condition_id = market.get("conditionId") or str(market.get("id", ""))
        return transform.compute_market_activity({condition_id: trades})[condition_id]

    # ==================== Traders / Positions ====================

    async def fetch_traders(self, limit: int) -> List[dict]:
        entries = await paginate_offset(
            lambda page_size, offset: self.client.get_leaderboard(limit=page_size, offset=offset),
            min(self.LEADERBOARD_PAGE_SIZE, limit) or self.LEADERBOARD_PAGE_SIZE,
            max_items=limit,
            label="leaderboard entries",
        )
        return transform.transform_traders(entries)

    async def fetch_positions(self, user_addresses: List[str]) -> List[dict]:
        fetched_at = utcnow()

        async def fetch_user(address: str) -> List[dict]:
            raw = await self.client.get_positions(address)
            return transform.transform_positions(raw, address, fetched_at)

        by_user = await fetch_each(
            user_addresses, fetch_user, batch_size=10, batch_delay=0.2, label="position set"
        )
        return [p for positions in by_user.values() for p in positions]
