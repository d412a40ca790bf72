"""
Multi-market trade fetcher used by the trades phase.

Walks markets sequentially, pages through each market's trades up to a
hard per-market cap, and hands every market's trades to a callback as
soon as they are fetched so nothing accumulates here.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

logger = logging.getLogger(__name__)

MAX_TRADES_PER_MARKET = 10_000
TRADES_PAGE_SIZE = 100
INTER_MARKET_DELAY = 0.2

# (market, max_trades) -> raw trades for that market
MarketTradesFetch = Callable[[dict, int], Awaitable[List[dict]]]

# (index, market, raw_trades) -> False to stop the loop
MarketDoneCallback = Callable[[int, dict, List[dict]], Awaitable[Optional[bool]]]


class TradeFetcher:
    """
    Fetch trades market by market.

    A failure on one market is logged and that market is skipped; the
    loop carries on with the rest.
    """

    def __init__(
        self,
        fetch_market_trades: MarketTradesFetch,
        max_trades_per_market: int = MAX_TRADES_PER_MARKET,
        inter_market_delay: float = INTER_MARKET_DELAY,
    ):
        """
        Initialize the trade fetcher.

        Args:
            fetch_market_trades: Venue coroutine paging one market's trades
            max_trades_per_market: Hard cap per market
            inter_market_delay: Seconds to sleep between markets, on top of the rate limiter
        """
        self.fetch_market_trades = fetch_market_trades
        self.max_trades_per_market = max_trades_per_market
        self.inter_market_delay = inter_market_delay

        # Tracking
        self._total_fetched = 0
        self._markets_done = 0
        self._failed_markets = 0
        self._stopped_early = False

    async def fetch_all(
        self,
        markets: List[dict],
        start_index: int = 0,
        on_market_done: Optional[MarketDoneCallback] = None,
        market_label: Callable[[dict], Any] = lambda m: m.get("id"),
    ) -> dict:
        """
        Fetch trades for markets[start_index:].

        Args:
            markets: Markets in a stable order
            start_index: First market to fetch (resume point)
            on_market_done: Called after each market with its trades
            market_label: How to name a market in logs

        Returns:
            Fetch statistics
        """
        total = len(markets)
        if start_index:
            logger.info(f"Resuming trade fetch at market {start_index}/{total}")

        for index in range(start_index, total):
            market = markets[index]

            try:
                trades = await self.fetch_market_trades(market, self.max_trades_per_market)
            except Exception as e:
                logger.warning(f"Failed to fetch trades for market {market_label(market)}: {e}")
                self._failed_markets += 1
                trades = []

            self._total_fetched += len(trades)
            self._markets_done += 1

            if on_market_done is not None:
                keep_going = await on_market_done(index, market, trades)
                if keep_going is False:
                    self._stopped_early = True
                    logger.info(f"Trade fetch stopped after market {index + 1}/{total}")
                    break

            if (index + 1) % 50 == 0:
                logger.info(f"Trades: {index + 1}/{total} markets, {self._total_fetched} trades")

            if index < total - 1:
                await asyncio.sleep(self.inter_market_delay)

        return self.get_stats()

    def get_stats(self) -> dict:
        """Get fetcher statistics"""
        return {
            "total_fetched": self._total_fetched,
            "markets_done": self._markets_done,
            "failed_markets": self._failed_markets,
            "stopped_early": self._stopped_early,
        }
