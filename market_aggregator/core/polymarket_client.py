"""
Polymarket API client.

Endpoints:
- Gamma API: events and markets metadata
- CLOB API: prices and orderbooks
- Data API: trades, leaderboard and positions
"""

from typing import Any, Dict, List, Optional

from .http import ApiClient
from .rate_limiter import RateLimitManager


def _as_list(data: Any, key: str = "data") -> List[dict]:
    """Responses are either a bare list or wrapped under a key"""
    if data is None:
        return []
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        items = data.get(key)
        return items if isinstance(items, list) else []
    return []


class PolymarketClient:
    """Unified client for the three public Polymarket APIs"""

    GAMMA_BASE_URL = "https://gamma-api.polymarket.com"
    CLOB_BASE_URL = "https://clob.polymarket.com"
    DATA_BASE_URL = "https://data-api.polymarket.com"

    def __init__(self, config: Optional[dict] = None, limits: Optional[RateLimitManager] = None):
        """
        Args:
            config: polymarket section of the app config (urls, rate limits, timeouts)
            limits: Shared rate limit manager; a private one is created if omitted
        """
        config = config or {}
        rate_limits = config.get("rate_limits", {})
        timeouts = config.get("timeouts", {})
        self.limits = limits or RateLimitManager()

        for key, default_rps in (("gamma", 5), ("clob", 10), ("data", 5)):
            if key not in self.limits:
                self.limits.create_limiter(key, rate_limits.get(key, default_rps))

        self.gamma = ApiClient(
            config.get("gamma_url", self.GAMMA_BASE_URL),
            self.limits.get("gamma"),
            timeout=timeouts.get("gamma", 30),
        )
        self.clob = ApiClient(
            config.get("clob_url", self.CLOB_BASE_URL),
            self.limits.get("clob"),
            timeout=timeouts.get("clob", 30),
        )
        self.data = ApiClient(
            config.get("data_url", self.DATA_BASE_URL),
            self.limits.get("data"),
            timeout=timeouts.get("data", 15),
        )

    async def close(self):
        for api in (self.gamma, self.clob, self.data):
            await api.close()

    # =========================================================================
    # Gamma API
    # =========================================================================

    async def get_events(self, limit: int = 100, offset: int = 0, active_only: bool = True) -> List[dict]:
        params = {"limit": limit, "offset": offset}
        if active_only:
            params.update(active=True, closed=False)
        return _as_list(await self.gamma.get("/events", params))

    async def get_markets(self, limit: int = 100, offset: int = 0, active_only: bool = True) -> List[dict]:
        params = {"limit": limit, "offset": offset}
        if active_only:
            params.update(active=True, closed=False)
        return _as_list(await self.gamma.get("/markets", params))

    # =========================================================================
    # CLOB API
    # =========================================================================

    async def get_orderbook(self, token_id: str) -> Optional[dict]:
        return await self.clob.get("/book", {"token_id": token_id})

    async def get_price(self, token_id: str, side: str) -> Optional[float]:
        """Best price for one side: BUY is the best ask, SELL the best bid"""
        data = await self.clob.get("/price", {"token_id": token_id, "side": side})
        if not data:
            return None
        try:
            return float(data.get("price"))
        except (TypeError, ValueError):
            return None

    async def get_prices_both_sides(self, token_ids: List[str]) -> Dict[str, float]:
        """
        Mid prices for a batch of tokens.

        Returns:
            token_id -> (BUY + SELL) / 2, or the single available side
        """
        body = [{"token_id": t, "side": side} for t in token_ids for side in ("BUY", "SELL")]
        data = await self.clob.post("/prices", body) or {}

        prices = {}
        for token_id, sides in data.items():
            if not isinstance(sides, dict):
                continue
            values = []
            for side in ("BUY", "SELL"):
                try:
                    values.append(float(sides[side]))
                except (KeyError, TypeError, ValueError):
                    pass
            if values:
                prices[token_id] = sum(values) / len(values)
        return prices

    # =========================================================================
    # Data API
    # =========================================================================

    async def get_trades(self, condition_id: str, limit: int = 100, offset: int = 0) -> List[dict]:
        params = {"market": condition_id, "limit": limit, "offset": offset, "takerOnly": True}
        return _as_list(await self.data.get("/trades", params))

    async def get_leaderboard(self, limit: int = 50, offset: int = 0) -> List[dict]:
        return _as_list(await self.data.get("/v1/leaderboard", {"limit": limit, "offset": offset}))

    async def get_positions(self, user: str) -> List[dict]:
        return _as_list(await self.data.get("/positions", {"user": user}))
