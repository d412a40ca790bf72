"""
DFlow prediction markets metadata API client.
"""

from typing import Any, List, Optional

from .http import ApiClient
from .rate_limiter import RateLimitManager


def _items(data: Any, key: str) -> List[dict]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get(key), list):
        return data[key]
    return []


class DFlowClient:
    """Events, markets, orderbooks and trades from the DFlow metadata API"""

    BASE_URL = "https://prediction-markets-api.dflow.net"
    RATE_LIMIT_KEY = "dflow"

    def __init__(self, config: Optional[dict] = None, limits: Optional[RateLimitManager] = None):
        config = config or {}
        self.limits = limits or RateLimitManager()
        if self.RATE_LIMIT_KEY not in self.limits:
            self.limits.create_limiter(self.RATE_LIMIT_KEY, config.get("rate_limit", 10))

        headers = {}
        if config.get("api_key"):
            headers["x-api-key"] = config["api_key"]

        self.api = ApiClient(
            config.get("metadata_url", self.BASE_URL),
            self.limits.get(self.RATE_LIMIT_KEY),
            timeout=config.get("timeout", 30),
            headers=headers,
        )

    async def close(self):
        await self.api.close()

    async def get_events(self, limit: int = 500, offset: int = 0, status: Optional[str] = None) -> List[dict]:
        data = await self.api.get("/api/v1/events", {"limit": limit, "offset": offset, "status": status})
        return _items(data, "events")

    async def get_markets(self, limit: int = 500, offset: int = 0, status: Optional[str] = None) -> List[dict]:
        data = await self.api.get("/api/v1/markets", {"limit": limit, "offset": offset, "status": status})
        return _items(data, "markets")

    async def get_orderbook(self, ticker: str) -> Optional[dict]:
        return await self.api.get(f"/api/v1/orderbook/{ticker}")

    async def get_trades(self, ticker: str, cursor: Optional[str] = None, limit: int = 100) -> dict:
        """
        Returns:
            {"trades": [...], "nextCursor": "..."}
        """
        data = await self.api.get(
            "/api/v1/trades", {"marketTicker": ticker, "limit": limit, "cursor": cursor}
        )
        if isinstance(data, list):
            return {"trades": data}
        return data or {}
