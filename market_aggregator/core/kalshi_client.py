"""
Kalshi REST v2 client.
"""

from typing import Optional

from .http import ApiClient, CredentialProvider
from .rate_limiter import RateLimitManager


class KalshiClient:
    """
    Public market data endpoints of the Kalshi trade API.

    List endpoints are cursor-paginated and return
    {"<items>": [...], "cursor": "..."}; an empty cursor marks the last page.
    """

    BASE_URL = "https://api.elections.kalshi.com/trade-api/v2"
    RATE_LIMIT_KEY = "kalshi"

    def __init__(
        self,
        config: Optional[dict] = None,
        limits: Optional[RateLimitManager] = None,
        credentials: Optional[CredentialProvider] = None,
    ):
        config = config or {}
        self.limits = limits or RateLimitManager()
        if self.RATE_LIMIT_KEY not in self.limits:
            self.limits.create_limiter(self.RATE_LIMIT_KEY, config.get("rate_limit", 5))

        self.api = ApiClient(
            config.get("rest_url", self.BASE_URL),
            self.limits.get(self.RATE_LIMIT_KEY),
            timeout=config.get("timeout", 30),
            credentials=credentials,
        )

    async def close(self):
        await self.api.close()

    async def get_events(
        self,
        cursor: Optional[str] = None,
        limit: int = 200,
        status: Optional[str] = "open",
        with_nested_markets: bool = True,
    ) -> dict:
        params = {
            "limit": limit,
            "cursor": cursor,
            "status": status,
            "with_nested_markets": with_nested_markets,
        }
        return await self.api.get("/events", params) or {}

    async def get_markets(
        self,
        cursor: Optional[str] = None,
        limit: int = 1000,
        status: Optional[str] = "open",
    ) -> dict:
        params = {"limit": limit, "cursor": cursor, "status": status}
        return await self.api.get("/markets", params) or {}

    async def get_orderbook(self, ticker: str) -> Optional[dict]:
        data = await self.api.get(f"/markets/{ticker}/orderbook")
        if not data:
            return None
        return data.get("orderbook")

    async def get_trades(self, ticker: str, cursor: Optional[str] = None, limit: int = 100) -> dict:
        params = {"ticker": ticker, "limit": limit, "cursor": cursor}
        return await self.api.get("/markets/trades", params) or {}
