"""
Token bucket rate limiting for outbound upstream calls.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Continuously refilled token bucket.

    Capacity equals the permitted requests per second, so an idle bucket
    allows a burst of `capacity` calls and then one call every
    1/capacity seconds.
    """

    def __init__(
        self,
        key: str,
        requests_per_second: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if requests_per_second <= 0:
            raise ValueError(f"requests_per_second must be positive, got {requests_per_second}")

        self.key = key
        self.capacity = float(requests_per_second)
        self.tokens = self.capacity
        self._clock = clock
        self._sleep = sleep
        self.last_refill = clock()

    def _refill(self):
        now = self._clock()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.capacity)
        self.last_refill = now

    async def acquire(self):
        """Wait until a request may be made"""
        self._refill()

        if self.tokens >= 1:
            self.tokens -= 1
            return

        wait_seconds = (1 - self.tokens) / self.capacity
        logger.debug(f"Rate limit [{self.key}]: waiting {wait_seconds:.3f}s")
        await self._sleep(wait_seconds)

        # The permit accrued while sleeping is spent on this call
        self.tokens = 0
        self.last_refill = self._clock()

    @property
    def state(self) -> dict:
        return {
            "key": self.key,
            "tokens": self.tokens,
            "last_refill": self.last_refill,
            "capacity": self.capacity,
        }


class RateLimitManager:
    """Independent limiters, one per upstream key"""

    def __init__(self):
        self._limiters: Dict[str, RateLimiter] = {}

    def create_limiter(self, key: str, requests_per_second: float) -> RateLimiter:
        limiter = RateLimiter(key, requests_per_second)
        self._limiters[key] = limiter
        return limiter

    def get(self, key: str) -> Optional[RateLimiter]:
        return self._limiters.get(key)

    async def acquire(self, key: str):
        limiter = self._limiters.get(key)
        if limiter is None:
            raise KeyError(f"No rate limiter registered for '{key}'")
        await limiter.acquire()

    def __contains__(self, key: str) -> bool:
        return key in self._limiters
