"""Tests for the token bucket rate limiter."""

import pytest

from market_aggregator.core.rate_limiter import RateLimiter, RateLimitManager


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class TestRateLimiter:
    async def test_burst_then_wait(self):
        clock = FakeClock()
        limiter = RateLimiter("gamma", 5, clock=clock, sleep=clock.sleep)

        for _ in range(5):
            await limiter.acquire()
        assert clock.sleeps == []

        await limiter.acquire()
        assert len(clock.sleeps) == 1
        assert clock.sleeps[0] == pytest.approx(0.2)

    async def test_refills_with_elapsed_time(self):
        clock = FakeClock()
        limiter = RateLimiter("clob", 10, clock=clock, sleep=clock.sleep)

        for _ in range(10):
            await limiter.acquire()

        clock.now += 0.5  # half a second refills five permits
        for _ in range(5):
            await limiter.acquire()
        assert clock.sleeps == []

        await limiter.acquire()
        assert clock.sleeps == [pytest.approx(0.1)]

    async def test_refill_is_capped_at_capacity(self):
        clock = FakeClock()
        limiter = RateLimiter("data", 2, clock=clock, sleep=clock.sleep)

        clock.now += 60
        for _ in range(2):
            await limiter.acquire()
        await limiter.acquire()

        assert len(clock.sleeps) == 1

    async def test_sustained_rate_after_wait(self):
        clock = FakeClock()
        limiter = RateLimiter("kalshi", 5, clock=clock, sleep=clock.sleep)

        for _ in range(8):
            await limiter.acquire()

        assert clock.sleeps == [pytest.approx(0.2)] * 3

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            RateLimiter("bad", 0)

    def test_state(self):
        clock = FakeClock()
        limiter = RateLimiter("gamma", 5, clock=clock, sleep=clock.sleep)
        state = limiter.state
        assert state["key"] == "gamma"
        assert state["capacity"] == 5


class TestRateLimitManager:
    async def test_acquire_by_key(self):
        manager = RateLimitManager()
        manager.create_limiter("gamma", 5)

        assert "gamma" in manager
        assert "clob" not in manager
        await manager.acquire("gamma")

    async def test_unknown_key_raises(self):
        manager = RateLimitManager()
        with pytest.raises(KeyError):
            await manager.acquire("missing")
