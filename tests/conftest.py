"""
Shared test fixtures for the Market Aggregator test suite.
All tests run offline with in-memory SQLite and mocked venue clients.
"""

import asyncio

import pytest
from datetime import datetime
from unittest.mock import AsyncMock

from market_aggregator.database.db import Database


@pytest.fixture
async def db():
    """
    Create an in-memory async SQLite database for testing.
    Each test gets a completely fresh database.
    """
    database = Database(":memory:")
    await database.initialize()

    yield database

    await database.close()


@pytest.fixture
def make_gamma_event():
    """Factory for raw Gamma events."""
    _counter = [0]

    def _factory(**overrides):
        _counter[0] += 1
        defaults = {
            "id": f"event_{_counter[0]}",
            "slug": f"event-{_counter[0]}",
            "title": f"Event {_counter[0]}",
            "description": "",
            "category": "Politics",
            "startDate": "2025-01-01T00:00:00Z",
            "endDate": "2025-12-31T00:00:00Z",
            "markets": [],
        }
        defaults.update(overrides)
        return defaults

    return _factory


@pytest.fixture
def make_gamma_market():
    """Factory for raw Gamma markets with unique ids and tokens."""
    _counter = [0]

    def _factory(**overrides):
        _counter[0] += 1
        n = _counter[0]
        defaults = {
            "id": f"market_{n}",
            "conditionId": f"0xcondition{n}",
            "question": f"Will thing {n} happen?",
            "slug": f"thing-{n}",
            "outcomes": '["Yes", "No"]',
            "outcomePrices": '["0.6", "0.4"]',
            "clobTokenIds": f'["token_{n}_yes", "token_{n}_no"]',
            "volume": "1000",
            "liquidity": "500",
            "active": True,
            "closed": False,
            "endDate": "2025-12-31T00:00:00Z",
        }
        defaults.update(overrides)
        return defaults

    return _factory


@pytest.fixture
def make_data_trades():
    """Factory for batches of raw Data API trades for one condition."""
    def _factory(condition_id: str, count: int, start_ts: int = 1736951400):
        return [
            {
                "proxyWallet": f"0xWallet{i % 7}",
                "side": "BUY" if i % 2 == 0 else "SELL",
                "asset": f"{condition_id}_yes",
                "conditionId": condition_id,
                "size": 10 + i,
                "price": 0.55,
                "timestamp": start_ts - i * 60,
                "title": "Will it happen?",
                "slug": "will-it-happen",
                "eventSlug": "event",
                "outcome": "Yes",
                "outcomeIndex": 0,
                "transactionHash": f"0xtx_{condition_id}_{i}",
            }
            for i in range(count)
        ]

    return _factory


@pytest.fixture
def make_trade_record():
    """Factory for unified trade records ready for storage."""
    _counter = [0]

    def _factory(**overrides):
        _counter[0] += 1
        defaults = {
            "id": f"trade_{_counter[0]}",
            "protocol": "polymarket",
            "market_id": "0xcondition1",
            "condition_id": "0xcondition1",
            "asset": "token_1_yes",
            "user_address": "0xwallet",
            "side": "BUY",
            "price": 0.65,
            "size": 100.0,
            "timestamp": datetime(2025, 1, 15, 14, 30, 0),
            "transaction_hash": f"0xtx{_counter[0]}",
            "outcome": "Yes",
            "outcome_index": 0,
            "fetched_at": datetime(2025, 1, 15, 15, 0, 0),
        }
        defaults.update(overrides)
        return defaults

    return _factory


@pytest.fixture
def make_market_record():
    """Factory for unified market records ready for storage."""
    _counter = [0]

    def _factory(**overrides):
        _counter[0] += 1
        defaults = {
            "id": f"market_{_counter[0]}",
            "protocol": "polymarket",
            "event_id": "event_1",
            "question": "Will X happen?",
            "condition_id": f"0xcondition{_counter[0]}",
            "outcomes": ["Yes", "No"],
            "outcome_prices": [0.6, 0.4],
            "clob_token_ids": [f"token_{_counter[0]}_yes", f"token_{_counter[0]}_no"],
            "mid_price": 0.6,
            "volume": 1000.0,
            "liquidity": 500.0,
            "active": True,
            "closed": False,
            "fetched_at": datetime(2025, 1, 15, 15, 0, 0),
        }
        defaults.update(overrides)
        return defaults

    return _factory


@pytest.fixture
def mock_polymarket_client():
    """
    Mock PolymarketClient backed by in-memory lists.

    Assign `client.events`, `client.markets` and `client.trades`
    (condition id -> raw trades) before use.
    """
    client = AsyncMock()
    client.events = []
    client.markets = []
    client.trades = {}

    async def get_events(limit=100, offset=0, active_only=True):
        return client.events[offset : offset + limit]

    async def get_markets(limit=100, offset=0, active_only=True):
        return client.markets[offset : offset + limit]

    async def get_trades(condition_id, limit=100, offset=0):
        return client.trades.get(condition_id, [])[offset : offset + limit]

    client.get_events = AsyncMock(side_effect=get_events)
    client.get_markets = AsyncMock(side_effect=get_markets)
    client.get_trades = AsyncMock(side_effect=get_trades)
    client.get_prices_both_sides = AsyncMock(return_value={})
    client.get_price = AsyncMock(return_value=None)
    client.get_orderbook = AsyncMock(return_value=None)
    client.get_leaderboard = AsyncMock(return_value=[])
    client.get_positions = AsyncMock(return_value=[])
    client.close = AsyncMock()
    return client


@pytest.fixture
def wait_until_idle():
    """Poll a pipeline until its background run has finished."""
    async def _wait(pipeline, timeout: float = 10.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while pipeline.is_running:
            if loop.time() > deadline:
                raise AssertionError("pipeline run did not finish in time")
            await asyncio.sleep(0.01)
        return pipeline.get_status()

    return _wait
