"""Tests for the real-time WebSocket ingestion service, with websockets.connect patched out."""

import asyncio
import json

from sqlalchemy import select, func

from market_aggregator.database.models import Trade
from market_aggregator.database.storage import StorageWriter
from market_aggregator.ingestion.realtime_feed import (
    ConnectionState, KalshiFeed, PolymarketFeed, RealtimeIngestionService,
)


class FakeWebSocket:
    """Yields queued messages; ends iteration (a close) on None."""

    def __init__(self, messages=(), stay_open=False):
        self.sent = []
        self.pings = 0
        self.closed = False
        self._queue = asyncio.Queue()
        for message in messages:
            self._queue.put_nowait(message)
        if not stay_open:
            self._queue.put_nowait(None)

    async def send(self, data):
        self.sent.append(data)

    async def ping(self):
        self.pings += 1

    async def close(self):
        self.closed = True
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item


class _Connection:
    def __init__(self, ws, gate=None):
        self.ws = ws
        self.gate = gate

    async def __aenter__(self):
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(self.ws, Exception):
            raise self.ws
        return self.ws

    async def __aexit__(self, *exc):
        return False


class FakeConnector:
    def __init__(self, sockets=(), gate=None):
        self.sockets = list(sockets)
        self.calls = []
        self.gate = gate

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        ws = self.sockets.pop(0) if self.sockets else FakeWebSocket()
        return _Connection(ws, self.gate)


def _service(feed, writer, connector, **kwargs):
    options = {"reconnect_delay": 0, "max_reconnect_attempts": 1, "ping_interval": 60}
    options.update(kwargs)
    return RealtimeIngestionService(feed, writer, connector=connector, **options)


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


KALSHI_TRADE = json.dumps({
    "type": "trade",
    "sid": 1,
    "msg": {"market_ticker": "KX-A", "yes_price": 42, "no_price": 58, "count": 3, "taker_side": "yes", "ts": 1736951400},
})


class TestSubscriptions:
    async def test_subscribe_while_disconnected_only_buffers(self, db):
        connector = FakeConnector()
        service = _service(KalshiFeed(), StorageWriter(db), connector)

        await service.subscribe(["KX-B", "KX-A", "KX-A"])
        await service.unsubscribe(["KX-B"])

        assert service.state == ConnectionState.DISCONNECTED
        assert service.subscriptions == {"KX-A"}
        assert connector.calls == []

    async def test_desired_set_is_sent_on_connect(self, db):
        ws = FakeWebSocket()
        service = _service(KalshiFeed(), StorageWriter(db), FakeConnector([ws]))
        await service.subscribe(["KX-B", "KX-A"])

        await service.connect()

        [frame] = [json.loads(s) for s in ws.sent]
        assert frame["cmd"] == "subscribe"
        assert frame["params"]["market_tickers"] == ["KX-A", "KX-B"]
        assert "trade" in frame["params"]["channels"]

    async def test_live_subscribe_is_chunked(self, db):
        ws = FakeWebSocket(stay_open=True)
        service = _service(
            PolymarketFeed(), StorageWriter(db), FakeConnector([ws]),
            subscribe_batch_size=2, subscribe_batch_delay=0,
        )
        task = asyncio.create_task(service.connect())
        await _wait_for(lambda: service.state == ConnectionState.CONNECTED)

        await service.subscribe(["t1", "t2", "t3", "t4", "t5"])
        frames = [json.loads(s) for s in ws.sent]
        assert [f["assets_ids"] for f in frames] == [["t1", "t2"], ["t3", "t4"], ["t5"]]

        await service.unsubscribe(["t2"])
        assert json.loads(ws.sent[-1]) == {"assets_ids": ["t2"], "operation": "unsubscribe"}

        await service.disconnect()
        await task
        assert service.state == ConnectionState.DISCONNECTED
        assert ws.closed

    async def test_subscribe_to_active_markets(self, db, make_market_record):
        writer = StorageWriter(db)
        await writer.store_markets([
            make_market_record(),
            make_market_record(),
            make_market_record(closed=True),
            make_market_record(protocol="kalshi"),
        ])
        service = _service(PolymarketFeed(), writer, FakeConnector())

        added = await service.subscribe_to_active_markets(db)

        assert added == 4
        assert service.subscriptions == {"token_1_yes", "token_1_no", "token_2_yes", "token_2_no"}


class TestReconnects:
    async def test_gives_up_after_max_attempts(self, db):
        connector = FakeConnector([OSError("refused")] * 3)
        service = _service(KalshiFeed(), StorageWriter(db), connector, max_reconnect_attempts=3)
        await service.subscribe(["KX-A", "KX-B"])

        await service.connect()

        assert len(connector.calls) == 3
        assert service.state == ConnectionState.DISCONNECTED
        assert service.subscriptions == {"KX-A", "KX-B"}
        assert service.get_status()["errors"] == 3

    async def test_closed_connections_count_as_attempts(self, db):
        connector = FakeConnector([FakeWebSocket(), FakeWebSocket()])
        service = _service(KalshiFeed(), StorageWriter(db), connector, max_reconnect_attempts=2)

        await service.connect()

        assert len(connector.calls) == 2
        assert service.state == ConnectionState.DISCONNECTED

    async def test_resubscribes_after_reconnect(self, db):
        first, second = FakeWebSocket(), FakeWebSocket()
        service = _service(KalshiFeed(), StorageWriter(db), FakeConnector([first, second]), max_reconnect_attempts=2)
        await service.subscribe(["KX-A"])

        await service.connect()

        for ws in (first, second):
            assert json.loads(ws.sent[0])["params"]["market_tickers"] == ["KX-A"]

    async def test_disconnect_during_handshake_closes_new_connection(self, db):
        gate = asyncio.Event()
        ws = FakeWebSocket(stay_open=True)
        connector = FakeConnector([ws], gate=gate)
        service = _service(KalshiFeed(), StorageWriter(db), connector, max_reconnect_attempts=5)
        await service.subscribe(["KX-A"])

        task = asyncio.create_task(service.connect())
        await _wait_for(lambda: connector.calls)
        assert service.state == ConnectionState.CONNECTING

        await service.disconnect()
        gate.set()
        await asyncio.wait_for(task, timeout=2.0)

        assert ws.closed
        assert ws.sent == []
        assert len(connector.calls) == 1
        assert service.state == ConnectionState.DISCONNECTED

    async def test_credentials_become_connect_headers(self, db):
        connector = FakeConnector()
        feed = KalshiFeed(credentials=lambda method, path: {"KALSHI-ACCESS-KEY": f"{method} {path}"})
        service = _service(feed, StorageWriter(db), connector)

        await service.connect()

        url, kwargs = connector.calls[0]
        assert url.endswith("/trade-api/ws/v2")
        assert kwargs["additional_headers"] == {"KALSHI-ACCESS-KEY": "GET /trade-api/ws/v2"}


class TestMessages:
    async def test_kalshi_dispatch(self, db):
        ws = FakeWebSocket([
            "heartbeat",
            json.dumps({"type": "subscribed", "id": 1, "msg": {"channel": "trade", "sid": 1}}),
            KALSHI_TRADE,
            KALSHI_TRADE,
            json.dumps({"type": "ticker", "msg": {"market_ticker": "KX-A", "price": 42}}),
            json.dumps({"type": "orderbook_snapshot", "msg": {"market_ticker": "KX-A", "yes": [[40, 5]]}}),
            json.dumps({"type": "orderbook_delta", "msg": {"market_ticker": "KX-A", "price": 40, "delta": 2}}),
            json.dumps({"type": "brand_new_type", "msg": {}}),
            "{not json",
            json.dumps({"type": "error", "msg": {"code": 8, "msg": "Unknown channel"}}),
        ])
        service = _service(KalshiFeed(), StorageWriter(db), FakeConnector([ws]))

        await service.connect()

        status = service.get_status()
        assert status["trades_received"] == 2
        assert status["trades_stored"] == 2
        assert status["ticker_updates"] == 1
        assert status["orderbook_updates"] == 2
        assert status["errors"] == 1
        async with db.session() as session:
            # The replayed trade merges onto the same row
            count = (await session.execute(select(func.count()).select_from(Trade))).scalar_one()
            trade = (await session.execute(select(Trade))).scalar_one()
        assert count == 1
        assert trade.protocol == "kalshi"
        assert trade.market_id == "KX-A"

    async def test_polymarket_batched_messages(self, db):
        ws = FakeWebSocket([
            "PONG",
            json.dumps([
                {"event_type": "book", "asset_id": "t1", "bids": [], "asks": []},
                {"event_type": "last_trade_price", "asset_id": "t1", "market": "0xcond",
                 "price": "0.55", "size": "20", "side": "BUY", "timestamp": "1736951400000"},
            ]),
            json.dumps({"event_type": "price_change", "asset_id": "t1"}),
        ])
        service = _service(PolymarketFeed(), StorageWriter(db), FakeConnector([ws]))

        await service.connect()

        status = service.get_status()
        assert status["messages_received"] == 2
        assert status["trades_stored"] == 1
        assert status["orderbook_updates"] == 1
        assert status["ticker_updates"] == 1
        async with db.session() as session:
            trade = (await session.execute(select(Trade))).scalar_one()
        assert trade.market_id == "0xcond"
        assert trade.price == 0.55

    async def test_text_ping_keepalive(self, db):
        ws = FakeWebSocket(stay_open=True)
        service = _service(PolymarketFeed(), StorageWriter(db), FakeConnector([ws]), ping_interval=0.01)
        task = asyncio.create_task(service.connect())

        await _wait_for(lambda: "PING" in ws.sent)
        await service.disconnect()
        await task

    async def test_frame_ping_keepalive(self, db):
        ws = FakeWebSocket(stay_open=True)
        service = _service(KalshiFeed(), StorageWriter(db), FakeConnector([ws]), ping_interval=0.01)
        task = asyncio.create_task(service.connect())

        await _wait_for(lambda: ws.pings > 0)
        await service.disconnect()
        await task
