"""
Real-time trade ingestion over venue WebSockets.

One RealtimeIngestionService holds a single connection to one venue. It
keeps a desired subscription set that survives reconnects, dispatches
inbound messages by their type tag and writes trades through the
storage writer as they arrive.

Venue specifics (URL, subscribe frames, message tags, trade parsing,
keepalive) live in a FeedProtocol adapter:
- Kalshi WebSocket v2: `cmd` subscribe/unsubscribe with market tickers
- Polymarket CLOB market channel: `assets_ids` subscription, text PING
"""

import asyncio
import itertools
import json
import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional, Set

import websockets
from sqlalchemy import select
from websockets.exceptions import ConnectionClosed

from ..core.http import CredentialProvider
from ..database.db import Database
from ..database.models import Market
from ..database.storage import StorageWriter
from ..transformers import kalshi as kalshi_transform
from ..transformers import polymarket as polymarket_transform

logger = logging.getLogger(__name__)

KALSHI_WS_URL = "wss://api.elections.kalshi.com/trade-api/ws/v2"
POLYMARKET_WS_URL = "wss://ws-subscriptions-clob.polymarket.com/ws/market"

# Message kinds the service dispatches on
TRADE = "trade"
TICKER = "ticker"
ORDERBOOK = "orderbook"
CONTROL = "control"
ERROR = "error"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class FeedProtocol(ABC):
    """Venue-specific framing for the real-time service"""

    protocol: str = ""
    url: str = ""

    def connect_headers(self) -> Dict[str, str]:
        return {}

    @abstractmethod
    def subscribe_message(self, ids: List[str]) -> dict:
        pass

    @abstractmethod
    def unsubscribe_message(self, ids: List[str]) -> dict:
        pass

    @abstractmethod
    def message_type(self, message: dict) -> Optional[str]:
        pass

    @abstractmethod
    def classify(self, message_type: Optional[str]) -> Optional[str]:
        """Map a venue type tag to a dispatch kind, None if unknown"""
        pass

    @abstractmethod
    def parse_trades(self, message: dict) -> List[dict]:
        """Unified trades carried by a trade message"""
        pass

    def ping_message(self) -> Optional[str]:
        """Text keepalive, or None to send a protocol-level ping frame"""
        return None

    def is_keepalive_reply(self, raw: str) -> bool:
        return False

    def subscription_ids(self, market: Market) -> List[str]:
        """Ids to subscribe for one stored market"""
        return [market.id]


class KalshiFeed(FeedProtocol):
    """Kalshi WebSocket v2 trade, ticker and orderbook channels"""

    protocol = kalshi_transform.PROTOCOL
    url = KALSHI_WS_URL
    CHANNELS = ["trade", "ticker", "orderbook_delta"]
    WS_PATH = "/trade-api/ws/v2"

    TYPE_KINDS = {
        "trade": TRADE,
        "ticker": TICKER,
        "ticker_v2": TICKER,
        "orderbook_snapshot": ORDERBOOK,
        "orderbook_delta": ORDERBOOK,
        "subscribed": CONTROL,
        "unsubscribed": CONTROL,
        "ok": CONTROL,
        "market_lifecycle_v2": CONTROL,
        "event_lifecycle": CONTROL,
        "error": ERROR,
    }

    def __init__(self, credentials: Optional[CredentialProvider] = None, url: Optional[str] = None):
        self.credentials = credentials
        if url:
            self.url = url
        self._command_ids = itertools.count(1)

    def connect_headers(self) -> Dict[str, str]:
        if self.credentials is None:
            return {}
        return dict(self.credentials("GET", self.WS_PATH))

    def subscribe_message(self, ids: List[str]) -> dict:
        return {
            "id": next(self._command_ids),
            "cmd": "subscribe",
            "params": {"channels": self.CHANNELS, "market_tickers": list(ids)},
        }

    def unsubscribe_message(self, ids: List[str]) -> dict:
        return {
            "id": next(self._command_ids),
            "cmd": "unsubscribe",
            "params": {"channels": self.CHANNELS, "market_tickers": list(ids)},
        }

    def message_type(self, message: dict) -> Optional[str]:
        return message.get("type")

    def classify(self, message_type: Optional[str]) -> Optional[str]:
        return self.TYPE_KINDS.get(message_type)

    def parse_trades(self, message: dict) -> List[dict]:
        body = message.get("msg") or {}
        return [kalshi_transform.transform_trade(body)]

    def is_keepalive_reply(self, raw: str) -> bool:
        return raw == "heartbeat"


class PolymarketFeed(FeedProtocol):
    """Polymarket CLOB market channel"""

    protocol = polymarket_transform.PROTOCOL
    url = POLYMARKET_WS_URL

    TYPE_KINDS = {
        "last_trade_price": TRADE,
        "price_change": TICKER,
        "tick_size_change": TICKER,
        "book": ORDERBOOK,
    }

    def __init__(self, url: Optional[str] = None):
        if url:
            self.url = url

    def subscribe_message(self, ids: List[str]) -> dict:
        return {"type": "market", "assets_ids": list(ids)}

    def unsubscribe_message(self, ids: List[str]) -> dict:
        return {"assets_ids": list(ids), "operation": "unsubscribe"}

    def message_type(self, message: dict) -> Optional[str]:
        return message.get("event_type") or message.get("type")

    def classify(self, message_type: Optional[str]) -> Optional[str]:
        return self.TYPE_KINDS.get(message_type)

    def parse_trades(self, message: dict) -> List[dict]:
        return [polymarket_transform.transform_ws_trade(message)]

    def ping_message(self) -> Optional[str]:
        return "PING"

    def is_keepalive_reply(self, raw: str) -> bool:
        return raw == "PONG"

    def subscription_ids(self, market: Market) -> List[str]:
        return list(market.clob_token_ids or [])


class RealtimeIngestionService:
    """
    Long-lived WebSocket connection that stores trades as they arrive.

    subscribe()/unsubscribe() while disconnected only change the desired
    set; the full set is sent on every (re)connect.
    """

    def __init__(
        self,
        feed: FeedProtocol,
        writer: StorageWriter,
        reconnect_delay: float = 5.0,
        max_reconnect_attempts: int = 10,
        ping_interval: float = 10.0,
        subscribe_batch_size: int = 100,
        subscribe_batch_delay: float = 0.1,
        connector=websockets.connect,
    ):
        """
        Initialize the service.

        Args:
            feed: Venue adapter
            writer: Storage writer for incoming trades
            reconnect_delay: Base delay between reconnect attempts, grows linearly
            max_reconnect_attempts: Consecutive failed connections before giving up
            ping_interval: Seconds between keepalive pings
            subscribe_batch_size: Ids per subscribe frame
            subscribe_batch_delay: Seconds between subscribe frames
            connector: websockets.connect or a compatible factory
        """
        self.feed = feed
        self.writer = writer
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.ping_interval = ping_interval
        self.subscribe_batch_size = max(1, subscribe_batch_size)
        self.subscribe_batch_delay = subscribe_batch_delay
        self._connector = connector

        # Connection state
        self._ws = None
        self._running = False
        self._state = ConnectionState.DISCONNECTED
        self._reconnect_count = 0

        # Subscriptions
        self._desired: Set[str] = set()

        # Stats
        self._messages_received = 0
        self._trades_received = 0
        self._trades_stored = 0
        self._ticker_updates = 0
        self._orderbook_updates = 0
        self._errors = 0
        self._last_message_time: Optional[float] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def subscriptions(self) -> Set[str]:
        return set(self._desired)

    # ==================== Connection ====================

    async def connect(self):
        """
        Connect and process messages until disconnect() or until
        max_reconnect_attempts consecutive connections have failed.
        """
        if self._running:
            logger.warning(f"{self.feed.protocol} feed already running")
            return

        self._running = True
        self._reconnect_count = 0

        while self._running:
            self._state = ConnectionState.CONNECTING
            try:
                logger.info(f"Connecting to {self.feed.protocol} WebSocket: {self.feed.url}")
                kwargs = {"ping_interval": None, "close_timeout": 5}
                headers = self.feed.connect_headers()
                if headers:
                    kwargs["additional_headers"] = headers

                async with self._connector(self.feed.url, **kwargs) as ws:
                    if not self._running:
                        # disconnect() arrived while the handshake was in flight
                        await ws.close()
                        break
                    self._ws = ws
                    self._state = ConnectionState.CONNECTED
                    logger.info(f"{self.feed.protocol} WebSocket connected")

                    await self._send_in_batches(self.feed.subscribe_message, sorted(self._desired))

                    ping_stop = asyncio.Event()
                    ping_task = asyncio.create_task(self._ping_loop(ping_stop))
                    try:
                        await self._message_loop()
                    finally:
                        ping_stop.set()
                        ping_task.cancel()
                        try:
                            await ping_task
                        except asyncio.CancelledError:
                            pass

            except ConnectionClosed as e:
                logger.warning(f"{self.feed.protocol} WebSocket closed: {e}")
            except asyncio.CancelledError:
                self._running = False
                self._state = ConnectionState.DISCONNECTED
                self._ws = None
                raise
            except Exception as e:
                self._errors += 1
                logger.error(f"{self.feed.protocol} WebSocket error: {e}")

            self._ws = None
            if not self._running:
                break

            self._reconnect_count += 1
            if self._reconnect_count >= self.max_reconnect_attempts:
                logger.error(
                    f"{self.feed.protocol} WebSocket: max reconnect attempts "
                    f"({self.max_reconnect_attempts}) reached"
                )
                break

            self._state = ConnectionState.RECONNECTING
            wait = min(self.reconnect_delay * self._reconnect_count, 30)
            logger.info(f"Reconnecting in {wait:.0f}s (attempt {self._reconnect_count}/{self.max_reconnect_attempts})")
            await asyncio.sleep(wait)

        self._running = False
        self._state = ConnectionState.DISCONNECTED

    async def disconnect(self):
        """Close the connection and stop reconnecting"""
        self._running = False
        if self._ws is not None:
            await self._ws.close()
        self._state = ConnectionState.DISCONNECTED
        logger.info(f"{self.feed.protocol} WebSocket disconnected")

    async def _ping_loop(self, stop_event: asyncio.Event):
        while not stop_event.is_set():
            await asyncio.sleep(self.ping_interval)
            if stop_event.is_set() or self._ws is None:
                break
            try:
                text = self.feed.ping_message()
                if text is not None:
                    await self._ws.send(text)
                else:
                    await self._ws.ping()
            except ConnectionClosed:
                break

    # ==================== Subscriptions ====================

    async def subscribe(self, ids: List[str]):
        new_ids = [i for i in dict.fromkeys(ids) if i and i not in self._desired]
        self._desired.update(new_ids)
        if new_ids and self._state == ConnectionState.CONNECTED:
            await self._send_in_batches(self.feed.subscribe_message, new_ids)

    async def unsubscribe(self, ids: List[str]):
        removed = [i for i in dict.fromkeys(ids) if i in self._desired]
        self._desired.difference_update(removed)
        if removed and self._state == ConnectionState.CONNECTED:
            await self._send_in_batches(self.feed.unsubscribe_message, removed)

    async def subscribe_to_active_markets(self, db: Database) -> int:
        """
        Subscribe to every stored active, open market of this venue.

        Returns:
            Number of ids added to the desired set
        """
        async with db.session() as session:
            result = await session.execute(
                select(Market).where(
                    Market.protocol == self.feed.protocol,
                    Market.active.is_(True),
                    Market.closed.is_(False),
                )
            )
            markets = result.scalars().all()

        ids = [i for market in markets for i in self.feed.subscription_ids(market)]
        before = len(self._desired)
        await self.subscribe(ids)
        added = len(self._desired) - before
        logger.info(f"Subscribed to {added} ids from {len(markets)} active {self.feed.protocol} markets")
        return added

    async def _send_in_batches(self, build_message, ids: List[str]):
        for start in range(0, len(ids), self.subscribe_batch_size):
            if self._ws is None:
                return
            chunk = ids[start : start + self.subscribe_batch_size]
            try:
                await self._ws.send(json.dumps(build_message(chunk)))
            except ConnectionClosed as e:
                logger.warning(f"Subscription send failed, will resend on reconnect: {e}")
                return
            if start + self.subscribe_batch_size < len(ids):
                await asyncio.sleep(self.subscribe_batch_delay)

    # ==================== Messages ====================

    async def _message_loop(self):
        async for raw in self._ws:
            if not self._running:
                break
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            if self.feed.is_keepalive_reply(raw):
                continue

            self._messages_received += 1
            self._last_message_time = time.time()
            # A delivered message proves the connection healthy
            self._reconnect_count = 0

            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON message: {raw[:100]}")
                continue

            messages = data if isinstance(data, list) else [data]
            for message in messages:
                if isinstance(message, dict):
                    await self._handle_message(message)

    async def _handle_message(self, message: dict):
        message_type = self.feed.message_type(message)
        kind = self.feed.classify(message_type)

        try:
            if kind == TRADE:
                await self._handle_trade(message)
            elif kind == TICKER:
                self._ticker_updates += 1
            elif kind == ORDERBOOK:
                self._orderbook_updates += 1
            elif kind == ERROR:
                self._errors += 1
                logger.error(f"{self.feed.protocol} WebSocket error message: {message}")
            elif kind == CONTROL:
                logger.debug(f"{self.feed.protocol} control message: {message_type}")
            else:
                logger.debug(f"Unknown {self.feed.protocol} message type: {message_type}")
        except Exception as e:
            self._errors += 1
            logger.error(f"Error handling {message_type} message: {e}")

    async def _handle_trade(self, message: dict):
        trades = self.feed.parse_trades(message)
        self._trades_received += len(trades)

        stored = await self.writer.store_trades(trades)
        self._trades_stored += stored
        if stored < len(trades):
            self._errors += 1

        if stored and self._trades_stored % 100 == 0:
            logger.info(f"{self.feed.protocol} trades stored: {self._trades_stored} (received {self._trades_received})")

    def get_status(self) -> dict:
        """Connection state, subscription count and counters"""
        return {
            "protocol": self.feed.protocol,
            "state": self._state.value,
            "connected": self._state == ConnectionState.CONNECTED,
            "subscriptions": len(self._desired),
            "reconnect_count": self._reconnect_count,
            "messages_received": self._messages_received,
            "trades_received": self._trades_received,
            "trades_stored": self._trades_stored,
            "ticker_updates": self._ticker_updates,
            "orderbook_updates": self._orderbook_updates,
            "errors": self._errors,
            "last_message_age": (
                time.time() - self._last_message_time
                if self._last_message_time else None
            ),
        }
