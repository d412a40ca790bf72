"""
Data ingestion: pagination helpers, the per-market trade fetcher and the
real-time WebSocket service.
"""

from .pagination import paginate_offset, paginate_cursor
from .batch_fetch import fetch_each
from .trade_fetcher import TradeFetcher
from .realtime_feed import (
    ConnectionState,
    FeedProtocol,
    KalshiFeed,
    PolymarketFeed,
    RealtimeIngestionService,
)

__all__ = [
    "paginate_offset",
    "paginate_cursor",
    "fetch_each",
    "TradeFetcher",
    "ConnectionState",
    "FeedProtocol",
    "KalshiFeed",
    "PolymarketFeed",
    "RealtimeIngestionService",
]
