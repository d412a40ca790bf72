"""
Database models for the unified multi-venue schema.

Primary keys mirror the dedup identities so that re-inserting a record
with the same key merges onto the existing row.
"""

from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime,
    Text, JSON, Index
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how SQLite stores DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Protocol(str, Enum):
    """Supported prediction market venues"""
    POLYMARKET = "polymarket"
    KALSHI = "kalshi"
    DFLOW = "dflow"


class RunStatus(str, Enum):
    """Pipeline run audit status"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Event(Base):
    """A parent event grouping one or more markets"""
    __tablename__ = "events"

    protocol = Column(String(20), primary_key=True)
    id = Column(String(255), primary_key=True)

    slug = Column(String(500), default="")
    title = Column(Text, default="")
    description = Column(Text, default="")
    category = Column(String(255), default="")
    series_ticker = Column(String(255), nullable=True)

    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=True)

    # Aggregates over the event's resolvable markets
    market_count = Column(Integer, default=0)
    total_volume = Column(Float, default=0.0)
    total_liquidity = Column(Float, default=0.0)
    active_markets = Column(Integer, default=0)
    closed_markets = Column(Integer, default=0)

    fetched_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<Event {self.protocol}:{self.id} markets={self.market_count}>"


class Market(Base):
    """A tradable market, enriched with prices, orderbook and activity"""
    __tablename__ = "markets"

    protocol = Column(String(20), primary_key=True)
    id = Column(String(255), primary_key=True)

    event_id = Column(String(255), default="")
    slug = Column(String(500), default="")
    question = Column(Text, default="")
    description = Column(Text, default="")
    condition_id = Column(String(255), default="")
    market_type = Column(String(50), default="binary")

    outcomes = Column(JSON, default=list)
    outcome_prices = Column(JSON, default=list)
    clob_token_ids = Column(JSON, default=list)

    best_bid = Column(Float, default=0.0)
    best_ask = Column(Float, default=0.0)
    mid_price = Column(Float, default=0.0)
    spread = Column(Float, default=0.0)
    orderbook_bid_depth = Column(Float, default=0.0)
    orderbook_ask_depth = Column(Float, default=0.0)

    volume = Column(Float, default=0.0)
    liquidity = Column(Float, default=0.0)
    volume_24h = Column(Float, default=0.0)
    trades_24h = Column(Integer, default=0)
    unique_traders_24h = Column(Integer, default=0)

    active = Column(Boolean, default=False)
    closed = Column(Boolean, default=False)

    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=True)

    fetched_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_markets_event', 'protocol', 'event_id'),
        Index('idx_markets_active', 'protocol', 'active'),
    )

    def __repr__(self):
        return f"<Market {self.protocol}:{self.id} mid={self.mid_price}>"


class Trade(Base):
    """A single executed trade"""
    __tablename__ = "trades"

    protocol = Column(String(20), primary_key=True)
    market_id = Column(String(255), primary_key=True)
    timestamp = Column(DateTime, primary_key=True)
    id = Column(String(255), primary_key=True)

    condition_id = Column(String(255), default="")
    asset = Column(String(255), default="")
    user_address = Column(String(255), default="")
    side = Column(String(10), default="")
    price = Column(Float, default=0.0)
    size = Column(Float, default=0.0)
    transaction_hash = Column(String(255), default="")
    outcome = Column(String(100), default="")
    outcome_index = Column(Integer, default=0)
    title = Column(Text, default="")
    slug = Column(String(500), default="")
    event_slug = Column(String(500), default="")

    fetched_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_trades_user', 'user_address'),
        Index('idx_trades_time', 'protocol', 'timestamp'),
    )

    def __repr__(self):
        return f"<Trade {self.protocol}:{self.id} {self.side} {self.size}@{self.price}>"


class Trader(Base):
    """Leaderboard entry for a trader"""
    __tablename__ = "traders"

    protocol = Column(String(20), primary_key=True)
    user_address = Column(String(255), primary_key=True)

    username = Column(String(255), default="")
    profile_image = Column(Text, default="")
    rank = Column(Integer, default=0)
    total_volume = Column(Float, default=0.0)
    total_pnl = Column(Float, default=0.0)

    fetched_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<Trader {self.protocol}:{self.user_address[:10]} rank={self.rank}>"


class Position(Base):
    """Open position held by a trader"""
    __tablename__ = "positions"

    protocol = Column(String(20), primary_key=True)
    user_address = Column(String(255), primary_key=True)
    market_id = Column(String(255), primary_key=True)
    asset_id = Column(String(255), primary_key=True)

    outcome = Column(String(100), default="")
    size = Column(Float, default=0.0)
    avg_price = Column(Float, default=0.0)
    current_value = Column(Float, default=0.0)
    pnl = Column(Float, default=0.0)

    fetched_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<Position {self.user_address[:10]} {self.market_id} size={self.size}>"


class OrderbookSnapshot(Base):
    """Top-of-book summary for a token at fetch time"""
    __tablename__ = "orderbook_snapshots"

    protocol = Column(String(20), primary_key=True)
    asset_id = Column(String(255), primary_key=True)
    fetched_at = Column(DateTime, primary_key=True)

    market_id = Column(String(255), default="")
    best_bid = Column(Float, default=0.0)
    best_ask = Column(Float, default=0.0)
    mid_price = Column(Float, default=0.0)
    spread = Column(Float, default=0.0)
    bid_depth = Column(Float, default=0.0)
    ask_depth = Column(Float, default=0.0)

    def __repr__(self):
        return f"<OrderbookSnapshot {self.asset_id[:20]} mid={self.mid_price}>"


class PipelineRun(Base):
    """Audit row for a single pipeline run"""
    __tablename__ = "pipeline_runs"

    id = Column(String(64), primary_key=True)
    protocol = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=RunStatus.RUNNING.value)

    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    events_fetched = Column(Integer, default=0)
    markets_fetched = Column(Integer, default=0)
    trades_fetched = Column(Integer, default=0)
    traders_fetched = Column(Integer, default=0)
    positions_fetched = Column(Integer, default=0)

    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_runs_protocol_started', 'protocol', 'started_at'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.COMPLETED.value, RunStatus.FAILED.value)

    def __repr__(self):
        return f"<PipelineRun {self.id[:8]} {self.protocol} {self.status}>"


class PipelineCheckpoint(Base):
    """Phase-scoped resume marker"""
    __tablename__ = "pipeline_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(64), nullable=False)
    protocol = Column(String(20), nullable=False)
    phase = Column(String(50), nullable=False)
    checkpoint_data = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_checkpoints_phase', 'protocol', 'phase', 'created_at'),
    )

    def __repr__(self):
        return f"<PipelineCheckpoint {self.protocol}/{self.phase} run={self.run_id[:8]}>"
