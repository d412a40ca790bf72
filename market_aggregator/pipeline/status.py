"""
Pipeline phases and the status snapshot exposed to callers.
"""

import copy
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional


class PipelinePhase(str, Enum):
    IDLE = "idle"
    FETCHING_EVENTS = "fetching_events"
    FETCHING_MARKETS = "fetching_markets"
    FETCHING_PRICES = "fetching_prices"
    FETCHING_ORDERBOOKS = "fetching_orderbooks"
    FETCHING_TRADES = "fetching_trades"
    FETCHING_TRADERS = "fetching_traders"
    STORING = "storing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PipelineProgress:
    """Per-category counters; they only ever increase during a run"""
    events_fetched: int = 0
    markets_fetched: int = 0
    active_markets: int = 0
    prices_fetched: int = 0
    orderbooks_fetched: int = 0
    market_activity_fetched: int = 0
    trades_fetched: int = 0
    traders_fetched: int = 0
    positions_fetched: int = 0

    events_stored: int = 0
    markets_stored: int = 0
    orderbooks_stored: int = 0
    trades_stored: int = 0
    traders_stored: int = 0
    positions_stored: int = 0


@dataclass
class PipelineStatus:
    run_id: Optional[str] = None
    protocol: Optional[str] = None
    is_running: bool = False
    current_phase: PipelinePhase = PipelinePhase.IDLE
    progress: PipelineProgress = field(default_factory=PipelineProgress)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def snapshot(self) -> "PipelineStatus":
        """Independent deep copy"""
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["current_phase"] = self.current_phase.value
        for key in ("started_at", "completed_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data
