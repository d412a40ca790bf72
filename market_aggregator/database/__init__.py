from .models import (
    Base, Protocol, RunStatus, Event, Market, Trade, Trader, Position,
    OrderbookSnapshot, PipelineRun, PipelineCheckpoint,
)
from .db import Database
from .storage import StorageWriter, TradeBuffer
from .checkpoints import CheckpointStore, RunLog, TradesCheckpoint

__all__ = [
    'Base', 'Protocol', 'RunStatus',
    'Event', 'Market', 'Trade', 'Trader', 'Position',
    'OrderbookSnapshot', 'PipelineRun', 'PipelineCheckpoint',
    'Database', 'StorageWriter', 'TradeBuffer',
    'CheckpointStore', 'RunLog', 'TradesCheckpoint',
]
