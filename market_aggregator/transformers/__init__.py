"""
Pure transforms from raw venue payloads to the unified, protocol-tagged schema.
"""

from . import polymarket, kalshi, dflow
from .common import (
    EPOCH, parse_json_string_array, parse_date, to_float, derive_mid_price,
    derive_spread, summarize_markets,
)
from .orderbook import summarize_book, summarize_binary_book, build_snapshots

__all__ = [
    "polymarket",
    "kalshi",
    "dflow",
    "EPOCH",
    "parse_json_string_array",
    "parse_date",
    "to_float",
    "derive_mid_price",
    "derive_spread",
    "summarize_markets",
    "summarize_book",
    "summarize_binary_book",
    "build_snapshots",
]
