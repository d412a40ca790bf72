"""
Defensive parsing helpers shared by the venue transformers.

Upstream payloads are loosely typed: numbers arrive as strings, arrays
arrive JSON-encoded, dates arrive in several formats or not at all.
None of the helpers here raise on bad input.
"""

import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import pytz
from dateutil.parser import parse as dateutil_parse

from ..errors import MalformedUpstreamData

# Stored in place of missing or unparsable dates
EPOCH = datetime(1970, 1, 1)

# Epoch values above this are milliseconds
_MS_THRESHOLD = 10_000_000_000


def utcnow() -> datetime:
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def parse_json_array(value: Any) -> list:
    """
    Strict parse of a JSON-encoded array field.

    Raises:
        MalformedUpstreamData: value is neither a list nor a JSON array string
    """
    if isinstance(value, list):
        return value
    if not isinstance(value, str):
        raise MalformedUpstreamData(f"expected JSON array string, got {type(value).__name__}")
    try:
        parsed = json.loads(value)
    except ValueError as e:
        raise MalformedUpstreamData(f"invalid JSON array: {value[:50]!r}") from e
    if not isinstance(parsed, list):
        raise MalformedUpstreamData(f"JSON value is not an array: {value[:50]!r}")
    return parsed


def parse_json_string_array(value: Any) -> List[str]:
    """Parse a JSON-encoded string array; malformed or missing input gives []"""
    if value is None or value == "":
        return []
    try:
        items = parse_json_array(value)
    except MalformedUpstreamData:
        return []
    return [str(item) for item in items if item is not None]


def to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if result != result:  # NaN
        return default
    return result


def to_int(value: Any, default: int = 0) -> int:
    return int(to_float(value, float(default)))


def parse_date(value: Any) -> datetime:
    """
    Normalize a timestamp to naive UTC.

    Accepts datetimes, ISO-8601 strings and epoch seconds or milliseconds.
    Anything else maps to EPOCH.
    """
    if value is None or value == "":
        return EPOCH

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return parse_epoch(value)
    elif isinstance(value, str):
        if value.strip().isdigit():
            return parse_epoch(int(value.strip()))
        try:
            parsed = dateutil_parse(value)
        except (ValueError, OverflowError):
            return EPOCH
    else:
        return EPOCH

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(pytz.UTC).replace(tzinfo=None)
    return parsed


def parse_epoch(value: Any) -> datetime:
    seconds = to_float(value, -1.0)
    if seconds < 0:
        return EPOCH
    if seconds > _MS_THRESHOLD:
        seconds /= 1000.0
    try:
        return datetime.fromtimestamp(seconds, pytz.UTC).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        return EPOCH


def derive_mid_price(
    orderbook_mid: Optional[float] = None,
    best_bid: Optional[float] = None,
    best_ask: Optional[float] = None,
    last_price: Optional[float] = None,
) -> float:
    """Orderbook mid, then bid/ask average, then last trade price, then 0"""
    if orderbook_mid:
        return orderbook_mid
    if best_bid and best_ask:
        return (best_bid + best_ask) / 2
    if last_price:
        return last_price
    return 0.0


def derive_spread(
    orderbook_spread: Optional[float] = None,
    best_bid: Optional[float] = None,
    best_ask: Optional[float] = None,
) -> float:
    if orderbook_spread:
        return orderbook_spread
    if best_bid and best_ask and best_ask >= best_bid:
        return best_ask - best_bid
    return 0.0


def summarize_markets(markets: Iterable[dict]) -> Dict[str, Any]:
    """
    Event-level aggregates over normalized market dicts.

    Each market needs volume, liquidity, active and closed keys.
    """
    summary = {
        "market_count": 0,
        "total_volume": 0.0,
        "total_liquidity": 0.0,
        "active_markets": 0,
        "closed_markets": 0,
    }
    for market in markets:
        summary["market_count"] += 1
        summary["total_volume"] += to_float(market.get("volume"))
        summary["total_liquidity"] += to_float(market.get("liquidity"))
        if market.get("active"):
            summary["active_markets"] += 1
        if market.get("closed"):
            summary["closed_markets"] += 1
    return summary


def group_by_event(markets: Iterable[dict]) -> Dict[str, List[dict]]:
    """Group enriched markets by event_id, skipping markets with no resolvable parent"""
    grouped: Dict[str, List[dict]] = {}
    for market in markets:
        event_id = market.get("event_id")
        if not event_id:
            continue
        grouped.setdefault(event_id, []).append(market)
    return grouped
