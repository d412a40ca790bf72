"""
Orderbook summaries: best bid/ask, mid, spread and notional depth.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .common import to_float, utcnow

Level = Tuple[float, float]


def parse_levels(levels: Any) -> List[Level]:
    """
    Parse book levels given as [price, size] pairs or {price, size} dicts.

    Malformed levels are dropped.
    """
    if not isinstance(levels, list):
        return []

    parsed = []
    for level in levels:
        if isinstance(level, dict):
            price, size = level.get("price"), level.get("size")
        elif isinstance(level, (list, tuple)) and len(level) >= 2:
            price, size = level[0], level[1]
        else:
            continue
        price, size = to_float(price, -1.0), to_float(size, -1.0)
        if price < 0 or size < 0:
            continue
        parsed.append((price, size))
    return parsed


def summarize_orderbook(bids: List[Level], asks: List[Level]) -> Dict[str, float]:
    """
    Best bid is the highest bid, best ask the lowest ask. Depth is the
    notional (price * size) summed over each side.
    """
    best_bid = max((p for p, _ in bids), default=0.0)
    best_ask = min((p for p, _ in asks), default=0.0)

    if best_bid and best_ask:
        mid_price = (best_bid + best_ask) / 2
        spread = best_ask - best_bid
    else:
        mid_price = best_bid or best_ask
        spread = 0.0

    return {
        "best_bid": best_bid,
        "best_ask": best_ask,
        "mid_price": mid_price,
        "spread": spread,
        "bid_depth": sum(p * s for p, s in bids),
        "ask_depth": sum(p * s for p, s in asks),
    }


def summarize_book(raw: Optional[dict]) -> Optional[Dict[str, float]]:
    """Summary of a CLOB-style book with "bids" and "asks" lists"""
    if not isinstance(raw, dict):
        return None
    bids = parse_levels(raw.get("bids"))
    asks = parse_levels(raw.get("asks"))
    if not bids and not asks:
        return None
    return summarize_orderbook(bids, asks)


def summarize_binary_book(raw: Optional[dict]) -> Optional[Dict[str, float]]:
    """
    Summary of a Kalshi-style book holding only YES and NO bids.

    A NO bid at p is a YES ask at 1 - p. Prices in cents are scaled to
    dollars; the *_dollars variants are used as-is.
    """
    if not isinstance(raw, dict):
        return None

    if raw.get("yes_dollars") is not None or raw.get("no_dollars") is not None:
        yes = parse_levels(raw.get("yes_dollars"))
        no = parse_levels(raw.get("no_dollars"))
    else:
        yes = [(p / 100.0, s) for p, s in parse_levels(raw.get("yes"))]
        no = [(p / 100.0, s) for p, s in parse_levels(raw.get("no"))]

    if not yes and not no:
        return None

    asks = [(round(1.0 - p, 6), s) for p, s in no]
    return summarize_orderbook(yes, asks)


def build_snapshots(
    protocol: str,
    summaries: Dict[str, Dict[str, float]],
    market_by_asset: Optional[Dict[str, str]] = None,
    fetched_at: Optional[datetime] = None,
) -> List[dict]:
    """Orderbook snapshot records from summaries keyed by asset id"""
    fetched_at = fetched_at or utcnow()
    market_by_asset = market_by_asset or {}
    return [
        {
            "protocol": protocol,
            "asset_id": asset_id,
            "market_id": market_by_asset.get(asset_id, ""),
            "fetched_at": fetched_at,
            **summary,
        }
        for asset_id, summary in summaries.items()
    ]
