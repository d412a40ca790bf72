"""
Polymarket raw payloads (Gamma events/markets, Data API trades,
leaderboard, positions) to the unified schema.
"""

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from .common import (
    EPOCH, derive_mid_price, derive_spread, group_by_event, parse_date,
    parse_json_string_array, summarize_markets, to_float, to_int, utcnow,
)

PROTOCOL = "polymarket"


def build_market_event_map(events: Iterable[dict]) -> Dict[str, str]:
    """Market id and condition id -> parent event id, from markets embedded in events"""
    mapping = {}
    for event in events:
        event_id = event.get("id")
        if not event_id:
            continue
        for market in event.get("markets") or []:
            if market.get("id"):
                mapping[str(market["id"])] = str(event_id)
            if market.get("conditionId"):
                mapping[market["conditionId"]] = str(event_id)
    return mapping


def resolve_event_id(market: dict, event_map: Dict[str, str]) -> str:
    event_id = event_map.get(str(market.get("id", ""))) or event_map.get(market.get("conditionId") or "")
    if event_id:
        return event_id
    # Gamma sometimes embeds the parent events on the market itself
    parents = market.get("events")
    if isinstance(parents, list) and parents and isinstance(parents[0], dict):
        return str(parents[0].get("id") or "")
    return ""


def get_token_ids(market: dict) -> List[str]:
    return parse_json_string_array(market.get("clobTokenIds"))


def transform_markets(
    markets: List[dict],
    events: List[dict],
    price_map: Optional[Dict[str, float]] = None,
    orderbook_map: Optional[Dict[str, dict]] = None,
    activity_map: Optional[Dict[str, dict]] = None,
    fetched_at: Optional[datetime] = None,
) -> List[dict]:
    """
    Enrich Gamma markets with prices, the primary token's orderbook and
    24h activity.
    """
    fetched_at = fetched_at or utcnow()
    price_map = price_map or {}
    orderbook_map = orderbook_map or {}
    activity_map = activity_map or {}
    event_map = build_market_event_map(events)

    enriched = []
    for market in markets:
        token_ids = get_token_ids(market)
        raw_prices = [to_float(p) for p in parse_json_string_array(market.get("outcomePrices"))]

        if token_ids and price_map:
            outcome_prices = [
                price_map.get(token_id, raw_prices[i] if i < len(raw_prices) else 0.0)
                for i, token_id in enumerate(token_ids)
            ]
        else:
            outcome_prices = raw_prices

        book = orderbook_map.get(token_ids[0]) if token_ids else None
        book = book or {}
        best_bid = book.get("best_bid") or to_float(market.get("bestBid"))
        best_ask = book.get("best_ask") or to_float(market.get("bestAsk"))
        last_price = to_float(market.get("lastTradePrice")) or (outcome_prices[0] if outcome_prices else 0.0)

        condition_id = market.get("conditionId") or ""
        activity = activity_map.get(condition_id) or activity_map.get(str(market.get("id", "")))

        enriched.append({
            "id": str(market.get("id", "")),
            "event_id": resolve_event_id(market, event_map),
            "slug": market.get("slug") or "",
            "question": market.get("question") or "",
            "description": market.get("description") or "",
            "condition_id": condition_id,
            "market_type": market.get("marketType") or "binary",
            "outcomes": parse_json_string_array(market.get("outcomes")),
            "outcome_prices": outcome_prices,
            "clob_token_ids": token_ids,
            "best_bid": best_bid,
            "best_ask": best_ask,
            "mid_price": derive_mid_price(book.get("mid_price"), best_bid, best_ask, last_price),
            "spread": derive_spread(book.get("spread"), best_bid, best_ask),
            "orderbook_bid_depth": book.get("bid_depth", 0.0),
            "orderbook_ask_depth": book.get("ask_depth", 0.0),
            "volume": to_float(market.get("volume")),
            "liquidity": to_float(market.get("liquidity")),
            "volume_24h": activity["volume_24h"] if activity else to_float(market.get("volume24hr")),
            "trades_24h": activity["trades_24h"] if activity else 0,
            "unique_traders_24h": activity["unique_traders_24h"] if activity else 0,
            "active": bool(market.get("active")),
            "closed": bool(market.get("closed")),
            "start_date": parse_date(market.get("startDate")),
            "end_date": parse_date(market.get("endDate")),
            "created_at": parse_date(market.get("createdAt")),
            "protocol": PROTOCOL,
            "fetched_at": fetched_at,
        })
    return enriched


def transform_events(
    events: List[dict],
    markets: List[dict],
    fetched_at: Optional[datetime] = None,
) -> List[dict]:
    """
    Enrich events with aggregates over their markets.

    `markets` are enriched markets; an event with none of them falls back
    to the markets embedded in its own payload.
    """
    fetched_at = fetched_at or utcnow()
    grouped = group_by_event(markets)

    enriched = []
    for event in events:
        event_id = str(event.get("id", ""))
        if not event_id:
            continue
        members = grouped.get(event_id)
        if members is None:
            members = [
                {
                    "volume": m.get("volume"),
                    "liquidity": m.get("liquidity"),
                    "active": m.get("active"),
                    "closed": m.get("closed"),
                }
                for m in event.get("markets") or []
            ]

        enriched.append({
            "id": event_id,
            "slug": event.get("slug") or "",
            "title": event.get("title") or "",
            "description": event.get("description") or "",
            "category": event.get("category") or "",
            "start_date": parse_date(event.get("startDate")),
            "end_date": parse_date(event.get("endDate")),
            "created_at": parse_date(event.get("createdAt")),
            **summarize_markets(members),
            "protocol": PROTOCOL,
            "fetched_at": fetched_at,
        })
    return enriched


def transform_trades(trades: List[dict], fetched_at: Optional[datetime] = None) -> List[dict]:
    """
    Data API trades to unified trades.

    Trades without a transaction hash get a positional id, which is stable
    as long as the upstream ordering is.
    """
    fetched_at = fetched_at or utcnow()

    enriched = []
    for index, trade in enumerate(trades):
        condition_id = trade.get("conditionId") or ""
        timestamp = parse_date(trade.get("timestamp"))
        tx_hash = trade.get("transactionHash") or ""
        trade_id = tx_hash or f"{condition_id}-{trade.get('timestamp', '')}-{index}"

        enriched.append({
            "id": trade_id,
            "market_id": condition_id,
            "condition_id": condition_id,
            "asset": trade.get("asset") or "",
            "user_address": (trade.get("proxyWallet") or "").lower(),
            "side": (trade.get("side") or "").upper(),
            "price": to_float(trade.get("price")),
            "size": to_float(trade.get("size")),
            "timestamp": timestamp,
            "transaction_hash": tx_hash,
            "outcome": trade.get("outcome") or "",
            "outcome_index": to_int(trade.get("outcomeIndex")),
            "title": trade.get("title") or "",
            "slug": trade.get("slug") or "",
            "event_slug": trade.get("eventSlug") or "",
            "protocol": PROTOCOL,
            "fetched_at": fetched_at,
        })
    return enriched


def transform_ws_trade(message: dict, fetched_at: Optional[datetime] = None) -> dict:
    """
    CLOB market channel `last_trade_price` message to a unified trade.

    The channel carries no trade id, so the id is built from the message
    content and a replayed message merges onto the same row.
    """
    fetched_at = fetched_at or utcnow()
    condition_id = message.get("market") or ""
    asset_id = message.get("asset_id") or ""
    side = (message.get("side") or "").upper()
    price = to_float(message.get("price"))
    size = to_float(message.get("size"))
    raw_time = message.get("timestamp")

    return {
        "id": f"{condition_id}-{asset_id}-{raw_time}-{side}-{size:g}-{price:g}",
        "market_id": condition_id,
        "condition_id": condition_id,
        "asset": asset_id,
        "user_address": "",
        "side": side,
        "price": price,
        "size": size,
        "timestamp": parse_date(raw_time),
        "transaction_hash": message.get("transaction_hash") or "",
        "outcome": message.get("outcome") or "",
        "outcome_index": to_int(message.get("outcome_index")),
        "title": "",
        "slug": "",
        "event_slug": "",
        "protocol": PROTOCOL,
        "fetched_at": fetched_at,
    }


def transform_traders(entries: List[dict], fetched_at: Optional[datetime] = None) -> List[dict]:
    """Leaderboard entries to traders; a missing rank is the list position"""
    fetched_at = fetched_at or utcnow()

    traders = []
    for index, entry in enumerate(entries):
        address = (entry.get("proxyWallet") or entry.get("address") or "").lower()
        if not address:
            continue
        traders.append({
            "user_address": address,
            "username": entry.get("userName") or entry.get("name") or "",
            "profile_image": entry.get("profileImage") or "",
            "rank": to_int(entry.get("rank")) or index + 1,
            "total_volume": to_float(entry.get("vol", entry.get("volume"))),
            "total_pnl": to_float(entry.get("pnl")),
            "protocol": PROTOCOL,
            "fetched_at": fetched_at,
        })
    return traders


def transform_positions(
    positions: List[dict],
    user_address: str,
    fetched_at: Optional[datetime] = None,
) -> List[dict]:
    """Open positions for one user; zero-size positions are dropped"""
    fetched_at = fetched_at or utcnow()

    records = []
    for position in positions:
        size = to_float(position.get("size"))
        if size == 0:
            continue
        records.append({
            "user_address": user_address.lower(),
            "market_id": position.get("conditionId") or "",
            "asset_id": position.get("asset") or "",
            "outcome": position.get("outcome") or "",
            "size": size,
            "avg_price": to_float(position.get("avgPrice")),
            "current_value": to_float(position.get("currentValue")),
            "pnl": to_float(position.get("cashPnl")),
            "protocol": PROTOCOL,
            "fetched_at": fetched_at,
        })
    return records


def compute_market_activity(
    trades_by_market: Dict[str, List[dict]],
    now: Optional[datetime] = None,
) -> Dict[str, dict]:
    """
    24h volume, trade count and distinct traders per market, from
    unified trades.
    """
    cutoff = (now or utcnow()) - timedelta(hours=24)

    activity = {}
    for market_id, trades in trades_by_market.items():
        recent = [t for t in trades if t["timestamp"] != EPOCH and t["timestamp"] >= cutoff]
        activity[market_id] = {
            "volume_24h": sum(t["price"] * t["size"] for t in recent),
            "trades_24h": len(recent),
            "unique_traders_24h": len({t["user_address"] for t in recent if t["user_address"]}),
        }
    return activity
