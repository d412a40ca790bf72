"""
DFlow metadata API payloads to the unified schema.
"""

from datetime import datetime
from typing import Dict, List, Optional

from .common import (
    derive_mid_price, derive_spread, group_by_event, parse_date,
    summarize_markets, to_float, utcnow,
)

PROTOCOL = "dflow"


def build_market_event_map(events: List[dict]) -> Dict[str, str]:
    mapping = {}
    for event in events:
        for market in event.get("markets") or []:
            if market.get("id") and event.get("id"):
                mapping[market["id"]] = event["id"]
    return mapping


def transform_markets(
    markets: List[dict],
    events: List[dict],
    orderbook_map: Optional[Dict[str, dict]] = None,
    fetched_at: Optional[datetime] = None,
) -> List[dict]:
    """Markets with YES/NO prices; the orderbook is keyed by ticker"""
    fetched_at = fetched_at or utcnow()
    orderbook_map = orderbook_map or {}
    event_map = build_market_event_map(events)

    enriched = []
    for market in markets:
        market_id = market.get("id") or ""
        if not market_id:
            continue
        ticker = market.get("ticker") or market_id
        book = orderbook_map.get(ticker) or {}
        yes_price = to_float(market.get("yesPrice")) or book.get("mid_price", 0.0)
        no_price = to_float(market.get("noPrice")) or (round(1 - yes_price, 6) if yes_price else 0.0)
        accounts = market.get("accounts") or {}

        best_bid = book.get("best_bid", 0.0)
        best_ask = book.get("best_ask", 0.0)

        enriched.append({
            "id": market_id,
            "event_id": event_map.get(market_id) or market.get("eventId") or "",
            "slug": ticker,
            "question": market.get("title") or "",
            "description": market.get("description") or "",
            "condition_id": market_id,
            "market_type": "binary",
            "outcomes": ["Yes", "No"],
            "outcome_prices": [yes_price, no_price],
            "clob_token_ids": [m for m in (accounts.get("yesMint"), accounts.get("noMint")) if m],
            "best_bid": best_bid,
            "best_ask": best_ask,
            "mid_price": derive_mid_price(book.get("mid_price"), best_bid, best_ask, yes_price),
            "spread": derive_spread(book.get("spread"), best_bid, best_ask),
            "orderbook_bid_depth": book.get("bid_depth", 0.0),
            "orderbook_ask_depth": book.get("ask_depth", 0.0),
            "volume": to_float(market.get("volume")),
            "liquidity": to_float(market.get("liquidity")),
            "volume_24h": 0.0,
            "trades_24h": 0,
            "unique_traders_24h": 0,
            "active": market.get("status") == "active",
            "closed": market.get("status") == "resolved",
            "start_date": parse_date(market.get("openTime")),
            "end_date": parse_date(market.get("expirationTime")),
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
    fetched_at = fetched_at or utcnow()
    grouped = group_by_event(markets)

    enriched = []
    for event in events:
        event_id = event.get("id") or ""
        if not event_id:
            continue
        members = grouped.get(event_id)
        if members is None:
            members = [
                {
                    "volume": m.get("volume"),
                    "liquidity": m.get("liquidity"),
                    "active": m.get("status") == "active",
                    "closed": m.get("status") == "resolved",
                }
                for m in event.get("markets") or []
            ]

        enriched.append({
            "id": event_id,
            "slug": event.get("ticker") or event_id,
            "title": event.get("title") or "",
            "description": event.get("description") or "",
            "category": event.get("category") or "",
            "start_date": parse_date(event.get("createdAt")),
            "end_date": parse_date(event.get("expirationTime")),
            "created_at": parse_date(event.get("createdAt")),
            **summarize_markets(members),
            "protocol": PROTOCOL,
            "fetched_at": fetched_at,
        })
    return enriched


def transform_trades(trades: List[dict], fetched_at: Optional[datetime] = None) -> List[dict]:
    fetched_at = fetched_at or utcnow()

    enriched = []
    for trade in trades:
        market_id = trade.get("marketId") or trade.get("marketTicker") or ""
        outcome = (trade.get("outcome") or "").lower()
        tx = trade.get("txSignature") or ""
        enriched.append({
            "id": trade.get("id") or tx or f"{market_id}-{trade.get('timestamp', '')}",
            "market_id": market_id,
            "condition_id": market_id,
            "asset": trade.get("marketTicker") or market_id,
            "user_address": trade.get("taker") or "",
            "side": (trade.get("side") or "").upper(),
            "price": to_float(trade.get("price")),
            "size": to_float(trade.get("size")),
            "timestamp": parse_date(trade.get("timestamp")),
            "transaction_hash": tx,
            "outcome": outcome.capitalize(),
            "outcome_index": 0 if outcome == "yes" else 1,
            "title": "",
            "slug": trade.get("marketTicker") or "",
            "event_slug": "",
            "protocol": PROTOCOL,
            "fetched_at": fetched_at,
        })
    return enriched
