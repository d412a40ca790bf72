"""
Kalshi raw payloads (REST v2 events/markets/trades and WebSocket trade
messages) to the unified schema.
"""

from datetime import datetime
from typing import Dict, List, Optional

from .common import (
    derive_mid_price, derive_spread, group_by_event, parse_date,
    summarize_markets, to_float, utcnow,
)

PROTOCOL = "kalshi"

CLOSED_STATUSES = {"closed", "determined", "disputed", "amended", "finalized", "settled"}
ACTIVE_STATUSES = {"active", "open"}


def parse_price(market: dict, field: str) -> float:
    """Dollar price from `<field>_dollars`, falling back to the cents field"""
    dollars = market.get(f"{field}_dollars")
    if dollars not in (None, ""):
        return to_float(dollars)
    return to_float(market.get(field)) / 100.0


def is_active(status: Optional[str]) -> bool:
    return (status or "").lower() in ACTIVE_STATUSES


def is_closed(status: Optional[str]) -> bool:
    return (status or "").lower() in CLOSED_STATUSES


def transform_markets(
    markets: List[dict],
    orderbook_map: Optional[Dict[str, dict]] = None,
    fetched_at: Optional[datetime] = None,
) -> List[dict]:
    fetched_at = fetched_at or utcnow()
    orderbook_map = orderbook_map or {}

    enriched = []
    for market in markets:
        ticker = market.get("ticker") or ""
        if not ticker:
            continue

        book = orderbook_map.get(ticker) or {}
        yes_bid = parse_price(market, "yes_bid")
        yes_ask = parse_price(market, "yes_ask")
        last_price = parse_price(market, "last_price")
        best_bid = book.get("best_bid") or yes_bid
        best_ask = book.get("best_ask") or yes_ask
        status = market.get("status")

        enriched.append({
            "id": ticker,
            "event_id": market.get("event_ticker") or "",
            "slug": ticker,
            "question": market.get("title") or "",
            "description": market.get("rules_primary") or "",
            "condition_id": ticker,
            "market_type": market.get("market_type") or "binary",
            "outcomes": [market.get("yes_sub_title") or "Yes", market.get("no_sub_title") or "No"],
            "outcome_prices": [last_price, round(1 - last_price, 6) if last_price else 0.0],
            "clob_token_ids": [ticker],
            "best_bid": best_bid,
            "best_ask": best_ask,
            "mid_price": derive_mid_price(book.get("mid_price"), best_bid, best_ask, last_price),
            "spread": derive_spread(book.get("spread"), best_bid, best_ask),
            "orderbook_bid_depth": book.get("bid_depth", 0.0),
            "orderbook_ask_depth": book.get("ask_depth", 0.0),
            "volume": to_float(market.get("volume")),
            "liquidity": parse_price(market, "liquidity"),
            "volume_24h": to_float(market.get("volume_24h")),
            "trades_24h": 0,
            "unique_traders_24h": 0,
            "active": is_active(status),
            "closed": is_closed(status),
            "start_date": parse_date(market.get("open_time")),
            "end_date": parse_date(market.get("close_time")),
            "created_at": parse_date(market.get("created_time")),
            "protocol": PROTOCOL,
            "fetched_at": fetched_at,
        })
    return enriched


def transform_events(
    events: List[dict],
    markets: List[dict],
    fetched_at: Optional[datetime] = None,
) -> List[dict]:
    """Events keyed by event_ticker with aggregates over their markets"""
    fetched_at = fetched_at or utcnow()
    grouped = group_by_event(markets)

    enriched = []
    for event in events:
        event_id = event.get("event_ticker") or ""
        if not event_id:
            continue
        members = grouped.get(event_id)
        if members is None:
            members = [
                {
                    "volume": m.get("volume"),
                    "liquidity": parse_price(m, "liquidity"),
                    "active": is_active(m.get("status")),
                    "closed": is_closed(m.get("status")),
                }
                for m in event.get("markets") or []
            ]

        # Kalshi events only carry a strike date
        strike_date = parse_date(event.get("strike_date"))
        enriched.append({
            "id": event_id,
            "slug": event_id,
            "title": event.get("title") or "",
            "description": event.get("sub_title") or "",
            "category": event.get("category") or "",
            "series_ticker": event.get("series_ticker") or "",
            "start_date": strike_date,
            "end_date": parse_date(None),
            "created_at": strike_date,
            **summarize_markets(members),
            "protocol": PROTOCOL,
            "fetched_at": fetched_at,
        })
    return enriched


def transform_trade(trade: dict, event_ticker: str = "", fetched_at: Optional[datetime] = None) -> dict:
    """
    A REST trade or a WebSocket `trade` message body to a unified trade.

    REST trades carry `ticker` and `created_time`; WebSocket trades carry
    `market_ticker` and `ts` in seconds. Trades without a trade_id get an
    id derived from their content so that replays merge.
    """
    fetched_at = fetched_at or utcnow()
    ticker = trade.get("market_ticker") or trade.get("ticker") or ""
    raw_time = trade.get("ts") if trade.get("ts") is not None else trade.get("created_time")
    taker_side = (trade.get("taker_side") or "").lower()
    price = parse_price(trade, "yes_price")
    count = to_float(trade.get("count"))

    trade_id = trade.get("trade_id") or f"kalshi-{ticker}-{raw_time}-{taker_side}-{count:g}-{price:g}"

    return {
        "id": trade_id,
        "market_id": ticker,
        "condition_id": ticker,
        "asset": ticker,
        "user_address": "",
        "side": taker_side,
        "price": price,
        "size": count,
        "timestamp": parse_date(raw_time),
        "transaction_hash": "",
        "outcome": "Yes" if taker_side == "yes" else "No",
        "outcome_index": 0 if taker_side == "yes" else 1,
        "title": "",
        "slug": ticker,
        "event_slug": event_ticker,
        "protocol": PROTOCOL,
        "fetched_at": fetched_at,
    }


def transform_trades(trades: List[dict], event_ticker: str = "", fetched_at: Optional[datetime] = None) -> List[dict]:
    fetched_at = fetched_at or utcnow()
    return [transform_trade(t, event_ticker, fetched_at) for t in trades]
