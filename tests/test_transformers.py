"""Tests for the defensive parsing helpers and the venue transformers."""

from datetime import datetime, timedelta

import pytest

from market_aggregator.errors import MalformedUpstreamData
from market_aggregator.transformers import dflow, kalshi, polymarket
from market_aggregator.transformers.common import (
    EPOCH, derive_mid_price, parse_date, parse_json_array,
    parse_json_string_array, to_float,
)
from market_aggregator.transformers.orderbook import summarize_binary_book, summarize_book


FETCHED_AT = datetime(2025, 1, 15, 15, 0, 0)


class TestParsingHelpers:
    def test_malformed_json_array_is_empty(self):
        assert parse_json_string_array("[not json") == []
        assert parse_json_string_array('{"a": 1}') == []
        assert parse_json_string_array(None) == []
        assert parse_json_string_array("") == []

    def test_json_string_array(self):
        assert parse_json_string_array('["Yes", "No"]') == ["Yes", "No"]
        assert parse_json_string_array(["a", 1]) == ["a", "1"]

    def test_strict_parser_raises(self):
        with pytest.raises(MalformedUpstreamData):
            parse_json_array("[oops")

    def test_to_float(self):
        assert to_float("0.55") == 0.55
        assert to_float("abc") == 0.0
        assert to_float(None, 1.5) == 1.5
        assert to_float(float("nan")) == 0.0

    def test_parse_date_formats(self):
        expected = datetime(2025, 1, 15, 14, 30, 0)
        assert parse_date("2025-01-15T14:30:00Z") == expected
        assert parse_date("2025-01-15T16:30:00+02:00") == expected
        assert parse_date(1736951400) == expected
        assert parse_date(1736951400000) == expected
        assert parse_date("1736951400") == expected

    def test_unparsable_date_is_epoch(self):
        assert parse_date(None) == EPOCH
        assert parse_date("") == EPOCH
        assert parse_date("not a date") == EPOCH
        assert parse_date({"nested": True}) == EPOCH

    def test_mid_price_fallback_order(self):
        assert derive_mid_price(0.5, 0.4, 0.6, 0.7) == 0.5
        assert derive_mid_price(None, 0.4, 0.6, 0.7) == pytest.approx(0.5)
        assert derive_mid_price(None, 0.4, None, 0.7) == 0.7
        assert derive_mid_price(None, None, None, None) == 0.0


class TestOrderbookSummaries:
    def test_clob_book(self):
        summary = summarize_book({
            "bids": [{"price": "0.40", "size": "100"}, {"price": "0.45", "size": "50"}],
            "asks": [{"price": "0.55", "size": "10"}, {"price": "0.50", "size": "20"}],
        })
        assert summary["best_bid"] == 0.45
        assert summary["best_ask"] == 0.50
        assert summary["mid_price"] == pytest.approx(0.475)
        assert summary["spread"] == pytest.approx(0.05)
        assert summary["bid_depth"] == pytest.approx(0.40 * 100 + 0.45 * 50)

    def test_empty_book_is_none(self):
        assert summarize_book({"bids": [], "asks": []}) is None
        assert summarize_book(None) is None

    def test_binary_book_no_bids_become_yes_asks(self):
        summary = summarize_binary_book({"yes": [[40, 100]], "no": [[55, 200]]})
        assert summary["best_bid"] == pytest.approx(0.40)
        assert summary["best_ask"] == pytest.approx(0.45)
        assert summary["mid_price"] == pytest.approx(0.425)

    def test_binary_book_dollar_levels(self):
        summary = summarize_binary_book({"yes_dollars": [["0.40", 100]], "no_dollars": [["0.55", 200]]})
        assert summary["best_bid"] == pytest.approx(0.40)
        assert summary["best_ask"] == pytest.approx(0.45)


class TestPolymarketTransforms:
    def test_markets_use_prices_and_orderbook(self, make_gamma_market, make_gamma_event):
        market = make_gamma_market()
        event = make_gamma_event(markets=[{"id": market["id"]}])
        prices = {"token_1_yes": 0.62, "token_1_no": 0.38}
        books = {"token_1_yes": {"best_bid": 0.61, "best_ask": 0.63, "mid_price": 0.62, "spread": 0.02}}

        [record] = polymarket.transform_markets([market], [event], prices, books, {}, FETCHED_AT)

        assert record["id"] == market["id"]
        assert record["event_id"] == event["id"]
        assert record["outcomes"] == ["Yes", "No"]
        assert record["outcome_prices"] == [0.62, 0.38]
        assert record["clob_token_ids"] == ["token_1_yes", "token_1_no"]
        assert record["mid_price"] == 0.62
        assert record["protocol"] == "polymarket"

    def test_malformed_token_ids_do_not_fail(self, make_gamma_market):
        market = make_gamma_market(clobTokenIds="[broken", outcomes=None)
        [record] = polymarket.transform_markets([market], [], {}, {}, {}, FETCHED_AT)

        assert record["clob_token_ids"] == []
        assert record["outcomes"] == []

    def test_transform_is_idempotent_except_fetched_at(self, make_gamma_market, make_gamma_event):
        markets = [make_gamma_market(), make_gamma_market()]
        events = [make_gamma_event(markets=[{"id": m["id"]} for m in markets])]

        first = polymarket.transform_markets(markets, events, {}, {}, {}, FETCHED_AT)
        second = polymarket.transform_markets(markets, events, {}, {}, {}, FETCHED_AT + timedelta(hours=1))

        strip = lambda records: [{k: v for k, v in r.items() if k != "fetched_at"} for r in records]
        assert strip(first) == strip(second)

    def test_events_aggregate_their_markets(self, make_gamma_market, make_gamma_event):
        markets = [make_gamma_market(volume="100"), make_gamma_market(volume="250", closed=True)]
        event = make_gamma_event(markets=[{"id": m["id"]} for m in markets])

        enriched = polymarket.transform_markets(markets, [event], {}, {}, {}, FETCHED_AT)
        [record] = polymarket.transform_events([event], enriched, FETCHED_AT)

        assert record["market_count"] == 2
        assert record["total_volume"] == 350.0
        assert record["active_markets"] == 2
        assert record["closed_markets"] == 1

    def test_event_without_enriched_markets_uses_embedded(self, make_gamma_event):
        event = make_gamma_event(markets=[{"id": "x", "volume": "10", "active": True, "closed": False}])
        [record] = polymarket.transform_events([event], [], FETCHED_AT)

        assert record["market_count"] == 1
        assert record["total_volume"] == 10.0

    def test_trades_ids(self, make_data_trades):
        raw = make_data_trades("0xcond", 2)
        raw[1]["transactionHash"] = ""

        trades = polymarket.transform_trades(raw, FETCHED_AT)

        assert trades[0]["id"] == "0xtx_0xcond_0"
        assert trades[1]["id"] == f"0xcond-{raw[1]['timestamp']}-1"
        assert trades[0]["user_address"] == "0xwallet0"
        assert trades[0]["timestamp"] == datetime(2025, 1, 15, 14, 30, 0)

    def test_ws_trade_id_is_deterministic(self):
        message = {
            "event_type": "last_trade_price",
            "asset_id": "token_1_yes",
            "market": "0xcond",
            "price": "0.55",
            "size": "20",
            "side": "buy",
            "timestamp": "1736951400000",
        }
        first = polymarket.transform_ws_trade(message, FETCHED_AT)
        second = polymarket.transform_ws_trade(dict(message), FETCHED_AT)

        assert first["id"] == second["id"]
        assert first["side"] == "BUY"
        assert first["timestamp"] == datetime(2025, 1, 15, 14, 30, 0)

    def test_traders_rank_defaults_to_position(self):
        traders = polymarket.transform_traders([
            {"proxyWallet": "0xA", "vol": 100, "pnl": 5},
            {"proxyWallet": "0xB", "rank": "7"},
            {"userName": "no address"},
        ])
        assert [t["user_address"] for t in traders] == ["0xa", "0xb"]
        assert [t["rank"] for t in traders] == [1, 7]

    def test_positions_drop_zero_size(self):
        positions = polymarket.transform_positions(
            [{"conditionId": "c", "asset": "a", "size": 0}, {"conditionId": "c", "asset": "b", "size": "5"}],
            "0xABC",
        )
        assert len(positions) == 1
        assert positions[0]["user_address"] == "0xabc"

    def test_market_activity_window(self):
        now = datetime(2025, 1, 16, 12, 0, 0)
        trades = [
            {"timestamp": now - timedelta(hours=1), "price": 0.5, "size": 10, "user_address": "0xa"},
            {"timestamp": now - timedelta(hours=2), "price": 0.5, "size": 10, "user_address": "0xa"},
            {"timestamp": now - timedelta(hours=30), "price": 0.5, "size": 10, "user_address": "0xb"},
            {"timestamp": EPOCH, "price": 0.5, "size": 10, "user_address": "0xc"},
        ]
        activity = polymarket.compute_market_activity({"m": trades}, now)["m"]

        assert activity["trades_24h"] == 2
        assert activity["volume_24h"] == pytest.approx(10.0)
        assert activity["unique_traders_24h"] == 1


class TestKalshiTransforms:
    def test_prices_prefer_dollar_fields(self):
        assert kalshi.parse_price({"yes_bid": 40, "yes_bid_dollars": "0.4100"}, "yes_bid") == 0.41
        assert kalshi.parse_price({"yes_bid": 40}, "yes_bid") == 0.40

    def test_markets_and_events(self):
        markets = [
            {"ticker": "KX-A", "event_ticker": "KX", "title": "A?", "status": "active",
             "yes_bid": 40, "yes_ask": 44, "last_price": 42, "volume": 100},
            {"ticker": "KX-B", "event_ticker": "KX", "title": "B?", "status": "settled", "volume": 50},
        ]
        enriched = kalshi.transform_markets(markets, {}, FETCHED_AT)

        assert enriched[0]["id"] == "KX-A"
        assert enriched[0]["mid_price"] == pytest.approx(0.42)
        assert enriched[0]["active"] is True
        assert enriched[1]["closed"] is True

        [event] = kalshi.transform_events([{"event_ticker": "KX", "title": "Event"}], enriched, FETCHED_AT)
        assert event["market_count"] == 2
        assert event["total_volume"] == 150.0
        assert event["closed_markets"] == 1

    def test_rest_and_ws_trades(self):
        rest = kalshi.transform_trade(
            {"trade_id": "t1", "ticker": "KX-A", "yes_price": 42, "count": 3,
             "taker_side": "yes", "created_time": "2025-01-15T14:30:00Z"},
            "KX", FETCHED_AT,
        )
        assert rest["id"] == "t1"
        assert rest["price"] == pytest.approx(0.42)
        assert rest["event_slug"] == "KX"

        ws_body = {"market_ticker": "KX-A", "yes_price": 42, "count": 3, "taker_side": "no", "ts": 1736951400}
        first = kalshi.transform_trade(ws_body, fetched_at=FETCHED_AT)
        second = kalshi.transform_trade(dict(ws_body), fetched_at=FETCHED_AT)

        assert first["id"] == second["id"]
        assert first["market_id"] == "KX-A"
        assert first["outcome"] == "No"
        assert first["timestamp"] == datetime(2025, 1, 15, 14, 30, 0)


class TestDFlowTransforms:
    def test_markets_join_events(self):
        events = [{"id": "EV1", "ticker": "EV1", "title": "Event", "markets": [{"id": "MK1"}]}]
        markets = [{"id": "MK1", "ticker": "MK1", "title": "Market?", "status": "active", "volume": 10, "yesPrice": "0.3"}]

        [market] = dflow.transform_markets(markets, events, {}, FETCHED_AT)
        [event] = dflow.transform_events(events, [market], FETCHED_AT)

        assert market["protocol"] == "dflow"
        assert market["event_id"] == "EV1"
        assert market["outcome_prices"] == [0.3, 0.7]
        assert event["market_count"] == 1
        assert event["total_volume"] == 10.0

    def test_trade_without_id_uses_market_and_time(self):
        [trade] = dflow.transform_trades([{"marketTicker": "MK1", "timestamp": 1736951400, "outcome": "YES"}])
        assert trade["id"] == "MK1-1736951400"
        assert trade["outcome"] == "Yes"
