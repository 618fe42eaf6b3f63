"""
Tests for OrderBook

FIFO matching with a profit gate, close bookkeeping, unrealized PnL and
snapshot normalization.
"""

import json

import pytest

from core.order_book import CLOSED, OPEN, OrderBook, Trade


def _raw(trade_id, direction="buy", price=100.0, base=1.0, ts="2025-01-01T00:00:00+00:00", **extra):
    raw = {
        "id": trade_id,
        "timestamp": ts,
        "price": price,
        "base_amount": base,
        "quote_value": price * base,
        "direction": direction,
    }
    raw.update(extra)
    return raw


@pytest.fixture
def book():
    return OrderBook(min_profit_percent=1.0)


class TestAddTrade:

    def test_buy_from_positive_base_change(self, book):
        trade = book.add_trade(100.0, 2.0, -200.0, "tx-1")

        assert trade.direction == "buy"
        assert trade.base_amount == 2.0
        assert trade.quote_value == 200.0
        assert trade.status == OPEN

    def test_sell_from_negative_base_change(self, book):
        trade = book.add_trade(100.0, -2.0, 200.0, "tx-2")
        assert trade.direction == "sell"
        assert trade.base_amount == 2.0

    def test_duplicate_id_returns_existing(self, book):
        first = book.add_trade(100.0, 1.0, -100.0, "tx-1")
        second = book.add_trade(50.0, 3.0, -150.0, "tx-1")

        assert second is first
        assert len(book.trades) == 1

    @pytest.mark.parametrize("price,base", [(0.0, 1.0), (-1.0, 1.0), (100.0, 0.0), (float("nan"), 1.0)])
    def test_invalid_trade_rejected(self, book, price, base):
        assert book.add_trade(price, base, -100.0, "bad") is None
        assert book.trades == []


class TestMatching:

    def test_oldest_profitable_trade_wins(self, book):
        book.load_state({"trades": [
            _raw("newer", price=90.0, ts="2025-01-02T00:00:00+00:00"),
            _raw("older", price=95.0, ts="2025-01-01T00:00:00+00:00"),
        ]})

        match = book.find_oldest_matching_trade("buy", 100.0)
        assert match.id == "older"

    def test_unprofitable_older_trade_skipped(self, book):
        book.load_state({"trades": [
            _raw("older", price=100.0, ts="2025-01-01T00:00:00+00:00"),
            _raw("newer", price=90.0, ts="2025-01-02T00:00:00+00:00"),
        ]})

        match = book.find_oldest_matching_trade("buy", 100.5)
        assert match.id == "newer"

    def test_sell_trades_profit_when_price_falls(self, book):
        book.load_state({"trades": [_raw("s1", direction="sell", price=100.0)]})

        assert book.find_oldest_matching_trade("sell", 98.0).id == "s1"
        assert book.find_oldest_matching_trade("sell", 100.0) is None

    def test_closed_trades_never_match(self, book):
        book.load_state({"trades": [_raw("c1", price=50.0, status=CLOSED, realized_pnl=10.0)]})
        assert book.find_oldest_matching_trade("buy", 100.0) is None

    def test_two_tenths_percent_threshold(self):
        book = OrderBook(min_profit_percent=0.2)
        book.add_trade(100.0, 1.0, -100.0, "b1")

        assert book.find_oldest_matching_trade("buy", 100.1) is None
        assert book.find_oldest_matching_trade("buy", 100.3).id == "b1"

    def test_threshold_read_from_callable(self):
        threshold = {"value": 50.0}
        book = OrderBook(min_profit_percent=lambda: threshold["value"])
        book.load_state({"trades": [_raw("t1", price=100.0)]})

        assert book.find_oldest_matching_trade("buy", 110.0) is None
        threshold["value"] = 5.0
        assert book.find_oldest_matching_trade("buy", 110.0).id == "t1"

    def test_check_trade_profitability(self, book):
        book.load_state({"trades": [_raw("t1", price=100.0)]})

        assert book.check_trade_profitability("missing", 100.0) == (False, "Trade not found")
        ok, message = book.check_trade_profitability("t1", 100.5)
        assert ok is False
        assert "below minimum threshold" in message
        assert book.check_trade_profitability("t1", 102.0) == (True, "Trade meets closing criteria")


class TestClose:

    def test_close_books_realized_pnl(self, book):
        book.add_trade(100.0, 2.0, -200.0, "b1")
        book.add_trade(100.0, -1.0, 100.0, "s1")

        assert book.close_trade("b1", 110.0) is True
        assert book.close_trade("s1", 90.0) is True

        buy, sell = book.get_trade("b1"), book.get_trade("s1")
        assert buy.status == CLOSED
        assert buy.realized_pnl == pytest.approx(20.0)
        assert sell.realized_pnl == pytest.approx(10.0)
        assert buy.unrealized_pnl == 0.0
        assert buy.close_price == 110.0
        assert buy.closed_at is not None

    def test_close_is_terminal(self, book):
        book.add_trade(100.0, 1.0, -100.0, "b1")
        assert book.close_trade("b1", 110.0) is True
        assert book.close_trade("b1", 120.0) is False
        assert book.get_trade("b1").close_price == 110.0

    def test_close_unknown_or_bad_price(self, book):
        book.add_trade(100.0, 1.0, -100.0, "b1")
        assert book.close_trade("nope", 110.0) is False
        assert book.close_trade("b1", 0.0) is False
        assert book.get_trade("b1").is_open

    def test_failed_close_leaves_state_unchanged(self, book):
        book.add_trade(100.0, 1.0, -100.0, "b1")
        book.add_trade(100.0, -1.0, 100.0, "s1")
        book.close_trade("s1", 90.0)
        before = json.dumps(book.get_state()["trades"], sort_keys=True)

        assert book.close_trade("s1", 80.0) is False
        assert book.close_trade("nope", 110.0) is False
        assert book.close_trade("b1", float("nan")) is False

        assert json.dumps(book.get_state()["trades"], sort_keys=True) == before


class TestUnrealizedPnl:

    def test_buy_reports_losses(self, book):
        book.add_trade(100.0, 2.0, -200.0, "b1")
        book.update_trade_upnl(90.0)
        assert book.get_trade("b1").unrealized_pnl == pytest.approx(-20.0)

    def test_sell_floored_at_zero(self, book):
        book.add_trade(100.0, -2.0, 200.0, "s1")

        book.update_trade_upnl(110.0)
        assert book.get_trade("s1").unrealized_pnl == 0.0

        book.update_trade_upnl(95.0)
        assert book.get_trade("s1").unrealized_pnl == pytest.approx(10.0)

    def test_invalid_price_leaves_values(self, book):
        book.add_trade(100.0, 1.0, -100.0, "b1")
        book.update_trade_upnl(110.0)
        book.update_trade_upnl(-1.0)
        assert book.get_trade("b1").unrealized_pnl == pytest.approx(10.0)


class TestStatistics:

    def test_trade_statistics(self, book):
        book.add_trade(100.0, 1.0, -100.0, "b1")
        book.add_trade(100.0, 1.0, -100.0, "b2")
        book.add_trade(100.0, -1.0, 100.0, "s1")
        book.close_trade("b1", 110.0)
        book.close_trade("s1", 105.0)

        stats = book.get_trade_statistics()

        assert stats["total_trades"] == 3
        assert stats["open_trades"] == 1
        assert stats["closed_trades"] == 2
        assert stats["winning_trades"] == 1
        assert stats["win_rate"] == pytest.approx(50.0)
        assert stats["total_realized_pnl"] == pytest.approx(10.0 - 5.0)
        assert stats["avg_trade_size"] == pytest.approx(100.0)

    def test_empty_book_statistics(self, book):
        stats = book.get_trade_statistics()
        assert stats["win_rate"] == 0.0
        assert stats["avg_trade_size"] == 0.0

    def test_open_position_nets_directions(self, book):
        book.add_trade(100.0, 2.0, -200.0, "b1")
        book.add_trade(100.0, -0.5, 50.0, "s1")
        position = book.get_open_position()
        assert position["base_amount"] == pytest.approx(1.5)
        assert position["value"] == pytest.approx(150.0)


class TestState:

    def test_state_round_trip(self, book):
        book.add_trade(100.0, 1.0, -100.0, "b1")
        book.add_trade(100.0, -1.0, 100.0, "s1")
        book.close_trade("s1", 95.0)

        other = OrderBook()
        assert other.load_state(book.get_state()) == 2
        assert other.get_trade("s1").status == CLOSED
        assert other.get_trade("s1").realized_pnl == pytest.approx(5.0)
        assert other.get_trade("b1").is_open

    def test_load_normalizes_records(self, book):
        loaded = book.load_state({"trades": [
            _raw("dup", price=100.0),
            _raw("dup", price=120.0),
            {"price": 100.0},
            _raw("weird", direction="hold", price="abc", timestamp=None),
            "junk",
        ]})

        assert loaded == 2
        assert book.get_trade("dup").price == 120.0
        weird = book.get_trade("weird")
        assert weird.direction == "buy"
        assert weird.price == 0.0

    def test_closed_record_gets_closed_fields(self):
        trade = Trade.normalize(_raw("c1", status=CLOSED, unrealized_pnl=5.0))
        assert trade.unrealized_pnl == 0.0
        assert trade.realized_pnl == 0.0
        assert trade.closed_at == trade.timestamp

    @pytest.mark.parametrize("state", [None, {}, {"trades": "nope"}, []])
    def test_malformed_state_starts_empty(self, book, state):
        book.add_trade(100.0, 1.0, -100.0, "b1")
        assert book.load_state(state) == 0
        assert book.trades == []

    def test_reset(self, book):
        book.add_trade(100.0, 1.0, -100.0, "b1")
        book.reset()
        assert book.trades == []
