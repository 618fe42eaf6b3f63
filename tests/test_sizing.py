"""
Tests for trade sizing and the minimum balance guard.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.sentiment import Sentiment
from core.sizing import TradeSizer, TradingPeriod, minimum_balance_ok
from tests.helpers import make_settings

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class TestVariableSizing:

    def test_balance_times_multiplier(self):
        settings = make_settings(trade_size_method="VARIABLE")
        sizer = TradeSizer()

        assert sizer.size("buy", Sentiment.EXTREME_FEAR, 10.0, 1000.0, settings) == pytest.approx(40.0)
        assert sizer.size("sell", Sentiment.GREED, 10.0, 1000.0, settings) == pytest.approx(0.2)

    def test_missing_multiplier_gives_zero(self):
        settings = make_settings(trade_size_method="VARIABLE", sentiment_multipliers={"FEAR": 0.1})
        assert TradeSizer().size("buy", Sentiment.EXTREME_FEAR, 10.0, 1000.0, settings) == 0.0

    def test_empty_balance_gives_zero(self):
        settings = make_settings(trade_size_method="VARIABLE")
        assert TradeSizer().size("sell", Sentiment.GREED, 0.0, 1000.0, settings) == 0.0


class TestStrategicSizing:

    def test_period_sizes_fixed_within_period(self):
        clock = Clock(T0)
        sizer = TradeSizer(clock=clock)
        settings = make_settings(trade_size_method="STRATEGIC", strategic_percentage=10)

        assert sizer.size("buy", Sentiment.FEAR, 10.0, 1000.0, settings) == pytest.approx(100.0)

        # Balance shrank but the period size holds
        clock.now = T0 + timedelta(hours=5)
        assert sizer.size("buy", Sentiment.FEAR, 10.0, 500.0, settings) == pytest.approx(100.0)
        assert sizer.size("sell", Sentiment.GREED, 10.0, 500.0, settings) == pytest.approx(1.0)

    def test_new_period_after_24h(self):
        clock = Clock(T0)
        sizer = TradeSizer(clock=clock)
        settings = make_settings(trade_size_method="STRATEGIC", strategic_percentage=10)

        sizer.size("buy", Sentiment.FEAR, 10.0, 1000.0, settings)
        clock.now = T0 + timedelta(hours=24)
        assert sizer.size("buy", Sentiment.FEAR, 10.0, 500.0, settings) == pytest.approx(50.0)
        assert sizer.period.start_time == clock.now

    def test_unknown_method_falls_back_to_strategic(self):
        settings = make_settings(trade_size_method="MARTINGALE")
        assert settings.trade_size_method == "STRATEGIC"

    def test_period_round_trip(self):
        period = TradingPeriod()
        period.start(10.0, 1000.0, 2.5, T0)

        restored = TradingPeriod.from_dict(period.to_dict())
        assert restored.start_time == T0
        assert restored.quote_size == pytest.approx(25.0)
        assert not restored.needs_new_period(T0 + timedelta(hours=1))

    def test_invalid_period_start_resets(self):
        restored = TradingPeriod.from_dict({"start_time": "not-a-date", "base_size": 1.0})
        assert restored.start_time is None
        assert restored.needs_new_period(T0)


class TestMinimumBalance:

    def test_quote_guard(self):
        assert minimum_balance_ok(100.0, 90.0, is_base=False, price=50.0, min_usd_value=5.0)
        assert not minimum_balance_ok(100.0, 96.0, is_base=False, price=50.0, min_usd_value=5.0)

    def test_base_guard_uses_price(self):
        # 1.0 base @ 50 leaves 0.2 * 50 = 10
        assert minimum_balance_ok(1.0, 0.8, is_base=True, price=50.0, min_usd_value=5.0)
        assert not minimum_balance_ok(1.0, 0.95, is_base=True, price=50.0, min_usd_value=5.0)
