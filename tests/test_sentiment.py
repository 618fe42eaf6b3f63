"""
Tests for sentiment bucketing and the signal-change guard.
"""

import pytest

from core.sentiment import DEFAULT_BOUNDARIES, Sentiment, SignalChangeGuard, classify_sentiment


class TestClassifySentiment:

    @pytest.mark.parametrize("index,expected", [
        (0, Sentiment.EXTREME_FEAR),
        (14.9, Sentiment.EXTREME_FEAR),
        (15, Sentiment.FEAR),
        (34, Sentiment.FEAR),
        (35, Sentiment.NEUTRAL),
        (64, Sentiment.NEUTRAL),
        (65, Sentiment.GREED),
        (84, Sentiment.GREED),
        (85, Sentiment.EXTREME_GREED),
        (100, Sentiment.EXTREME_GREED),
    ])
    def test_default_buckets(self, index, expected):
        assert classify_sentiment(index, DEFAULT_BOUNDARIES) == expected

    def test_out_of_range_is_neutral(self):
        assert classify_sentiment(101, DEFAULT_BOUNDARIES) == Sentiment.NEUTRAL

    @pytest.mark.parametrize("boundaries", [
        {"EXTREME_FEAR": 40, "FEAR": 35, "GREED": 65, "EXTREME_GREED": 85},
        {"EXTREME_FEAR": 15, "FEAR": 35, "GREED": 35, "EXTREME_GREED": 85},
        {"EXTREME_FEAR": 15, "FEAR": 35},
    ])
    def test_bad_boundaries_are_neutral(self, boundaries):
        assert classify_sentiment(5, boundaries) == Sentiment.NEUTRAL
        assert classify_sentiment(95, boundaries) == Sentiment.NEUTRAL

    def test_direction(self):
        assert Sentiment.FEAR.direction == "buy"
        assert Sentiment.EXTREME_GREED.direction == "sell"
        assert Sentiment.NEUTRAL.direction is None


class TestSignalChangeGuard:

    def test_first_trade_always_significant(self):
        guard = SignalChangeGuard()
        assert guard.is_significant(Sentiment.FEAR, 30, min_change=5)

    def test_same_bucket_requires_movement(self):
        guard = SignalChangeGuard()
        guard.record_trade(Sentiment.FEAR, 30)

        assert not guard.is_significant(Sentiment.FEAR, 27, min_change=5)
        assert guard.is_significant(Sentiment.FEAR, 25, min_change=5)

    def test_bucket_change_is_significant(self):
        guard = SignalChangeGuard()
        guard.record_trade(Sentiment.FEAR, 16)
        assert guard.is_significant(Sentiment.EXTREME_FEAR, 14, min_change=5)

    def test_zero_min_change_disables_guard(self):
        guard = SignalChangeGuard()
        guard.record_trade(Sentiment.FEAR, 30)
        assert guard.is_significant(Sentiment.FEAR, 30, min_change=0)

    def test_state_round_trip(self):
        guard = SignalChangeGuard()
        guard.record_trade(Sentiment.GREED, 70)

        restored = SignalChangeGuard()
        restored.load(guard.to_dict())
        assert restored.last_sentiment == Sentiment.GREED
        assert restored.last_index == 70.0

    def test_load_ignores_garbage(self):
        guard = SignalChangeGuard()
        guard.load({"last_sentiment": "PANIC", "last_index": "high"})
        assert guard.last_sentiment is None
        assert guard.last_index is None
