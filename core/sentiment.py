"""
Sentiment bucketing and the signal-change guard.

The external index is a 0-100 value; four ascending boundaries split it into
five buckets.
"""

import logging
from enum import Enum
from typing import Mapping, Optional

logger = logging.getLogger(__name__)


class Sentiment(str, Enum):
    EXTREME_FEAR = "EXTREME_FEAR"
    FEAR = "FEAR"
    NEUTRAL = "NEUTRAL"
    GREED = "GREED"
    EXTREME_GREED = "EXTREME_GREED"

    def __str__(self) -> str:
        return self.value

    @property
    def is_buy(self) -> bool:
        return self in (Sentiment.EXTREME_FEAR, Sentiment.FEAR)

    @property
    def is_sell(self) -> bool:
        return self in (Sentiment.GREED, Sentiment.EXTREME_GREED)

    @property
    def direction(self) -> Optional[str]:
        if self.is_buy:
            return "buy"
        if self.is_sell:
            return "sell"
        return None


BOUNDARY_KEYS = ("EXTREME_FEAR", "FEAR", "GREED", "EXTREME_GREED")

DEFAULT_BOUNDARIES = {
    "EXTREME_FEAR": 15,
    "FEAR": 35,
    "GREED": 65,
    "EXTREME_GREED": 85,
}


def boundaries_ascending(boundaries: Mapping[str, float]) -> bool:
    try:
        values = [float(boundaries[key]) for key in BOUNDARY_KEYS]
    except (KeyError, TypeError, ValueError):
        return False
    return all(a < b for a, b in zip(values, values[1:]))


def classify_sentiment(index: float, boundaries: Mapping[str, float]) -> Sentiment:
    """
    Map an index value to a bucket.

    Each boundary is an exclusive upper bound for its bucket: below
    EXTREME_FEAR is extreme fear, below FEAR is fear, below GREED is neutral,
    below EXTREME_GREED is greed, and the rest up to 100 is extreme greed.
    Non-ascending boundaries make every reading NEUTRAL.
    """
    if not boundaries_ascending(boundaries):
        logger.error(f"Sentiment boundaries are not ascending: {dict(boundaries)}; treating as NEUTRAL")
        return Sentiment.NEUTRAL

    value = float(index)
    if value < boundaries["EXTREME_FEAR"]:
        return Sentiment.EXTREME_FEAR
    if value < boundaries["FEAR"]:
        return Sentiment.FEAR
    if value < boundaries["GREED"]:
        return Sentiment.NEUTRAL
    if value < boundaries["EXTREME_GREED"]:
        return Sentiment.GREED
    if value <= 100:
        return Sentiment.EXTREME_GREED
    logger.warning(f"Sentiment index {value} out of range; treating as NEUTRAL")
    return Sentiment.NEUTRAL


class SignalChangeGuard:
    """
    Hysteresis between trades.

    After a trade in some bucket, another trade in the same bucket requires
    the index to move at least `min_change` points from the last traded
    reading.
    """

    def __init__(self):
        self.last_sentiment: Optional[Sentiment] = None
        self.last_index: Optional[float] = None

    def is_significant(self, sentiment: Sentiment, index: float, min_change: float) -> bool:
        if min_change <= 0 or self.last_sentiment is None or self.last_index is None:
            return True
        if sentiment != self.last_sentiment:
            return True
        return abs(index - self.last_index) >= min_change

    def record_trade(self, sentiment: Sentiment, index: float) -> None:
        self.last_sentiment = sentiment
        self.last_index = float(index)

    def to_dict(self) -> dict:
        return {
            "last_sentiment": self.last_sentiment.value if self.last_sentiment else None,
            "last_index": self.last_index,
        }

    def load(self, raw: Optional[dict]) -> None:
        raw = raw or {}
        try:
            self.last_sentiment = Sentiment(raw["last_sentiment"]) if raw.get("last_sentiment") else None
        except ValueError:
            self.last_sentiment = None
        last_index = raw.get("last_index")
        self.last_index = float(last_index) if isinstance(last_index, (int, float)) else None
