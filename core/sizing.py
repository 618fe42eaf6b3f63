"""
Trade sizing.

VARIABLE: input-token balance x sentiment multiplier, recomputed every cycle.
STRATEGIC: a fixed notional per 24h trading period (strategic % of the
balances when the period opened), so repeated signals trade a consistent
size instead of re-percentaging a shrinking or growing balance.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from core.sentiment import Sentiment

logger = logging.getLogger(__name__)

PERIOD_LENGTH = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TradingPeriod:
    start_time: Optional[datetime] = None
    base_size: Optional[float] = None
    quote_size: Optional[float] = None

    def needs_new_period(self, now: datetime) -> bool:
        return self.start_time is None or now - self.start_time >= PERIOD_LENGTH

    def start(self, base_balance: float, quote_balance: float, strategic_percentage: float,
              now: datetime) -> None:
        self.start_time = now
        self.base_size = base_balance * strategic_percentage / 100
        self.quote_size = quote_balance * strategic_percentage / 100
        logger.info(
            f"New trading period from {now.isoformat()}: "
            f"base size={self.base_size:.6f}, quote size={self.quote_size:.6f}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "base_size": self.base_size,
            "quote_size": self.quote_size,
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "TradingPeriod":
        raw = raw or {}
        start_time = None
        if raw.get("start_time"):
            try:
                start_time = datetime.fromisoformat(raw["start_time"])
            except (TypeError, ValueError):
                logger.warning(f"Invalid trading period start {raw.get('start_time')!r}; resetting")
        if start_time is None:
            return cls()
        return cls(start_time=start_time, base_size=raw.get("base_size"), quote_size=raw.get("quote_size"))


class TradeSizer:
    """Computes the input amount (UI units) for an opening leg."""

    def __init__(self, period: Optional[TradingPeriod] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.period = period or TradingPeriod()
        self._clock = clock

    def reset(self) -> None:
        self.period = TradingPeriod()

    def size(self, direction: str, sentiment: Sentiment, base_balance: float,
             quote_balance: float, settings: Any) -> float:
        """
        Input-token amount: quote spent for a buy, base sold for a sell.

        Returns 0.0 when no size can be derived (caller skips the leg).
        """
        buying = direction == "buy"
        balance = quote_balance if buying else base_balance
        if balance <= 0:
            logger.error(f"Cannot size {direction}: balance is {balance}")
            return 0.0

        if settings.trade_size_method == "VARIABLE":
            multiplier = settings.sentiment_multipliers.get(sentiment.value)
            if not multiplier:
                logger.error(f"No sentiment multiplier for {sentiment.value}")
                return 0.0
            return balance * multiplier

        now = self._clock()
        if self.period.needs_new_period(now):
            self.period.start(base_balance, quote_balance, settings.strategic_percentage, now)
        amount = self.period.quote_size if buying else self.period.base_size
        return float(amount or 0.0)


def minimum_balance_ok(balance: float, amount: float, is_base: bool, price: float,
                       min_usd_value: float) -> bool:
    """True if spending `amount` leaves at least min_usd_value (quote units) behind."""
    balance_value = balance * price if is_base else balance
    amount_value = amount * price if is_base else amount
    remaining = balance_value - amount_value
    if remaining < min_usd_value:
        logger.info(
            f"Trade blocked: would leave {remaining:.2f} in {'base' if is_base else 'quote'} "
            f"(minimum {min_usd_value})"
        )
        return False
    return True
