"""
Threshold allocation strategy.

Two-way mode: while the index stays at/above a threshold for `switch_delay`
consecutive cycles the portfolio moves to a high base allocation; while it
stays below, to a high quote allocation. Trades only fire when the current
allocation deviates from target by at least `min_trade_amount` base units.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Allocation:
    base_tokens: float
    base_value: float
    base_percentage: float
    quote_tokens: float
    quote_percentage: float
    total_value: float


@dataclass
class RebalanceTrade:
    direction: str  # "buy" | "sell"
    base_change: float
    quote_change: float
    input_amount: float  # in the spent token's UI units
    high_base: bool


@dataclass
class ThresholdDecision:
    is_above: bool
    cycles_above: int
    cycles_below: int
    should_switch_to_high_base: bool
    should_switch_to_high_quote: bool

    @property
    def needs_rebalance(self) -> bool:
        return self.should_switch_to_high_base or self.should_switch_to_high_quote


@dataclass
class ThresholdState:
    cycles_above: int = 0
    cycles_below: int = 0
    in_high_allocation: Optional[bool] = None
    last_index: Optional[float] = None
    recent_readings: List[Dict[str, Any]] = field(default_factory=list)
    last_allocation_change: Optional[Dict[str, Any]] = None


class ThresholdStrategy:
    """Stateful threshold tracker; one instance per engine lifetime."""

    def __init__(self, state: Optional[ThresholdState] = None):
        self.state = state or ThresholdState()

    def reset(self) -> None:
        self.state = ThresholdState()
        logger.info("Threshold state reset")

    def update(self, index: float, threshold: float, switch_delay: int) -> ThresholdDecision:
        state = self.state
        state.last_index = index
        state.recent_readings.append({"index": index, "at": datetime.now(timezone.utc).isoformat()})
        keep = max(switch_delay * 2, 10)
        if len(state.recent_readings) > keep:
            state.recent_readings = state.recent_readings[-keep:]

        is_above = index >= threshold
        if is_above:
            state.cycles_above += 1
            state.cycles_below = 0
        else:
            state.cycles_below += 1
            state.cycles_above = 0

        return ThresholdDecision(
            is_above=is_above,
            cycles_above=state.cycles_above,
            cycles_below=state.cycles_below,
            should_switch_to_high_base=(
                is_above and state.cycles_above >= switch_delay and state.in_high_allocation is not True
            ),
            should_switch_to_high_quote=(
                not is_above and state.cycles_below >= switch_delay and state.in_high_allocation is not False
            ),
        )

    @staticmethod
    def current_allocation(base_balance: float, quote_balance: float, price: float) -> Allocation:
        base_value = base_balance * price
        total = base_value + quote_balance
        return Allocation(
            base_tokens=base_balance,
            base_value=base_value,
            base_percentage=(base_value / total * 100) if total > 0 else 0.0,
            quote_tokens=quote_balance,
            quote_percentage=(quote_balance / total * 100) if total > 0 else 0.0,
            total_value=total,
        )

    @staticmethod
    def target_allocation(high_base: bool, portfolio_value: float, price: float,
                          allocation_percentage: float) -> Allocation:
        if portfolio_value <= 0:
            raise ValueError(f"Invalid portfolio value: {portfolio_value}")
        if price <= 0:
            raise ValueError(f"Invalid price: {price}")
        if not 0 < allocation_percentage <= 100:
            raise ValueError(f"Invalid allocation percentage: {allocation_percentage}")

        base_pct = allocation_percentage if high_base else 100 - allocation_percentage
        base_value = portfolio_value * base_pct / 100
        quote_value = portfolio_value - base_value
        return Allocation(
            base_tokens=base_value / price,
            base_value=base_value,
            base_percentage=base_pct,
            quote_tokens=quote_value,
            quote_percentage=100 - base_pct,
            total_value=portfolio_value,
        )

    @staticmethod
    def rebalance_trade(current: Allocation, target: Allocation, min_trade_amount: float,
                        high_base: bool) -> Optional[RebalanceTrade]:
        base_diff = target.base_tokens - current.base_tokens
        quote_diff = target.quote_tokens - current.quote_tokens
        if abs(base_diff) < min_trade_amount:
            logger.info(
                f"Rebalance of {abs(base_diff):.8f} base below minimum {min_trade_amount}; skipping"
            )
            return None
        buying = base_diff > 0
        return RebalanceTrade(
            direction="buy" if buying else "sell",
            base_change=base_diff,
            quote_change=quote_diff,
            input_amount=abs(quote_diff) if buying else abs(base_diff),
            high_base=high_base,
        )

    def record_allocation(self, high_base: bool) -> None:
        """Mark a completed switch and reset the opposing counter."""
        self.state.in_high_allocation = high_base
        if high_base:
            self.state.cycles_below = 0
        else:
            self.state.cycles_above = 0
        self.state.last_allocation_change = {
            "at": datetime.now(timezone.utc).isoformat(),
            "high_base": high_base,
        }
        logger.info(f"Allocation state updated: high_base={high_base}")

    def to_dict(self) -> Dict[str, Any]:
        s = self.state
        return {
            "cycles_above": s.cycles_above,
            "cycles_below": s.cycles_below,
            "in_high_allocation": s.in_high_allocation,
            "last_index": s.last_index,
            "recent_readings": list(s.recent_readings),
            "last_allocation_change": s.last_allocation_change,
        }

    def load(self, raw: Optional[Dict[str, Any]]) -> None:
        raw = raw or {}
        high = raw.get("in_high_allocation")
        self.state = ThresholdState(
            cycles_above=int(raw.get("cycles_above") or 0),
            cycles_below=int(raw.get("cycles_below") or 0),
            in_high_allocation=high if isinstance(high, bool) else None,
            last_index=raw.get("last_index"),
            recent_readings=list(raw.get("recent_readings") or []),
            last_allocation_change=raw.get("last_allocation_change"),
        )
