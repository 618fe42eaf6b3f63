"""
Position Ledger

Tracks the wallet's balances for one token pair, the cumulative volumes
bought/sold and everything derived from them (average entry/exit price, net
change, portfolio value).

Ledger totals come solely from the ordered sequence of logged trades.
Balances come solely from fresh on-chain reads via update_balances().
Derived values are cached and the cache is dropped on every mutation.
"""

import logging
import math
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.tokens import TokenPair

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


@dataclass
class LedgerTrade:
    """One executed swap as seen by the ledger."""
    direction: str  # "buy" | "sell"
    base_amount: float
    quote_amount: float
    price: float
    sentiment: str
    timestamp: str = field(default_factory=lambda: _utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> Optional["LedgerTrade"]:
        try:
            return cls(
                direction="buy" if raw.get("direction") == "buy" else "sell",
                base_amount=abs(float(raw.get("base_amount", 0.0))),
                quote_amount=abs(float(raw.get("quote_amount", 0.0))),
                price=float(raw.get("price", 0.0)),
                sentiment=str(raw.get("sentiment") or "NEUTRAL"),
                timestamp=str(raw.get("timestamp") or _utcnow().isoformat()),
            )
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed ledger trade {raw!r}: {e}")
            return None


class PositionLedger:
    """
    Position accountant for a single wallet and token pair.

    Net change is the mark-to-market result of trading only:
    net_base_traded * price + (total_received - total_spent).
    """

    def __init__(self, pair: TokenPair, initial_base: float, initial_quote: float,
                 initial_price: float):
        self.pair = pair

        self.initial_base_balance = self._validated(initial_base, "initial_base", 0.0)
        self.initial_quote_balance = self._validated(initial_quote, "initial_quote", 0.0)
        self.initial_price = self._validated(initial_price, "initial_price", 0.0)
        self.initial_value = self.initial_base_balance * self.initial_price + self.initial_quote_balance

        self.base_balance = self.initial_base_balance
        self.quote_balance = self.initial_quote_balance

        self.trades: List[LedgerTrade] = []
        self.total_bought = 0.0
        self.total_spent = 0.0
        self.total_sold = 0.0
        self.total_received = 0.0
        self.net_base_traded = 0.0
        self.total_volume_base = 0.0
        self.total_volume_quote = 0.0

        self.start_time = _utcnow()
        self.total_cycles = 0

        self._cache: Dict[str, Any] = {}
        self._reset_cache()

        logger.info(
            f"PositionLedger initialized: {self.initial_base_balance} {pair.base.name}, "
            f"{self.initial_quote_balance} {pair.quote.name} @ {self.initial_price} "
            f"(value={self.initial_value:.2f})"
        )

    @staticmethod
    def _validated(value: Any, name: str, default: float) -> float:
        if not _is_finite_number(value):
            logger.error(f"Invalid {name}: {value!r}, using {default}")
            return default
        return float(value)

    def _reset_cache(self) -> None:
        self._cache = {
            "average_entry_price": None,
            "average_sell_price": None,
            "price": None,
            "net_change": None,
            "current_value": None,
            "portfolio_pct": None,
        }

    def _priced_cache(self, current_price: float) -> Dict[str, Any]:
        """Return the per-price cache, clearing it if the price moved."""
        if self._cache["price"] != current_price:
            self._cache["price"] = current_price
            self._cache["net_change"] = None
            self._cache["current_value"] = None
            self._cache["portfolio_pct"] = None
        return self._cache

    def _price_or_initial(self, current_price: Any) -> float:
        return self._validated(current_price, "current_price", self.initial_price)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_balances(self, base: Any, quote: Any) -> bool:
        """
        Replace current balances with freshly queried values.

        Non-finite inputs keep the prior value; returns False if either input
        was rejected.
        """
        ok = True
        if _is_finite_number(base):
            self.base_balance = float(base)
        else:
            logger.error(f"Rejected {self.pair.base.name} balance {base!r}; keeping {self.base_balance}")
            ok = False
        if _is_finite_number(quote):
            self.quote_balance = float(quote)
        else:
            logger.error(f"Rejected {self.pair.quote.name} balance {quote!r}; keeping {self.quote_balance}")
            ok = False

        self._reset_cache()
        logger.debug(
            f"Balances updated: {self.base_balance} {self.pair.base.name}, "
            f"{self.quote_balance} {self.pair.quote.name}"
        )
        return ok

    def log_trade(self, sentiment: Optional[str], price: Any, base_change: Any,
                  quote_change: Any) -> Optional[LedgerTrade]:
        """
        Record an executed swap.

        Returns the created LedgerTrade, or None when the inputs are invalid
        (price must be > 0, base_change non-zero, quote_change finite).
        """
        if not _is_finite_number(price) or price <= 0:
            logger.error(f"log_trade rejected: invalid price {price!r}")
            return None
        if not _is_finite_number(base_change) or base_change == 0:
            logger.error(f"log_trade rejected: invalid {self.pair.base.name} change {base_change!r}")
            return None
        if not _is_finite_number(quote_change):
            logger.error(f"log_trade rejected: invalid {self.pair.quote.name} change {quote_change!r}")
            return None

        direction = "buy" if base_change > 0 else "sell"
        base_amount = abs(float(base_change))
        quote_amount = abs(float(quote_change))

        trade = LedgerTrade(
            direction=direction,
            base_amount=base_amount,
            quote_amount=quote_amount,
            price=float(price),
            sentiment=sentiment or "NEUTRAL",
        )
        self.trades.append(trade)

        if direction == "buy":
            self.total_bought += base_amount
            self.total_spent += quote_amount
            self.net_base_traded += base_amount
        else:
            self.total_sold += base_amount
            self.total_received += quote_amount
            self.net_base_traded -= base_amount

        self.total_volume_base += base_amount
        self.total_volume_quote += quote_amount
        self._reset_cache()

        logger.info(
            f"Ledger {direction}: {base_amount:.6f} {self.pair.base.name} for "
            f"{quote_amount:.6f} {self.pair.quote.name} @ {price:.4f} ({trade.sentiment})"
        )
        return trade

    def increment_cycle(self) -> int:
        self.total_cycles += 1
        return self.total_cycles

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    def get_average_entry_price(self) -> float:
        if self._cache["average_entry_price"] is None:
            self._cache["average_entry_price"] = (
                self.total_spent / self.total_bought if self.total_bought > 0 else 0.0
            )
        return self._cache["average_entry_price"]

    def get_average_sell_price(self) -> float:
        if self._cache["average_sell_price"] is None:
            self._cache["average_sell_price"] = (
                self.total_received / self.total_sold if self.total_sold > 0 else 0.0
            )
        return self._cache["average_sell_price"]

    def get_net_change(self, current_price: Any) -> float:
        price = self._price_or_initial(current_price)
        cache = self._priced_cache(price)
        if cache["net_change"] is None:
            net_change = self.net_base_traded * price + (self.total_received - self.total_spent)
            cache["net_change"] = net_change if math.isfinite(net_change) else 0.0
        return cache["net_change"]

    def get_current_value(self, current_price: Any) -> float:
        price = self._price_or_initial(current_price)
        cache = self._priced_cache(price)
        if cache["current_value"] is None:
            cache["current_value"] = self.base_balance * price + self.quote_balance
        return cache["current_value"]

    def get_portfolio_percentage_change(self, current_price: Any) -> float:
        price = self._price_or_initial(current_price)
        cache = self._priced_cache(price)
        if cache["portfolio_pct"] is None:
            if self.initial_value == 0:
                cache["portfolio_pct"] = 0.0
            else:
                current = self.get_current_value(price)
                cache["portfolio_pct"] = (current - self.initial_value) / self.initial_value * 100
        return cache["portfolio_pct"]

    def get_base_price_percentage_change(self, current_price: Any) -> float:
        price = self._price_or_initial(current_price)
        if self.initial_price == 0:
            return 0.0
        return (price - self.initial_price) / self.initial_price * 100

    def get_traded_base_performance(self, current_price: Any) -> float:
        """Mark-to-market of the net traded base versus the quote paid for it."""
        price = self._price_or_initial(current_price)
        cost_basis = self.total_spent - self.total_received
        return self.net_base_traded * price - cost_basis

    def get_traded_base_percentage_change(self, current_price: Any) -> float:
        price = self._price_or_initial(current_price)
        cost_basis = self.total_spent - self.total_received
        if cost_basis == 0:
            return 0.0
        return (self.net_base_traded * price - cost_basis) / abs(cost_basis) * 100

    def get_trade_history(self, limit: Optional[int] = None) -> List[LedgerTrade]:
        """Trades newest first."""
        history = list(reversed(self.trades))
        return history[:limit] if limit else history

    def runtime_hours(self) -> float:
        return (_utcnow() - self.start_time).total_seconds() / 3600.0

    def get_enhanced_statistics(self, current_price: Any) -> Dict[str, Any]:
        """
        Aggregate report for one cycle.

        Any internal failure degrades to a minimal report (runtime, cycles,
        error) instead of failing the cycle.
        """
        try:
            price = self._price_or_initial(current_price)
            current_value = self.get_current_value(price)
            buys = sum(1 for t in self.trades if t.direction == "buy")
            return {
                "total_runtime_hours": round(self.runtime_hours(), 2),
                "total_cycles": self.total_cycles,
                "portfolio_value": {
                    "initial": self.initial_value,
                    "current": current_value,
                    "change": current_value - self.initial_value,
                    "percentage_change": self.get_portfolio_percentage_change(price),
                },
                "token_price": {
                    "initial": self.initial_price,
                    "current": price,
                    "percentage_change": self.get_base_price_percentage_change(price),
                },
                "net_change": self.get_net_change(price),
                "total_volume": {
                    "base": self.total_volume_base,
                    "quote": self.total_volume_quote,
                    "quote_equivalent": self.total_volume_quote + self.total_volume_base * price,
                },
                "balances": {
                    "base": {"initial": self.initial_base_balance, "current": self.base_balance},
                    "quote": {"initial": self.initial_quote_balance, "current": self.quote_balance},
                },
                "average_prices": {
                    "entry": self.get_average_entry_price(),
                    "sell": self.get_average_sell_price(),
                },
                "trades": {
                    "total": len(self.trades),
                    "buys": buys,
                    "sells": len(self.trades) - buys,
                },
            }
        except Exception as e:
            logger.error(f"Enhanced statistics failed, returning minimal report: {e}", exc_info=True)
            try:
                runtime = round(self.runtime_hours(), 2)
            except Exception:
                runtime = 0.0
            return {
                "total_runtime_hours": runtime,
                "total_cycles": self.total_cycles,
                "error": str(e),
            }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "base_balance": self.base_balance,
            "quote_balance": self.quote_balance,
            "initial_base_balance": self.initial_base_balance,
            "initial_quote_balance": self.initial_quote_balance,
            "initial_price": self.initial_price,
            "initial_value": self.initial_value,
            "total_bought": self.total_bought,
            "total_spent": self.total_spent,
            "total_sold": self.total_sold,
            "total_received": self.total_received,
            "net_base_traded": self.net_base_traded,
            "total_volume_base": self.total_volume_base,
            "total_volume_quote": self.total_volume_quote,
            "start_time": self.start_time.isoformat(),
            "total_cycles": self.total_cycles,
            "trades": [t.to_dict() for t in self.trades],
        }

    @classmethod
    def from_snapshot(cls, pair: TokenPair, snapshot: Dict[str, Any]) -> "PositionLedger":
        """Rebuild a ledger from a persisted snapshot, defaulting bad fields."""
        ledger = cls(
            pair,
            snapshot.get("initial_base_balance", 0.0),
            snapshot.get("initial_quote_balance", 0.0),
            snapshot.get("initial_price", 0.0),
        )

        def number(key: str, default: float = 0.0) -> float:
            value = snapshot.get(key, default)
            return float(value) if _is_finite_number(value) else default

        ledger.base_balance = number("base_balance", ledger.initial_base_balance)
        ledger.quote_balance = number("quote_balance", ledger.initial_quote_balance)
        ledger.initial_value = number("initial_value", ledger.initial_value)
        ledger.total_bought = number("total_bought")
        ledger.total_spent = number("total_spent")
        ledger.total_sold = number("total_sold")
        ledger.total_received = number("total_received")
        ledger.net_base_traded = number("net_base_traded")
        ledger.total_volume_base = number("total_volume_base")
        ledger.total_volume_quote = number("total_volume_quote")
        ledger.total_cycles = int(number("total_cycles"))

        start_time = snapshot.get("start_time")
        if start_time:
            try:
                parsed = datetime.fromisoformat(str(start_time))
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                ledger.start_time = parsed
            except ValueError:
                logger.warning(f"Invalid ledger start_time {start_time!r}; using now")

        trades = snapshot.get("trades") or []
        ledger.trades = [t for t in (LedgerTrade.from_dict(raw) for raw in trades if isinstance(raw, dict)) if t]
        ledger._reset_cache()
        return ledger
