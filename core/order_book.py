"""
Order Book

Durable collection of discrete trades for one wallet. Not an exchange
matching engine: the only matching rule is age priority (FIFO) gated by a
minimum profit percentage.

Trade lifecycle: open -> closed. Closed is terminal; a closed trade only
changes again when persisted state is reloaded.
"""

import logging
import math
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

OPEN = "open"
CLOSED = "closed"
DIRECTIONS = ("buy", "sell")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _finite(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _parse_ts(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Trade:
    """Order book entry."""
    id: str
    timestamp: str
    price: float
    base_amount: float
    quote_value: float
    direction: str  # "buy" | "sell"
    status: str = OPEN
    unrealized_pnl: float = 0.0
    closed_at: Optional[str] = None
    close_price: Optional[float] = None
    realized_pnl: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.status == OPEN

    def profit_percent(self, current_price: float) -> float:
        """Signed profit % at current_price (mirror for sells)."""
        if self.price <= 0:
            return 0.0
        if self.direction == "buy":
            return (current_price - self.price) / self.price * 100
        return (self.price - current_price) / self.price * 100

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def normalize(cls, raw: Any) -> Optional["Trade"]:
        """
        Build a Trade from persisted data, defaulting malformed fields.

        Records without an id cannot be matched or deduplicated and are dropped.
        """
        if not isinstance(raw, dict):
            return None
        trade_id = raw.get("id")
        if trade_id in (None, ""):
            logger.warning(f"Dropping persisted trade without id: {raw!r}")
            return None

        direction = raw.get("direction")
        if direction not in DIRECTIONS:
            logger.warning(f"Trade {trade_id}: invalid direction {direction!r}, defaulting to buy")
            direction = "buy"

        status = CLOSED if raw.get("status") == CLOSED else OPEN
        timestamp = raw.get("timestamp")
        if not isinstance(timestamp, str) or _parse_ts(timestamp) is _EPOCH:
            timestamp = _utcnow_iso()

        trade = cls(
            id=str(trade_id),
            timestamp=timestamp,
            price=_finite(raw.get("price")),
            base_amount=abs(_finite(raw.get("base_amount"))),
            quote_value=abs(_finite(raw.get("quote_value"))),
            direction=direction,
            status=status,
            unrealized_pnl=_finite(raw.get("unrealized_pnl")),
        )
        if status == CLOSED:
            trade.unrealized_pnl = 0.0
            trade.realized_pnl = _finite(raw.get("realized_pnl"))
            close_price = raw.get("close_price")
            trade.close_price = _finite(close_price) if close_price is not None else None
            closed_at = raw.get("closed_at")
            trade.closed_at = str(closed_at) if closed_at else timestamp
        return trade


class OrderBook:
    """
    FIFO order book with a profitability gate.

    min_profit_percent may be a number or a zero-arg callable (typically
    reading the live settings) so threshold changes apply without a restart.
    """

    def __init__(self, min_profit_percent: Union[float, Callable[[], float]] = 0.2):
        self._min_profit = min_profit_percent
        self.trades: List[Trade] = []

    @property
    def min_profit_percent(self) -> float:
        value = self._min_profit() if callable(self._min_profit) else self._min_profit
        return float(value)

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        for trade in self.trades:
            if trade.id == trade_id:
                return trade
        return None

    def add_trade(self, price: float, base_change: float, quote_change: float,
                  trade_id: str) -> Optional[Trade]:
        """Store a new open trade; a duplicate id returns the existing record."""
        existing = self.get_trade(trade_id)
        if existing is not None:
            logger.debug(f"Trade {trade_id} already recorded; ignoring duplicate")
            return existing

        price_value = _finite(price, default=-1.0)
        base_value = _finite(base_change)
        if price_value <= 0 or base_value == 0:
            logger.error(
                f"add_trade rejected for {trade_id}: price={price!r}, base_change={base_change!r}"
            )
            return None

        trade = Trade(
            id=str(trade_id),
            timestamp=_utcnow_iso(),
            price=price_value,
            base_amount=abs(base_value),
            quote_value=abs(_finite(quote_change)),
            direction="buy" if base_value > 0 else "sell",
        )
        self.trades.append(trade)
        logger.info(
            f"Order book: opened {trade.direction} {trade.id} "
            f"{trade.base_amount:.6f} @ {trade.price:.4f}"
        )
        return trade

    def get_open_trades(self) -> List[Trade]:
        return [t for t in self.trades if t.is_open]

    def get_open_position(self) -> Dict[str, float]:
        """Net base amount and quote value of open trades (sells negative)."""
        base = 0.0
        value = 0.0
        for trade in self.get_open_trades():
            sign = 1 if trade.direction == "buy" else -1
            base += sign * trade.base_amount
            value += sign * trade.quote_value
        return {"base_amount": base, "value": value}

    def find_oldest_matching_trade(self, direction: str, current_price: float) -> Optional[Trade]:
        """
        Oldest open trade of `direction` whose profit % >= min_profit_percent.

        Age priority, not best price: a newer trade is only considered when
        every older one fails the profit gate.
        """
        candidates = sorted(
            (t for t in self.trades if t.is_open and t.direction == direction),
            key=lambda t: _parse_ts(t.timestamp),
        )
        if not candidates:
            logger.debug(f"No open {direction} trades to match")
            return None

        threshold = self.min_profit_percent
        for trade in candidates:
            profit = trade.profit_percent(current_price)
            if profit >= threshold:
                logger.info(
                    f"Matched {direction} trade {trade.id}: {profit:.2f}% >= {threshold}%"
                )
                return trade
            logger.debug(f"Trade {trade.id} below threshold: {profit:.2f}% < {threshold}%")
        return None

    def check_trade_profitability(self, trade_id: str, current_price: float) -> Tuple[bool, str]:
        trade = self.get_trade(trade_id)
        if trade is None:
            return False, "Trade not found"
        profit = trade.profit_percent(current_price)
        if profit < self.min_profit_percent:
            return False, (
                f"Profit ({profit:.2f}%) below minimum threshold ({self.min_profit_percent}%)"
            )
        return True, "Trade meets closing criteria"

    def close_trade(self, trade_id: str, close_price: float) -> bool:
        """Transition an open trade to closed and book its realized PnL."""
        trade = self.get_trade(trade_id)
        if trade is None:
            logger.error(f"close_trade: trade {trade_id} not found")
            return False
        if not trade.is_open:
            logger.error(f"close_trade: trade {trade_id} already closed")
            return False
        price = _finite(close_price, default=-1.0)
        if price <= 0:
            logger.error(f"close_trade: invalid close price {close_price!r} for {trade_id}")
            return False

        if trade.direction == "buy":
            realized = (price - trade.price) * trade.base_amount
        else:
            realized = (trade.price - price) * trade.base_amount

        trade.status = CLOSED
        trade.closed_at = _utcnow_iso()
        trade.close_price = price
        trade.realized_pnl = realized
        trade.unrealized_pnl = 0.0
        logger.info(f"Order book: closed {trade.direction} {trade.id} @ {price:.4f} (PnL={realized:.4f})")
        return True

    def update_trade_upnl(self, current_price: float) -> None:
        """
        Mark open trades to current_price.

        Open sell trades never show an unrealized loss: their value is floored
        at zero while buys report losses as-is.
        """
        price = _finite(current_price, default=-1.0)
        if price <= 0:
            logger.error(f"update_trade_upnl: invalid price {current_price!r}")
            return
        for trade in self.get_open_trades():
            if trade.direction == "buy":
                trade.unrealized_pnl = (price - trade.price) * trade.base_amount
            else:
                trade.unrealized_pnl = max(0.0, (trade.price - price) * trade.base_amount)

    def get_trade_statistics(self) -> Dict[str, Any]:
        open_trades = [t for t in self.trades if t.is_open]
        closed_trades = [t for t in self.trades if not t.is_open]
        winning = [t for t in closed_trades if (t.realized_pnl or 0.0) > 0]
        total_volume = sum(t.quote_value for t in self.trades)
        total = len(self.trades)
        return {
            "total_trades": total,
            "open_trades": len(open_trades),
            "closed_trades": len(closed_trades),
            "winning_trades": len(winning),
            "win_rate": (len(winning) / len(closed_trades) * 100) if closed_trades else 0.0,
            "total_volume": total_volume,
            "total_realized_pnl": sum(t.realized_pnl or 0.0 for t in closed_trades),
            "total_unrealized_pnl": sum(t.unrealized_pnl for t in open_trades),
            "avg_trade_size": total_volume / total if total else 0.0,
        }

    def get_state(self) -> Dict[str, Any]:
        return {
            "last_updated": _utcnow_iso(),
            "trades": [t.to_dict() for t in self.trades],
        }

    def load_state(self, state: Any) -> int:
        """
        Replace the trade set from a snapshot.

        Every record is normalized; duplicates keep the last occurrence.
        Returns the number of trades loaded.
        """
        raw_trades = state.get("trades") if isinstance(state, dict) else None
        if not isinstance(raw_trades, list):
            logger.warning("Order book snapshot missing or malformed; starting empty")
            self.trades = []
            return 0

        by_id: Dict[str, Trade] = {}
        for raw in raw_trades:
            trade = Trade.normalize(raw)
            if trade is not None:
                by_id.pop(trade.id, None)
                by_id[trade.id] = trade
        self.trades = list(by_id.values())
        logger.info(f"Loaded {len(self.trades)} trades into order book")
        return len(self.trades)

    def reset(self) -> None:
        self.trades = []
