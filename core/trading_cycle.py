"""
Trading Cycle Scheduler

One cycle:
1. FetchSignal  - sentiment index + spot price, on-chain balances
2. Decide       - sentiment buckets (or threshold allocation) -> legs
3. Execute      - close leg and open leg run concurrently, joined
4. Reconcile    - close applied before open (ledger + order book)
5. Persist      - full snapshot, whether the cycle succeeded or not
6. Scheduled    - sleep to the next timeframe boundary + settle delay

Everything runs on one event loop. Ledger and order book mutations happen
only in Reconcile, after the join, with no await between a read and its
write.
"""

import asyncio
import inspect
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from core.cancellation import CancellationToken, OperationCancelled
from core.exceptions import CriticalDataUnavailable
from core.order_book import OrderBook, Trade
from core.position_ledger import PositionLedger
from core.retry_policy import RETRYABLE_FAILURES
from core.sentiment import Sentiment, classify_sentiment
from core.swap_executor import SwapExecutor
from core.swap_results import FailureReason, SwapOutcome, TradeIntent
from core.threshold import ThresholdStrategy
from infra.alerting import AlertSeverity
from infra.metrics import CycleStats

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

TIMEFRAME_MINUTES = {"15m": 15, "1h": 60, "4h": 240}

# Closing a sell buys back its base amount; spend slightly more quote than
# the mark so slippage does not leave the position short.
CLOSE_BUYBACK_BUFFER = 1.01

PERSISTENCE_ALERT = "State persistence degraded"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_run_time(now: datetime, timeframe: str, settle_delay_seconds: float = 0.0) -> datetime:
    """
    Next wall-clock boundary of `timeframe` plus the settle delay.

    Boundaries are aligned to the epoch (so 15m lands on :00/:15/:30/:45 UTC)
    rather than measured from `now`.
    """
    interval = TIMEFRAME_MINUTES.get(timeframe, 15) * 60
    ts = now.timestamp()
    candidate = math.floor(ts / interval) * interval + settle_delay_seconds
    while candidate <= ts:
        candidate += interval
    return datetime.fromtimestamp(candidate, tz=timezone.utc)


@dataclass
class CycleResult:
    """What happened in one cycle; handed to audit, metrics and listeners."""
    started_at: datetime
    trading_mode: str
    monitor_mode: bool
    index: Optional[float] = None
    sentiment: Optional[str] = None
    price: Optional[float] = None
    decision: str = "hold"
    legs: List[SwapOutcome] = field(default_factory=list)
    no_trade_reason: Optional[str] = None
    persisted: bool = False
    error: Optional[str] = None
    statistics: Dict[str, Any] = field(default_factory=dict)
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    @property
    def landed(self) -> List[SwapOutcome]:
        return [leg for leg in self.legs if leg.ok]

    @property
    def status(self) -> str:
        if self.error:
            return "ERROR"
        if self.landed:
            return "EXECUTED"
        return "NO_TRADE"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "status": self.status,
            "trading_mode": self.trading_mode,
            "monitor_mode": self.monitor_mode,
            "index": self.index,
            "sentiment": self.sentiment,
            "price": self.price,
            "decision": self.decision,
            "no_trade_reason": self.no_trade_reason,
            "legs": [self._leg_dict(leg) for leg in self.legs],
            "persisted": self.persisted,
            "error": self.error,
            "statistics": self.statistics,
        }

    @staticmethod
    def _leg_dict(outcome: SwapOutcome) -> Dict[str, Any]:
        intent = outcome.intent
        result = outcome.result
        return {
            "leg": intent.leg,
            "direction": intent.direction,
            "amount": intent.amount,
            "closes_trade_id": intent.closes_trade_id,
            "result": outcome.label,
            "detail": outcome.detail,
            "attempts": outcome.attempts,
            "tx_id": result.tx_id if result else None,
            "bundle_id": result.bundle_id if result else None,
            "price": result.price if result else None,
            "base_change": result.base_amount_change if result else None,
            "quote_change": result.quote_amount_change if result else None,
        }


class TradingCycleScheduler:
    """
    Control loop for one ledger/order book pair.

    Built once per engine lifetime and discarded on restart; `token` is the
    cancellation flag shared with every await it starts.
    """

    def __init__(self, ctx: Any, ledger: PositionLedger, order_book: OrderBook,
                 executor: SwapExecutor, threshold: Optional[ThresholdStrategy] = None,
                 token: Optional[CancellationToken] = None,
                 listeners: Optional[List[Callable[[CycleResult], Any]]] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.ctx = ctx
        self.ledger = ledger
        self.order_book = order_book
        self.executor = executor
        self.threshold = threshold or ThresholdStrategy()
        self.token = token or CancellationToken()
        self.listeners = listeners if listeners is not None else []
        self._clock = clock

        self.latest_snapshot: Optional[Dict[str, Any]] = None
        self.last_result: Optional[CycleResult] = None
        self.next_run_at: Optional[datetime] = None
        self.running_cycle = False
        self._pending_allocation: Optional[bool] = None

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run_forever(self, max_cycles: Optional[int] = None, wait_first: bool = False) -> int:
        """
        Run cycles until cancelled (or max_cycles reached).

        Returns the number of cycles run.
        """
        cycles = 0
        if wait_first and await self._sleep_until_next_boundary():
            return cycles

        while not self.token.cancelled:
            await self.run_cycle()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            if await self._sleep_until_next_boundary():
                break

        logger.info(f"Scheduler stopped after {cycles} cycle(s) ({self.token.reason or 'completed'})")
        return cycles

    async def _sleep_until_next_boundary(self) -> bool:
        """Returns True if woken by cancellation."""
        settings = self.ctx.settings.get()
        now = self._clock()
        self.next_run_at = next_run_time(now, settings.timeframe, settings.settle_delay_seconds)
        wait = (self.next_run_at - now).total_seconds()
        logger.info(f"Next trading cycle at {self.next_run_at.isoformat()} (in {timedelta(seconds=round(wait))})")
        return await self.token.sleep(wait)

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleResult:
        settings = self.ctx.settings.get()
        result = CycleResult(
            started_at=self._clock(),
            trading_mode=settings.trading_mode,
            monitor_mode=settings.monitor_mode,
        )
        started = time.monotonic()
        self.running_cycle = True
        self._pending_allocation = None
        logger.info(f"--- Trading cycle {result.started_at.isoformat()} ({settings.trading_mode}) ---")

        try:
            await self._fetch_signal(result, settings)
            self.token.raise_if_cancelled()
            await self._refresh_balances()
            self.token.raise_if_cancelled()

            legs = self._decide(result, settings)
            if legs and settings.monitor_mode:
                logger.info(f"Monitor mode: would {result.decision} ({len(legs)} leg(s)); not executing")
                result.no_trade_reason = "monitor_mode"
            elif legs:
                result.legs = await self._execute(legs, settings, result.price)
                self._reconcile(result)
                if result.landed:
                    await self._refresh_balances()

            self.order_book.update_trade_upnl(result.price)

        except CriticalDataUnavailable as e:
            logger.error(f"Cycle skipped: {e}")
            result.no_trade_reason = "signal_unavailable" if e.source in ("sentiment", "price") else f"{e.source}_unavailable"
        except OperationCancelled as e:
            logger.info(f"Cycle cancelled: {e}")
            result.no_trade_reason = "cancelled"
        except Exception as e:
            logger.error(f"Trading cycle failed: {e}", exc_info=True)
            result.error = str(e)
            result.no_trade_reason = result.no_trade_reason or "error"

        self.ledger.increment_cycle()
        result.statistics = self._statistics(result.price)
        result.persisted = self._persist(result, settings)
        result.finished_at = self._clock()
        result.duration_seconds = time.monotonic() - started
        self.running_cycle = False
        self.last_result = result

        self._observe(result)
        await self._notify(result)
        return result

    async def _fetch_signal(self, result: CycleResult, settings: Any) -> None:
        try:
            index = await self.ctx.sentiment_feed.fetch_index()
        except CriticalDataUnavailable:
            raise
        except Exception as e:
            raise CriticalDataUnavailable("sentiment", e) from e

        self.token.raise_if_cancelled()
        try:
            price = await self.ctx.price_oracle.fetch_price(self.ctx.pair.base)
        except CriticalDataUnavailable:
            raise
        except Exception as e:
            raise CriticalDataUnavailable("price", e) from e

        if price is None or not price > 0:
            raise CriticalDataUnavailable("price", ValueError(f"invalid price {price!r}"))

        sentiment = classify_sentiment(index, settings.sentiment_boundaries)
        result.index = float(index)
        result.price = float(price)
        result.sentiment = sentiment.value
        logger.info(f"Index {index} ({sentiment.value}), {self.ctx.pair.base.name} price {price:.4f}")

        if self.ctx.market_log is not None:
            self.ctx.market_log.record(price=result.price, index=result.index, sentiment=sentiment.value)

    async def _refresh_balances(self) -> None:
        try:
            base, quote = await self.ctx.chain.get_balances(self.ctx.wallet_address, self.ctx.pair)
        except Exception as e:
            raise CriticalDataUnavailable("balances", e) from e
        self.ledger.update_balances(base, quote)
        logger.info(
            f"Balances: {self.ledger.base_balance:.6f} {self.ctx.pair.base.name}, "
            f"{self.ledger.quote_balance:.6f} {self.ctx.pair.quote.name}"
        )

    # ------------------------------------------------------------------
    # Decide
    # ------------------------------------------------------------------

    def _decide(self, result: CycleResult, settings: Any) -> List[TradeIntent]:
        if settings.trading_mode == "THRESHOLD":
            return self._decide_threshold(result, settings)
        return self._decide_sentiment(result)

    def _decide_sentiment(self, result: CycleResult) -> List[TradeIntent]:
        sentiment = Sentiment(result.sentiment)
        direction = sentiment.direction
        if direction is None:
            result.decision = "hold"
            result.no_trade_reason = "neutral_sentiment"
            return []

        result.decision = direction
        legs = []
        # A buy signal closes a profitable open sell (buying it back) and vice versa
        opposing = "sell" if direction == "buy" else "buy"
        match = self.order_book.find_oldest_matching_trade(opposing, result.price)
        if match is not None:
            legs.append(self._close_intent(match, result.price, sentiment.value))
        legs.append(TradeIntent(direction=direction, sentiment=sentiment.value, index=result.index))
        return legs

    @staticmethod
    def _close_intent(trade: Trade, price: float, sentiment: str) -> TradeIntent:
        if trade.direction == "buy":
            return TradeIntent(
                direction="sell", sentiment=sentiment,
                amount=trade.base_amount, closes_trade_id=trade.id,
            )
        return TradeIntent(
            direction="buy", sentiment=sentiment,
            amount=trade.base_amount * price * CLOSE_BUYBACK_BUFFER, closes_trade_id=trade.id,
        )

    def _decide_threshold(self, result: CycleResult, settings: Any) -> List[TradeIntent]:
        params = settings.threshold
        decision = self.threshold.update(result.index, params.threshold, params.switch_delay)
        if not decision.needs_rebalance:
            logger.info(
                f"Threshold hold: above={decision.cycles_above}, below={decision.cycles_below}, "
                f"high_base={self.threshold.state.in_high_allocation}"
            )
            result.decision = "hold"
            result.no_trade_reason = "threshold_hold"
            return []

        high_base = decision.should_switch_to_high_base
        current = ThresholdStrategy.current_allocation(
            self.ledger.base_balance, self.ledger.quote_balance, result.price
        )
        try:
            target = ThresholdStrategy.target_allocation(
                high_base, current.total_value, result.price, params.allocation_percentage
            )
        except ValueError as e:
            logger.error(f"Cannot compute target allocation: {e}")
            result.decision = "hold"
            result.no_trade_reason = "invalid_allocation"
            return []

        trade = ThresholdStrategy.rebalance_trade(current, target, params.min_trade_amount, high_base)
        if trade is None:
            if not settings.monitor_mode:
                self.threshold.record_allocation(high_base)
            result.decision = "hold"
            result.no_trade_reason = "below_min_trade_amount"
            return []

        logger.info(
            f"Rebalance to {'high base' if high_base else 'high quote'}: "
            f"{current.base_percentage:.1f}% -> {target.base_percentage:.1f}% base"
        )
        self._pending_allocation = high_base
        result.decision = f"rebalance_{trade.direction}"
        return [TradeIntent(
            direction=trade.direction,
            sentiment="THRESHOLD_HIGH_BASE" if high_base else "THRESHOLD_HIGH_QUOTE",
            amount=trade.input_amount,
            index=result.index,
        )]

    # ------------------------------------------------------------------
    # Execute + reconcile
    # ------------------------------------------------------------------

    async def _execute(self, legs: List[TradeIntent], settings: Any, price: float) -> List[SwapOutcome]:
        balances = (self.ledger.base_balance, self.ledger.quote_balance)
        results = await asyncio.gather(
            *(self.executor.execute(intent, settings, balances, price, self.token) for intent in legs),
            return_exceptions=True,
        )
        outcomes = []
        for intent, outcome in zip(legs, results):
            if isinstance(outcome, BaseException):
                logger.error(f"{intent.leg} {intent.direction} raised: {outcome}", exc_info=outcome)
                outcome = SwapOutcome.failed(intent, FailureReason.BUNDLE, str(outcome))
            outcomes.append(outcome)
        return outcomes

    def _reconcile(self, result: CycleResult) -> None:
        """Apply landed legs, closes first, so two offsetting opens never coexist."""
        ordered = sorted(result.legs, key=lambda o: 0 if o.intent.is_close else 1)
        for outcome in ordered:
            if not outcome.ok:
                continue
            intent, swap = outcome.intent, outcome.result
            self.ledger.log_trade(intent.sentiment, swap.price, swap.base_amount_change, swap.quote_amount_change)
            if intent.is_close:
                self.order_book.close_trade(intent.closes_trade_id, swap.price)
            else:
                self.order_book.add_trade(swap.price, swap.base_amount_change, swap.quote_amount_change, swap.tx_id)
                if self._pending_allocation is not None:
                    self.threshold.record_allocation(self._pending_allocation)

        if not result.landed and result.legs:
            opening = [o for o in result.legs if not o.intent.is_close]
            first_failure = (opening or result.legs)[0]
            result.no_trade_reason = str(first_failure.failure)

    # ------------------------------------------------------------------
    # Persist + observe
    # ------------------------------------------------------------------

    def _statistics(self, price: Optional[float]) -> Dict[str, Any]:
        mark = price if price is not None else self.ledger.initial_price
        return {
            "position": self.ledger.get_enhanced_statistics(mark),
            "order_book": self.order_book.get_trade_statistics(),
            "open_position": self.order_book.get_open_position(),
        }

    def build_snapshot(self, result: Optional[CycleResult] = None, settings: Any = None) -> Dict[str, Any]:
        settings = settings or self.ctx.settings.get()
        return {
            "version": SNAPSHOT_VERSION,
            "saved_at": self._clock().isoformat(),
            "pair": self.ctx.pair.symbol,
            "ledger": self.ledger.to_snapshot(),
            "order_book": self.order_book.get_state(),
            "scheduler": {
                "executor": self.executor.to_dict(),
                "threshold": self.threshold.to_dict(),
                "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            },
            "settings": settings.model_dump(),
            "last_cycle": result.to_dict() if result else None,
        }

    def persist(self, result: Optional[CycleResult] = None, settings: Any = None) -> bool:
        return self._persist(result, settings)

    def _persist(self, result: Optional[CycleResult], settings: Any) -> bool:
        store = self.ctx.store
        was_degraded = store.degraded
        try:
            snapshot = self.build_snapshot(result, settings)
        except Exception as e:
            logger.error(f"Failed to build snapshot: {e}", exc_info=True)
            return False

        ok = store.save(snapshot)
        if ok:
            self.latest_snapshot = snapshot

        if self.ctx.metrics is not None:
            self.ctx.metrics.record_persistence(ok, store.degraded)
        alerts = self.ctx.alerts
        if alerts is not None:
            if store.degraded:
                alerts.notify(
                    AlertSeverity.CRITICAL,
                    PERSISTENCE_ALERT,
                    f"{store.consecutive_failures} consecutive snapshot writes failed",
                    {"last_error": store.last_error},
                )
            elif was_degraded:
                alerts.resolve(AlertSeverity.CRITICAL, PERSISTENCE_ALERT)
                alerts.notify(AlertSeverity.WARNING, "State persistence recovered", "Snapshot write succeeded")
        return ok

    def _observe(self, result: CycleResult) -> None:
        metrics = self.ctx.metrics
        if metrics is not None:
            metrics.observe_cycle(CycleStats(
                status=result.status,
                sentiment=result.sentiment or "unknown",
                legs_attempted=len(result.legs),
                legs_landed=len(result.landed),
                duration_seconds=result.duration_seconds,
            ))
            if result.no_trade_reason:
                metrics.record_no_trade_reason(result.no_trade_reason)
            for outcome in result.legs:
                metrics.record_swap_outcome(outcome.intent.leg, outcome.label, outcome.attempts)
            if result.price is not None:
                metrics.record_portfolio(
                    self.ledger.get_current_value(result.price),
                    self.ledger.get_net_change(result.price),
                    len(self.order_book.get_open_trades()),
                )

        alerts = self.ctx.alerts
        if alerts is not None:
            max_attempts = self.executor.retry_policy.max_attempts
            for outcome in result.legs:
                if outcome.failure in RETRYABLE_FAILURES and outcome.attempts >= max_attempts:
                    alerts.notify(
                        AlertSeverity.WARNING,
                        "Swap retries exhausted",
                        f"{outcome.intent.leg} {outcome.intent.direction} failed after "
                        f"{outcome.attempts} attempts: {outcome.failure}",
                        {"detail": outcome.detail},
                    )

        if self.ctx.audit is not None:
            self.ctx.audit.log_cycle(result)

        stats = result.statistics.get("position", {})
        portfolio = stats.get("portfolio_value") or {}
        logger.info(
            f"Cycle {result.status}: decision={result.decision}, "
            f"reason={result.no_trade_reason}, portfolio={portfolio.get('current')}, "
            f"net_change={stats.get('net_change')}, persisted={result.persisted}"
        )

    async def _notify(self, result: CycleResult) -> None:
        for callback in list(self.listeners):
            try:
                ret = callback(result)
                if inspect.isawaitable(ret):
                    await ret
            except Exception as e:
                logger.error(f"Cycle listener {callback!r} failed: {e}", exc_info=True)
