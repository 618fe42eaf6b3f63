"""
Trading Engine

Owns the ledger, order book, executor and scheduler for the process
lifetime and exposes the small surface the dashboard/CLI layer uses:

- get_latest_snapshot(): last persisted snapshot
- on_cycle_complete(callback): CycleResult listener
- restart(): discard history, re-baseline from on-chain balances
- update_settings(partial): validated settings update
"""

import asyncio
import copy
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from core.cancellation import CancellationToken
from core.context import EngineContext
from core.exceptions import StartupError
from core.order_book import OrderBook
from core.position_ledger import PositionLedger
from core.threshold import ThresholdStrategy
from core.trading_cycle import CycleResult, TradingCycleScheduler
from infra.alerting import AlertSeverity
from infra.settings import TradingSettings

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TradingEngine:

    def __init__(self, ctx: EngineContext, clock: Callable[[], datetime] = _utcnow,
                 sleep: Optional[Callable[[float], Any]] = None):
        self.ctx = ctx
        self._clock = clock
        self._sleep = sleep
        self._listeners: List[Callable[[CycleResult], Any]] = []

        self.scheduler: Optional[TradingCycleScheduler] = None
        self._stop_requested = False
        self._loop_done: Optional[asyncio.Event] = None
        self._restarting: Optional[asyncio.Future] = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Restore from the persisted snapshot, or start fresh from chain balances."""
        snapshot = self.ctx.store.load()
        if snapshot and isinstance(snapshot.get("ledger"), dict):
            self._restore(snapshot)
        else:
            await self._initialize_fresh()
            self.scheduler.persist()

    def _build_scheduler(self, ledger: PositionLedger, order_book: OrderBook) -> TradingCycleScheduler:
        executor_kwargs = {"clock": self._clock}
        if self._sleep is not None:
            executor_kwargs["sleep"] = self._sleep
        return TradingCycleScheduler(
            ctx=self.ctx,
            ledger=ledger,
            order_book=order_book,
            executor=self.ctx.build_executor(**executor_kwargs),
            threshold=ThresholdStrategy(),
            token=CancellationToken(),
            listeners=self._listeners,
            clock=self._clock,
        )

    def _order_book(self) -> OrderBook:
        return OrderBook(min_profit_percent=lambda: self.ctx.settings.get().min_profit_percent)

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        pair = snapshot.get("pair")
        if pair and pair != self.ctx.pair.symbol:
            raise StartupError(
                f"State file holds a {pair} ledger but the configured pair is {self.ctx.pair.symbol}; "
                f"move the state file aside to start fresh"
            )

        ledger = PositionLedger.from_snapshot(self.ctx.pair, snapshot["ledger"])
        order_book = self._order_book()
        order_book.load_state(snapshot.get("order_book"))

        self.scheduler = self._build_scheduler(ledger, order_book)
        scheduler_state = snapshot.get("scheduler") or {}
        self.scheduler.executor.load(scheduler_state.get("executor"))
        self.scheduler.threshold.load(scheduler_state.get("threshold"))
        self.scheduler.latest_snapshot = snapshot
        logger.info(
            f"Restored state: {len(ledger.trades)} ledger trades, "
            f"{len(order_book.trades)} order book trades, {ledger.total_cycles} cycles"
        )

    async def _initialize_fresh(self) -> None:
        """New ledger whose inception is the current on-chain position."""
        ctx = self.ctx
        try:
            base, quote = await ctx.chain.get_balances(ctx.wallet_address, ctx.pair)
            price = await ctx.price_oracle.fetch_price(ctx.pair.base)
        except Exception as e:
            raise StartupError(f"Cannot read initial balances/price: {e}") from e

        ledger = PositionLedger(ctx.pair, base, quote, price)
        self.scheduler = self._build_scheduler(ledger, self._order_book())
        logger.info(f"Fresh start for {ctx.pair.symbol} at {price}")

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def run(self, max_cycles: Optional[int] = None) -> None:
        """
        Run until stop(); survives restart() by swapping schedulers.

        Raises StartupError when a restart cannot re-baseline the ledger.
        """
        if self.scheduler is None:
            await self.start()

        wait_first = False
        while not self._stop_requested:
            self._loop_done = asyncio.Event()
            try:
                await self.scheduler.run_forever(max_cycles=max_cycles, wait_first=wait_first)
            finally:
                self._loop_done.set()

            if self._restarting is None:
                break
            try:
                await self._restarting
            finally:
                self._restarting = None
            wait_first = True

    async def run_once(self) -> CycleResult:
        if self.scheduler is None:
            await self.start()
        return await self.scheduler.run_cycle()

    def stop(self, reason: str = "stop") -> None:
        self._stop_requested = True
        if self.scheduler is not None:
            self.scheduler.token.cancel(reason)

    async def restart(self) -> None:
        """
        Cancel the current loop, wait for the running cycle to unwind, then
        rebuild ledger and order book from fresh balances and persist.

        The wallet's cooldown clock survives the restart. If the new baseline
        cannot be read the error is raised here and from a waiting run().
        The next cycle runs at the next aligned boundary.
        """
        logger.warning("Restart requested: discarding ledger and order book history")
        self._restarting = asyncio.get_running_loop().create_future()
        loop_waiting = self._loop_done is not None and not self._loop_done.is_set()
        previous = self.scheduler
        try:
            if previous is not None:
                previous.token.cancel("restart")
            if loop_waiting:
                await self._loop_done.wait()

            try:
                await self._initialize_fresh()
            except StartupError as e:
                logger.critical(f"Restart failed, trading halted: {e}")
                if self.ctx.alerts is not None:
                    self.ctx.alerts.notify(AlertSeverity.CRITICAL, "Restart failed", str(e))
                if loop_waiting and not self._restarting.done():
                    self._restarting.set_exception(e)
                raise

            if previous is not None:
                self.scheduler.executor.last_trade_at = dict(previous.executor.last_trade_at)
            self.scheduler.persist()
            if self.ctx.alerts is not None:
                self.ctx.alerts.notify(AlertSeverity.INFO, "Engine restarted", "Ledger re-baselined from chain")
        finally:
            if not self._restarting.done():
                self._restarting.set_result(None)
            if not loop_waiting:
                # No run() loop is waiting on the future
                self._restarting = None

    # ------------------------------------------------------------------
    # Surface
    # ------------------------------------------------------------------

    def get_latest_snapshot(self) -> Optional[Dict[str, Any]]:
        if self.scheduler is not None and self.scheduler.latest_snapshot is not None:
            snapshot = self.scheduler.latest_snapshot
        else:
            snapshot = getattr(self.ctx.store, "latest", None)
        return copy.deepcopy(snapshot) if snapshot is not None else None

    def on_cycle_complete(self, callback: Callable[[CycleResult], Any]) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def update_settings(self, partial: Dict[str, Any]) -> TradingSettings:
        """Raises SettingsError on invalid input; applies from the next cycle."""
        return self.ctx.settings.update(partial)

    def health(self) -> Dict[str, Any]:
        store = self.ctx.store
        scheduler = self.scheduler
        last = scheduler.last_result if scheduler else None
        degraded = bool(getattr(store, "degraded", False))
        return {
            "ok": not degraded,
            "status": "degraded" if degraded else "ok",
            "persistence": {
                "consecutive_failures": getattr(store, "consecutive_failures", 0),
                "last_error": getattr(store, "last_error", None),
                "last_saved_at": getattr(store, "last_saved_at", None),
            },
            "last_cycle": {
                "started_at": last.started_at.isoformat(),
                "status": last.status,
                "no_trade_reason": last.no_trade_reason,
            } if last else None,
            "next_run_at": scheduler.next_run_at.isoformat() if scheduler and scheduler.next_run_at else None,
            "monitor_mode": self.ctx.settings.get().monitor_mode,
        }
