"""Prometheus-backed metrics hooks for the trading cycle and swap execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "pulse_"


@dataclass
class CycleStats:
    status: str
    sentiment: str
    legs_attempted: int
    legs_landed: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose cycle, swap and persistence stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_cycle_stats: Optional[CycleStats] = None
        self._last_no_trade_reason: Optional[str] = None
        self._swap_outcomes: Dict[str, int] = {}
        self._degraded = False

        if not self._enabled:
            self._cycle_summary = None
            self._cycle_counter = None
            self._no_trade_counter = None
            self._swap_counter = None
            self._retry_counter = None
            self._portfolio_gauge = None
            self._net_change_gauge = None
            self._open_trades_gauge = None
            self._persistence_failures_counter = None
            self._degraded_gauge = None
            return

        self._cycle_summary = Summary(
            f"{METRIC_PREFIX}cycle_duration_seconds",
            "Duration of a full trading cycle",
        )
        self._cycle_counter = Counter(
            f"{METRIC_PREFIX}cycle_total",
            "Total trading cycles by status",
            labelnames=("status",),
        )
        self._no_trade_counter = Counter(
            f"{METRIC_PREFIX}no_trade_total",
            "Cycles that ended without a trade, grouped by reason",
            labelnames=("reason",),
        )
        self._swap_counter = Counter(
            f"{METRIC_PREFIX}swap_outcomes_total",
            "Swap executor outcomes by leg and result",
            labelnames=("leg", "result"),
        )
        self._retry_counter = Counter(
            f"{METRIC_PREFIX}swap_retry_attempts_total",
            "Swap attempts beyond the first",
            labelnames=("leg",),
        )
        self._portfolio_gauge = Gauge(
            f"{METRIC_PREFIX}portfolio_value",
            "Current portfolio value in quote units",
        )
        self._net_change_gauge = Gauge(
            f"{METRIC_PREFIX}net_change",
            "Net change of traded volume in quote units",
        )
        self._open_trades_gauge = Gauge(
            f"{METRIC_PREFIX}open_trades",
            "Number of open order book trades",
        )
        self._persistence_failures_counter = Counter(
            f"{METRIC_PREFIX}persistence_failures_total",
            "Failed snapshot writes",
        )
        self._degraded_gauge = Gauge(
            f"{METRIC_PREFIX}health_degraded",
            "1 when repeated persistence failures degrade health",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        collectors_to_remove = []
        for collector in list(REGISTRY._collector_to_names):
            names = REGISTRY._collector_to_names.get(collector, set())
            if any(name.startswith(METRIC_PREFIX) for name in names):
                collectors_to_remove.append(collector)

        for collector in collectors_to_remove:
            try:
                REGISTRY.unregister(collector)
            except KeyError:
                pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning(
                        "Port %s in use, successfully bound to port %s instead",
                        self._port, port
                    )
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                continue

        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_cycle(self, stats: CycleStats) -> None:
        if self._enabled:
            self._cycle_summary.observe(stats.duration_seconds)
            self._cycle_counter.labels(status=stats.status).inc()
        self._last_cycle_stats = stats

    def record_no_trade_reason(self, reason: str) -> None:
        self._last_no_trade_reason = reason
        if self._enabled:
            self._no_trade_counter.labels(reason=reason).inc()

    def record_swap_outcome(self, leg: str, result: str, attempts: int = 1) -> None:
        key = f"{leg}:{result}"
        self._swap_outcomes[key] = self._swap_outcomes.get(key, 0) + 1
        if self._enabled:
            self._swap_counter.labels(leg=leg, result=result).inc()
            if attempts > 1:
                self._retry_counter.labels(leg=leg).inc(attempts - 1)

    def record_portfolio(self, value: float, net_change: float, open_trades: int) -> None:
        if self._enabled:
            self._portfolio_gauge.set(value)
            self._net_change_gauge.set(net_change)
            self._open_trades_gauge.set(max(open_trades, 0))

    def record_persistence(self, ok: bool, degraded: bool) -> None:
        self._degraded = degraded
        if self._enabled:
            if not ok:
                self._persistence_failures_counter.inc()
            self._degraded_gauge.set(1 if degraded else 0)

    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def last_no_trade_reason(self) -> Optional[str]:
        return self._last_no_trade_reason

    def swap_outcomes(self) -> Dict[str, int]:
        return dict(self._swap_outcomes)

    def is_degraded(self) -> bool:
        return self._degraded


__all__ = ["MetricsRecorder", "CycleStats"]
