"""
Engine context.

Everything the engine would otherwise reach through module globals (wallet,
connections, settings, stores, observability hooks) is built once at startup
and passed explicitly. Restart rebuilds the domain objects but reuses the
context.
"""

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from analytics.trade_log import MarketDataLog, SwapAuditLog
from core.audit_log import AuditLogger
from core.clients import BundleRelay, BundleSigner, ChainReader, PriceOracle, QuoteProvider, SentimentFeed
from core.retry_policy import RetryPolicy
from core.swap_executor import SwapExecutor
from core.swap_results import FailureReason
from core.tokens import TokenPair
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder
from infra.settings import SettingsProvider
from infra.state_store import StoragePort


@dataclass(frozen=True)
class ExecutionConfig:
    """Attempt budgets and poll cadence (app.yaml `execution`)."""
    max_attempts: int = 5
    retry_delay_seconds: float = 5.0
    bundle_attempts: int = 5
    bundle_retry_delay_seconds: float = 5.0
    status_poll_interval_seconds: float = 2.0
    status_poll_attempts: int = 45

    @classmethod
    def from_config(cls, raw: Optional[Dict[str, Any]]) -> "ExecutionConfig":
        raw = raw or {}
        defaults = cls()
        return cls(
            max_attempts=int(raw.get("max_attempts", defaults.max_attempts)),
            retry_delay_seconds=float(raw.get("retry_delay_seconds", defaults.retry_delay_seconds)),
            bundle_attempts=int(raw.get("bundle_attempts", defaults.bundle_attempts)),
            bundle_retry_delay_seconds=float(
                raw.get("bundle_retry_delay_seconds", defaults.bundle_retry_delay_seconds)
            ),
            status_poll_interval_seconds=float(
                raw.get("status_poll_interval_seconds", defaults.status_poll_interval_seconds)
            ),
            status_poll_attempts=int(raw.get("status_poll_attempts", defaults.status_poll_attempts)),
        )


@dataclass
class EngineContext:
    pair: TokenPair
    wallet_address: str
    sentiment_feed: SentimentFeed
    price_oracle: PriceOracle
    quotes: QuoteProvider
    relay: BundleRelay
    chain: ChainReader
    settings: SettingsProvider
    store: StoragePort
    signer: Optional[BundleSigner] = None
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    audit: Optional[AuditLogger] = None
    swap_log: Optional[SwapAuditLog] = None
    market_log: Optional[MarketDataLog] = None
    metrics: Optional[MetricsRecorder] = None
    alerts: Optional[AlertService] = None

    def build_executor(self, clock: Optional[Callable[[], datetime]] = None,
                       sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                       rng: Optional[random.Random] = None) -> SwapExecutor:
        execution = self.execution
        kwargs = {"clock": clock} if clock is not None else {}
        return SwapExecutor(
            pair=self.pair,
            wallet_address=self.wallet_address,
            quotes=self.quotes,
            relay=self.relay,
            chain=self.chain,
            signer=self.signer,
            retry_policy=RetryPolicy(
                max_attempts=execution.max_attempts,
                delay_seconds=execution.retry_delay_seconds,
            ),
            bundle_policy=RetryPolicy(
                max_attempts=execution.bundle_attempts,
                delay_seconds=execution.bundle_retry_delay_seconds,
                retryable=frozenset({FailureReason.BUNDLE}),
            ),
            poll_interval_seconds=execution.status_poll_interval_seconds,
            poll_attempts=execution.status_poll_attempts,
            audit_log=self.swap_log,
            sleep=sleep,
            rng=rng,
            **kwargs,
        )
