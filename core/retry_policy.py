"""
Retry policy applied by the swap executor to whole swap attempts.

Only transient failure classes (quote, bundle) are retried. Business-rule
rejections are final for the cycle. Cancellation stops further attempts but
never interrupts the one in flight.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_result,
    stop_after_attempt,
    stop_any,
    wait_fixed,
)

from core.cancellation import CancellationToken
from core.swap_results import FailureReason, SwapOutcome

logger = logging.getLogger(__name__)

RETRYABLE_FAILURES = frozenset({FailureReason.QUOTE, FailureReason.BUNDLE})


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    delay_seconds: float = 5.0
    retryable: FrozenSet[FailureReason] = field(default_factory=lambda: RETRYABLE_FAILURES)

    def is_retryable(self, outcome: SwapOutcome) -> bool:
        return not outcome.ok and outcome.failure in self.retryable

    async def run(self, attempt: Callable[[int], Awaitable[SwapOutcome]],
                  token: Optional[CancellationToken] = None,
                  label: str = "swap") -> SwapOutcome:
        """
        Call `attempt(n)` until it succeeds, fails non-retryably, attempts
        run out, or the token is cancelled. Returns the last outcome with
        its `attempts` field set.
        """
        token = token or CancellationToken()
        calls = {"n": 0}
        last: Optional[SwapOutcome] = None

        async def _attempt() -> SwapOutcome:
            nonlocal last
            if last is not None and token.cancelled:
                logger.info(f"{label}: cancelled before attempt {calls['n'] + 1}; not retrying")
                return last
            calls["n"] += 1
            last = await attempt(calls["n"])
            if not last.ok:
                logger.info(f"{label}: attempt {calls['n']}/{self.max_attempts} failed ({last.failure})")
            return last

        def _should_retry(outcome: SwapOutcome) -> bool:
            return self.is_retryable(outcome) and not token.cancelled

        def _cancelled(retry_state: RetryCallState) -> bool:
            return token.cancelled

        def _give_up(retry_state: RetryCallState) -> SwapOutcome:
            return retry_state.outcome.result()

        retrying = AsyncRetrying(
            stop=stop_any(stop_after_attempt(self.max_attempts), _cancelled),
            wait=wait_fixed(self.delay_seconds),
            retry=retry_if_result(_should_retry),
            sleep=token.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            retry_error_callback=_give_up,
            reraise=True,
        )
        outcome = await retrying(_attempt)
        return SwapOutcome(
            intent=outcome.intent,
            result=outcome.result,
            failure=outcome.failure,
            detail=outcome.detail,
            attempts=calls["n"],
        )
