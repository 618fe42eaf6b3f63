"""
Swap Executor

Turns a trade intent into a settled on-chain swap or a classified failure.

Pipeline per leg:
1. Cooldown gate (per wallet, last landed trade)
2. Hysteresis guard and sizing (opening legs only)
3. Minimum balance guard (opening legs only)
4. Quote + swap transaction from the aggregator
5. Bundle [swap, tip, accounting] on a fresh blockhash, submit, poll status
6. Map realized amounts to a SwapResult; append a CSV audit row either way

Steps 4-5 run under RetryPolicy; business-rule rejections from 1-3 are final.
"""

import asyncio
import logging
import random
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from analytics.trade_log import SwapAuditLog
from core.cancellation import CancellationToken
from core.clients import (
    TIMED_OUT,
    BundleRelay,
    BundleRequest,
    BundleSigner,
    BundleStatus,
    ChainReader,
    Quote,
    QuoteProvider,
    SignedTransaction,
)
from core.exceptions import BundleSubmissionError, SwapQuoteError
from core.retry_policy import RetryPolicy
from core.sentiment import Sentiment, SignalChangeGuard
from core.sizing import TradeSizer, TradingPeriod, minimum_balance_ok
from core.swap_results import FailureReason, SwapOutcome, SwapResult, TradeIntent
from core.tokens import TokenDescriptor, TokenPair

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SwapExecutor:
    """
    One executor per engine lifetime; holds the per-wallet cooldown clock,
    the hysteresis guard and the strategic trading period.
    """

    def __init__(self, pair: TokenPair, wallet_address: str, quotes: QuoteProvider,
                 relay: BundleRelay, chain: ChainReader, signer: Optional[BundleSigner] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 bundle_policy: Optional[RetryPolicy] = None,
                 poll_interval_seconds: float = 2.0, poll_attempts: int = 45,
                 audit_log: Optional[SwapAuditLog] = None,
                 sizer: Optional[TradeSizer] = None,
                 guard: Optional[SignalChangeGuard] = None,
                 clock: Callable[[], datetime] = _utcnow,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 rng: Optional[random.Random] = None):
        self.pair = pair
        self.wallet_address = wallet_address
        self.quotes = quotes
        self.relay = relay
        self.chain = chain
        self.signer = signer
        self.retry_policy = retry_policy or RetryPolicy()
        self.bundle_policy = bundle_policy or RetryPolicy(retryable=frozenset({FailureReason.BUNDLE}))
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_attempts = max(1, int(poll_attempts))
        self.audit_log = audit_log
        self.sizer = sizer or TradeSizer()
        self.guard = guard or SignalChangeGuard()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        self.last_trade_at: Dict[str, datetime] = {}

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def cooldown_remaining(self, cooldown_minutes: float, now: Optional[datetime] = None) -> float:
        """Seconds until this wallet may trade again (0 when free)."""
        last = self.last_trade_at.get(self.wallet_address)
        if last is None or cooldown_minutes <= 0:
            return 0.0
        now = now or self._clock()
        remaining = cooldown_minutes * 60 - (now - last).total_seconds()
        return max(0.0, remaining)

    def _tokens_for(self, direction: str) -> Tuple[TokenDescriptor, TokenDescriptor]:
        if direction == "buy":
            return self.pair.quote, self.pair.base
        return self.pair.base, self.pair.quote

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(self, intent: TradeIntent, settings: Any, balances: Tuple[float, float],
                      price: float, token: Optional[CancellationToken] = None) -> SwapOutcome:
        """
        Run one leg to completion.

        Args:
            intent: Leg description; opening legs may leave amount unset
            settings: TradingSettings in force for this cycle
            balances: (base, quote) balances read at the start of the cycle
            price: Spot price used for the minimum balance guard
            token: Cancellation token shared with the scheduler

        Returns:
            SwapOutcome with either a SwapResult or a FailureReason
        """
        token = token or CancellationToken()
        outcome = self._pre_trade_checks(intent, settings, balances, price, token)
        if outcome is None:
            intent = self._sized(intent, settings, balances)
            outcome = self._validate_size(intent, balances, price, settings)

        if outcome is None:
            outcome = await self.retry_policy.run(
                lambda n: self._attempt(intent, settings, token, n),
                token,
                label=f"{intent.leg} {intent.direction}",
            )
            if outcome.ok:
                self._record_success(intent)
            else:
                logger.warning(
                    f"{intent.leg} {intent.direction} gave up after {outcome.attempts} attempt(s): "
                    f"{outcome.failure} ({outcome.detail})"
                )

        self._audit(outcome)
        return outcome

    def _pre_trade_checks(self, intent: TradeIntent, settings: Any, balances: Tuple[float, float],
                          price: float, token: CancellationToken) -> Optional[SwapOutcome]:
        if token.cancelled:
            logger.info(f"Not starting {intent.leg} {intent.direction}: cancelled")
            return SwapOutcome.failed(intent, FailureReason.CANCELLED, token.reason, attempts=0)

        if self.signer is None:
            logger.error(f"Not starting {intent.leg} {intent.direction}: no bundle signer configured")
            return SwapOutcome.failed(intent, FailureReason.BUNDLE, "no signer", attempts=0)

        remaining = self.cooldown_remaining(settings.cooldown_minutes)
        if remaining > 0:
            logger.info(f"{intent.leg} {intent.direction} rejected: cooldown active ({remaining:.0f}s remaining)")
            return SwapOutcome.failed(
                intent, FailureReason.COOLDOWN, f"{remaining:.0f}s remaining", attempts=0
            )

        sentiment = self._sentiment(intent)
        if not intent.is_close and sentiment is not None and intent.index is not None:
            if not self.guard.is_significant(sentiment, intent.index, settings.min_signal_change):
                logger.info(
                    f"{intent.leg} {intent.direction} rejected: index {intent.index} within "
                    f"{settings.min_signal_change} of last {sentiment.value} trade at {self.guard.last_index}"
                )
                return SwapOutcome.failed(
                    intent, FailureReason.INSIGNIFICANT_SIGNAL_CHANGE, attempts=0
                )
        return None

    @staticmethod
    def _sentiment(intent: TradeIntent) -> Optional[Sentiment]:
        try:
            return Sentiment(intent.sentiment)
        except ValueError:
            return None

    def _sized(self, intent: TradeIntent, settings: Any, balances: Tuple[float, float]) -> TradeIntent:
        if intent.amount is not None:
            return intent
        sentiment = self._sentiment(intent)
        if sentiment is None:
            logger.error(f"Cannot size leg for non-sentiment signal {intent.sentiment!r}")
            return replace(intent, amount=0.0)
        base_balance, quote_balance = balances
        amount = self.sizer.size(intent.direction, sentiment, base_balance, quote_balance, settings)
        return replace(intent, amount=amount)

    def _validate_size(self, intent: TradeIntent, balances: Tuple[float, float], price: float,
                       settings: Any) -> Optional[SwapOutcome]:
        input_token, output_token = self._tokens_for(intent.direction)
        sized_token = output_token if intent.exact_out else input_token
        if not intent.amount or intent.amount <= 0 or sized_token.to_smallest_units(intent.amount) <= 0:
            logger.error(f"{intent.leg} {intent.direction}: invalid trade amount {intent.amount}")
            return SwapOutcome.failed(intent, FailureReason.INVALID_SIZE, attempts=0)

        if intent.is_close or intent.exact_out:
            return None

        base_balance, quote_balance = balances
        buying = intent.direction == "buy"
        balance = quote_balance if buying else base_balance
        if not minimum_balance_ok(balance, intent.amount, not buying, price, settings.min_usd_value):
            return SwapOutcome.failed(intent, FailureReason.MINIMUM_BALANCE, attempts=0)
        return None

    def _record_success(self, intent: TradeIntent) -> None:
        self.last_trade_at[self.wallet_address] = self._clock()
        sentiment = self._sentiment(intent)
        if not intent.is_close and sentiment is not None and intent.index is not None:
            self.guard.record_trade(sentiment, intent.index)

    # ------------------------------------------------------------------
    # One attempt: quote -> bundle -> confirm
    # ------------------------------------------------------------------

    async def _attempt(self, intent: TradeIntent, settings: Any, token: CancellationToken,
                       attempt_no: int) -> SwapOutcome:
        try:
            quote = await self._quote(intent, settings)
            swap_tx = await self._swap_transaction(quote)
        except SwapQuoteError as e:
            logger.warning(f"Quote attempt {attempt_no} for {intent.leg} {intent.direction} failed: {e}")
            return SwapOutcome.failed(intent, FailureReason.QUOTE, str(e))

        return await self.bundle_policy.run(
            lambda n: self._send_bundle(intent, quote, swap_tx, settings, n),
            token,
            label=f"{intent.leg} {intent.direction} bundle",
        )

    async def _quote(self, intent: TradeIntent, settings: Any) -> Quote:
        input_token, output_token = self._tokens_for(intent.direction)
        sized_token = output_token if intent.exact_out else input_token
        raw_amount = sized_token.to_smallest_units(intent.amount)
        try:
            quote = await self.quotes.get_quote(
                input_token, output_token, raw_amount,
                exact_out=intent.exact_out, slippage_bps=settings.slippage_bps,
            )
        except Exception as e:
            raise SwapQuoteError(f"quote request failed: {e}") from e

        if quote is None or quote.in_amount <= 0 or quote.out_amount <= 0:
            raise SwapQuoteError(f"unusable quote: {quote}")
        logger.info(
            f"Quote {input_token.name}->{output_token.name}: "
            f"{input_token.from_smallest_units(quote.in_amount):.6f} -> "
            f"{output_token.from_smallest_units(quote.out_amount):.6f}"
        )
        return quote

    async def _swap_transaction(self, quote: Quote) -> str:
        try:
            swap_tx = await self.quotes.build_swap_transaction(quote, self.wallet_address)
        except Exception as e:
            raise SwapQuoteError(f"swap transaction request failed: {e}") from e
        if not swap_tx:
            raise SwapQuoteError("empty swap transaction")
        return swap_tx

    async def _tip_lamports(self, settings: Any) -> int:
        floor = None
        try:
            floor = await self.relay.get_tip_floor()
        except Exception as e:
            logger.warning(f"Tip floor unavailable, using static tip: {e}")
        base = floor if floor and floor > 0 else settings.static_tip_lamports
        return int(min(base, settings.max_tip_lamports) * settings.tip_multiplier)

    async def _send_bundle(self, intent: TradeIntent, quote: Quote, swap_tx: str, settings: Any,
                           bundle_attempt: int) -> SwapOutcome:
        try:
            blockhash = await self.chain.get_latest_blockhash()
            tip_lamports = await self._tip_lamports(settings)
            if not self.relay.tip_accounts:
                raise BundleSubmissionError("relay published no tip accounts")
            request = BundleRequest(
                swap_transaction=swap_tx,
                blockhash=blockhash,
                tip_account=self._rng.choice(self.relay.tip_accounts),
                tip_lamports=tip_lamports,
                accounting_lamports=settings.accounting_lamports,
                wallet_address=self.wallet_address,
            )
            signed = self._sign(request)
            bundle_id = await self.relay.send_bundle([tx.payload for tx in signed])
        except Exception as e:
            logger.warning(f"Bundle attempt {bundle_attempt} for {intent.leg} {intent.direction} not submitted: {e}")
            return SwapOutcome.failed(intent, FailureReason.BUNDLE, str(e))

        logger.info(f"Bundle {bundle_id} submitted (tip {tip_lamports} lamports, attempt {bundle_attempt})")
        status = await self._await_confirmation(bundle_id)
        if not status.landed:
            return SwapOutcome.failed(intent, FailureReason.BUNDLE, f"bundle {bundle_id} {status.status}")

        result = await self._map_result(intent, quote, signed[0].signature, bundle_id)
        logger.info(
            f"Bundle {bundle_id} landed: {intent.direction} {abs(result.base_amount_change):.6f} "
            f"{self.pair.base.name} @ {result.price:.4f}"
        )
        return SwapOutcome.success(intent, result)

    def _sign(self, request: BundleRequest) -> List[SignedTransaction]:
        signed = list(self.signer.sign_bundle(request))
        if len(signed) != 3:
            raise BundleSubmissionError(f"signer returned {len(signed)} transactions, expected 3")
        return signed

    async def _await_confirmation(self, bundle_id: str) -> BundleStatus:
        """Poll until Landed/Failed or the poll budget runs out (timeout = failure)."""
        for poll in range(1, self.poll_attempts + 1):
            try:
                status = await self.relay.get_bundle_status(bundle_id)
            except Exception as e:
                logger.warning(f"Bundle {bundle_id} status poll {poll} failed: {e}")
                status = None

            if status is not None and status.landed:
                return status
            if status is not None and status.failed:
                logger.warning(f"Bundle {bundle_id} {status.status}")
                return status
            if poll < self.poll_attempts:
                await self._sleep(self.poll_interval_seconds)

        logger.warning(f"Bundle {bundle_id} unresolved after {self.poll_attempts} polls")
        return BundleStatus(bundle_id=bundle_id, status=TIMED_OUT)

    async def _map_result(self, intent: TradeIntent, quote: Quote, signature: str,
                          bundle_id: str) -> SwapResult:
        changes = None
        try:
            changes = await self.chain.get_token_changes(signature, self.wallet_address, self.pair)
        except Exception as e:
            logger.warning(f"Could not read realized amounts for {signature}: {e}")

        if not changes or not changes[0]:
            logger.warning(f"Using quoted amounts for {signature}")
            changes = self._quoted_changes(intent, quote)

        base_change, quote_change = changes
        return SwapResult(
            tx_id=signature,
            price=abs(quote_change / base_change),
            base_amount_change=base_change,
            quote_amount_change=quote_change,
            bundle_id=bundle_id,
        )

    def _quoted_changes(self, intent: TradeIntent, quote: Quote) -> Tuple[float, float]:
        if intent.direction == "buy":
            return (
                self.pair.base.from_smallest_units(quote.out_amount),
                -self.pair.quote.from_smallest_units(quote.in_amount),
            )
        return (
            -self.pair.base.from_smallest_units(quote.in_amount),
            self.pair.quote.from_smallest_units(quote.out_amount),
        )

    # ------------------------------------------------------------------
    # Audit + state
    # ------------------------------------------------------------------

    def _audit(self, outcome: SwapOutcome) -> None:
        if self.audit_log is None:
            return
        intent = outcome.intent
        input_token, output_token = self._tokens_for(intent.direction)
        if outcome.ok:
            result = outcome.result
            buying = intent.direction == "buy"
            input_amount = abs(result.quote_amount_change if buying else result.base_amount_change)
            output_amount = abs(result.base_amount_change if buying else result.quote_amount_change)
            status, bundle_id = "Landed", result.bundle_id
        else:
            input_amount = intent.amount or 0.0
            output_amount = 0.0
            status, bundle_id = str(outcome.failure), None
        self.audit_log.record(
            input_token=input_token.name,
            input_amount=input_amount,
            output_token=output_token.name,
            output_amount=output_amount,
            relay_status=status,
            bundle_id=bundle_id,
            attempts=outcome.attempts,
        )

    def reset(self) -> None:
        self.last_trade_at.clear()
        self.guard = SignalChangeGuard()
        self.sizer.reset()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_trade_at": {wallet: ts.isoformat() for wallet, ts in self.last_trade_at.items()},
            "signal_guard": self.guard.to_dict(),
            "trading_period": self.sizer.period.to_dict(),
        }

    def load(self, raw: Optional[Dict[str, Any]]) -> None:
        raw = raw or {}
        self.last_trade_at = {}
        for wallet, ts in (raw.get("last_trade_at") or {}).items():
            try:
                self.last_trade_at[wallet] = datetime.fromisoformat(ts)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid last trade time for {wallet}: {ts!r}")
        self.guard.load(raw.get("signal_guard"))
        self.sizer.period = TradingPeriod.from_dict(raw.get("trading_period"))
