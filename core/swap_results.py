"""Value types passed between the scheduler and the swap executor."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    """Why a leg did not produce a settled swap."""
    COOLDOWN = "cooldownFailure"
    INSIGNIFICANT_SIGNAL_CHANGE = "insignificantSignalChange"
    QUOTE = "quoteFailure"
    BUNDLE = "bundleFailure"
    MINIMUM_BALANCE = "minimumBalanceGuard"
    INVALID_SIZE = "invalidSize"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class TradeIntent:
    """
    What a leg wants to do.

    amount is in the input token's UI units (quote for buys, base for sells),
    or the output token's when exact_out is set. Opening legs leave it unset
    and the executor sizes them. closes_trade_id marks a closing leg.
    """
    direction: str  # "buy" | "sell"
    sentiment: str
    amount: Optional[float] = None
    index: Optional[float] = None
    closes_trade_id: Optional[str] = None
    exact_out: bool = False

    @property
    def is_close(self) -> bool:
        return self.closes_trade_id is not None

    @property
    def leg(self) -> str:
        return "close" if self.is_close else "open"


@dataclass(frozen=True)
class SwapResult:
    """Settled swap as realized on chain."""
    tx_id: str
    price: float
    base_amount_change: float
    quote_amount_change: float
    bundle_id: Optional[str] = None


@dataclass(frozen=True)
class SwapOutcome:
    """Either a SwapResult or a classified failure."""
    intent: TradeIntent
    result: Optional[SwapResult] = None
    failure: Optional[FailureReason] = None
    detail: Optional[str] = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.result is not None

    @property
    def label(self) -> str:
        return "landed" if self.ok else str(self.failure)

    @classmethod
    def success(cls, intent: TradeIntent, result: SwapResult, attempts: int = 1) -> "SwapOutcome":
        return cls(intent=intent, result=result, attempts=attempts)

    @classmethod
    def failed(cls, intent: TradeIntent, failure: FailureReason, detail: Optional[str] = None,
               attempts: int = 1) -> "SwapOutcome":
        return cls(intent=intent, failure=failure, detail=detail, attempts=attempts)
