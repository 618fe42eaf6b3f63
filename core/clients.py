"""
Ports to the external services the engine consumes.

Everything here is fallible and latent; implementations live in
infra/http_clients.py (HTTP) or are supplied by the operator (signing).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from core.tokens import TokenDescriptor, TokenPair

LANDED = "Landed"
FAILED = "Failed"
PENDING = "Pending"
INVALID = "Invalid"
TIMED_OUT = "Timeout"


@dataclass(frozen=True)
class Quote:
    """Aggregator quote; amounts are in smallest units."""
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    exact_out: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class BundleStatus:
    bundle_id: str
    status: str
    slot: Optional[int] = None

    @property
    def landed(self) -> bool:
        return self.status == LANDED

    @property
    def failed(self) -> bool:
        return self.status in (FAILED, INVALID)


@dataclass(frozen=True)
class BundleRequest:
    """Everything a signer needs to produce the three bundle transactions."""
    swap_transaction: str  # base64, unsigned, from the aggregator
    blockhash: str
    tip_account: str
    tip_lamports: int
    accounting_lamports: int
    wallet_address: str


@dataclass(frozen=True)
class SignedTransaction:
    signature: str
    payload: str  # base64 wire format


@runtime_checkable
class SentimentFeed(Protocol):
    async def fetch_index(self) -> int:
        ...


@runtime_checkable
class PriceOracle(Protocol):
    async def fetch_price(self, token: TokenDescriptor) -> float:
        ...


@runtime_checkable
class QuoteProvider(Protocol):
    async def get_quote(self, input_token: TokenDescriptor, output_token: TokenDescriptor,
                        amount: int, exact_out: bool = False, slippage_bps: int = 200) -> Quote:
        ...

    async def build_swap_transaction(self, quote: Quote, wallet_address: str) -> str:
        ...


@runtime_checkable
class BundleRelay(Protocol):
    tip_accounts: List[str]

    async def send_bundle(self, transactions: List[str]) -> str:
        ...

    async def get_bundle_status(self, bundle_id: str) -> BundleStatus:
        ...

    async def get_tip_floor(self) -> Optional[int]:
        ...


@runtime_checkable
class ChainReader(Protocol):
    async def get_balances(self, wallet_address: str, pair: TokenPair) -> Tuple[float, float]:
        ...

    async def get_latest_blockhash(self) -> str:
        ...

    async def get_token_changes(self, signature: str, wallet_address: str,
                                pair: TokenPair) -> Optional[Tuple[float, float]]:
        """Realized (base, quote) UI-unit deltas of a landed transaction, if readable."""
        ...


@runtime_checkable
class BundleSigner(Protocol):
    def sign_bundle(self, request: BundleRequest) -> List[SignedTransaction]:
        """Return [swap, tip, accounting] signed against request.blockhash."""
        ...
