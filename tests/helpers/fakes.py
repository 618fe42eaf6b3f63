"""
In-memory stand-ins for the external services.

Each fake records its calls and can be scripted to fail, so executor and
scheduler tests run without network access and without sleeping.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from core.clients import LANDED, BundleRequest, BundleStatus, Quote, SignedTransaction
from core.context import EngineContext, ExecutionConfig
from core.tokens import DEFAULT_PAIR, TokenDescriptor, TokenPair
from infra.settings import TradingSettings
from infra.state_store import JsonStateStore


def make_settings(**overrides: Any) -> TradingSettings:
    """TradingSettings with test-friendly defaults (no settle delay)."""
    values: Dict[str, Any] = {"settle_delay_seconds": 0}
    values.update(overrides)
    return TradingSettings(**values)


class StaticSettings:
    """SettingsProvider look-alike without a file."""

    def __init__(self, settings: Optional[TradingSettings] = None):
        self.settings = settings or make_settings()

    def get(self) -> TradingSettings:
        return self.settings

    def update(self, partial: Dict[str, Any]) -> TradingSettings:
        merged = self.settings.model_dump()
        merged.update(partial)
        self.settings = TradingSettings(**merged)
        return self.settings


class FakeFeed:
    def __init__(self, values: Union[int, Sequence[Any]] = 50):
        self.values = list(values) if isinstance(values, (list, tuple)) else [values]
        self.calls = 0

    async def fetch_index(self) -> int:
        value = self.values[min(self.calls, len(self.values) - 1)]
        self.calls += 1
        if isinstance(value, Exception):
            raise value
        return value


class FakeOracle:
    def __init__(self, price: Union[float, Exception] = 100.0):
        self.price = price
        self.calls = 0

    async def fetch_price(self, token: TokenDescriptor) -> float:
        self.calls += 1
        if isinstance(self.price, Exception):
            raise self.price
        return self.price


class FakeQuotes:
    """Quotes at a fixed price; the first `fail_times` calls raise."""

    def __init__(self, pair: TokenPair = DEFAULT_PAIR, price: float = 100.0, fail_times: int = 0):
        self.pair = pair
        self.price = price
        self.fail_times = fail_times
        self.quote_calls: List[Dict[str, Any]] = []
        self.swap_calls = 0

    async def get_quote(self, input_token: TokenDescriptor, output_token: TokenDescriptor,
                        amount: int, exact_out: bool = False, slippage_bps: int = 200) -> Quote:
        self.quote_calls.append({
            "input": input_token.name,
            "output": output_token.name,
            "amount": amount,
            "exact_out": exact_out,
            "slippage_bps": slippage_bps,
        })
        if len(self.quote_calls) <= self.fail_times:
            raise RuntimeError("aggregator unavailable")

        def convert(ui_amount: float, from_token: TokenDescriptor) -> float:
            if from_token == self.pair.quote:
                return ui_amount / self.price
            return ui_amount * self.price

        if exact_out:
            out_amount = amount
            in_ui = convert(output_token.from_smallest_units(amount), output_token)
            in_amount = input_token.to_smallest_units(in_ui)
        else:
            in_amount = amount
            out_ui = convert(input_token.from_smallest_units(amount), input_token)
            out_amount = output_token.to_smallest_units(out_ui)
        return Quote(
            input_mint=input_token.address,
            output_mint=output_token.address,
            in_amount=in_amount,
            out_amount=out_amount,
            exact_out=exact_out,
        )

    async def build_swap_transaction(self, quote: Quote, wallet_address: str) -> str:
        self.swap_calls += 1
        return f"swap-tx-{self.swap_calls}"


class FakeRelay:
    """
    Scripted relay.

    `statuses` is consumed one entry per poll (the last entry repeats);
    `send_errors` raise on the first N submissions.
    """

    def __init__(self, statuses: Sequence[str] = (LANDED,), send_errors: int = 0,
                 tip_floor: Optional[int] = 50_000, tip_accounts: Optional[List[str]] = None):
        self.statuses = list(statuses)
        self.send_errors = send_errors
        self.tip_floor = tip_floor
        self.tip_accounts = tip_accounts if tip_accounts is not None else ["tip-a", "tip-b"]
        self.sent: List[List[str]] = []
        self.polls = 0

    async def send_bundle(self, transactions: List[str]) -> str:
        self.sent.append(list(transactions))
        if len(self.sent) <= self.send_errors:
            raise RuntimeError("relay rejected bundle")
        return f"bundle-{len(self.sent)}"

    async def get_bundle_status(self, bundle_id: str) -> BundleStatus:
        status = self.statuses[min(self.polls, len(self.statuses) - 1)]
        self.polls += 1
        return BundleStatus(bundle_id=bundle_id, status=status)

    async def get_tip_floor(self) -> Optional[int]:
        return self.tip_floor


class FakeChain:
    def __init__(self, base: float = 10.0, quote: float = 1000.0,
                 token_changes: Optional[Tuple[float, float]] = None,
                 balance_error: Optional[Exception] = None):
        self.base = base
        self.quote = quote
        self.token_changes = token_changes
        self.balance_error = balance_error
        self.blockhashes = 0
        self.balance_reads = 0

    async def get_balances(self, wallet_address: str, pair: TokenPair) -> Tuple[float, float]:
        self.balance_reads += 1
        if self.balance_error is not None:
            raise self.balance_error
        return self.base, self.quote

    async def get_latest_blockhash(self) -> str:
        self.blockhashes += 1
        return f"blockhash-{self.blockhashes}"

    async def get_token_changes(self, signature: str, wallet_address: str,
                                pair: TokenPair) -> Optional[Tuple[float, float]]:
        return self.token_changes


class FakeSigner:
    def __init__(self, count: int = 3):
        self.count = count
        self.requests: List[BundleRequest] = []

    def sign_bundle(self, request: BundleRequest) -> List[SignedTransaction]:
        self.requests.append(request)
        n = len(self.requests)
        return [
            SignedTransaction(signature=f"sig-{n}-{i}", payload=f"payload-{n}-{i}")
            for i in range(self.count)
        ]


def make_context(tmp_path, settings: Any = None, **overrides: Any) -> EngineContext:
    """
    EngineContext wired to fakes and a JSON store under tmp_path.

    `settings` may be a TradingSettings (wrapped in StaticSettings) or a
    ready-made provider such as SettingsProvider.
    """
    if settings is None or isinstance(settings, TradingSettings):
        settings = StaticSettings(settings)
    kwargs: Dict[str, Any] = dict(
        pair=DEFAULT_PAIR,
        wallet_address="wallet-1",
        sentiment_feed=FakeFeed(50),
        price_oracle=FakeOracle(100.0),
        quotes=FakeQuotes(DEFAULT_PAIR, 100.0),
        relay=FakeRelay(),
        chain=FakeChain(),
        settings=settings,
        store=JsonStateStore(state_file=str(tmp_path / "state.json")),
        signer=FakeSigner(),
        execution=ExecutionConfig(
            max_attempts=3,
            retry_delay_seconds=0,
            bundle_attempts=2,
            bundle_retry_delay_seconds=0,
            status_poll_interval_seconds=0,
            status_poll_attempts=3,
        ),
    )
    kwargs.update(overrides)
    return EngineContext(**kwargs)
