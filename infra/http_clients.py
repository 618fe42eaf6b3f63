"""
HTTP clients for the external services the engine consumes.

Each client owns an httpx.AsyncClient (opened lazily, or via ``async with``)
and implements one of the ports in core/clients.py. Transport-level failures
are retried with tenacity; anything still failing is raised to the caller,
which decides whether it is fatal (price/balances) or a classified swap
failure (quote/bundle).
"""

import asyncio
import logging
import random
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from core.clients import PENDING, TIMED_OUT, BundleStatus, Quote
from core.exceptions import BundleSubmissionError, CriticalDataUnavailable, SwapQuoteError
from core.tokens import SOL, TokenDescriptor, TokenPair

logger = logging.getLogger(__name__)

DEFAULT_SENTIMENT_URL = "https://cfgi.io/solana-fear-greed-index/15m"
DEFAULT_PRICE_URL = "https://api.jup.ag/price/v2"
DEFAULT_QUOTE_URL = "https://quote-api.jup.ag/v6"
DEFAULT_RELAY_URL = "https://mainnet.block-engine.jito.wtf/api/v1/bundles"
DEFAULT_TIP_FLOOR_URL = "https://bundles.jito.wtf/api/v1/bundles/tip_floor"
DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"

DEFAULT_INDEX_VALUE = 50
LAMPORTS_PER_SOL = 1_000_000_000

# Published relay tip accounts
TIP_ACCOUNTS = [
    "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5",
    "HFqU5x63VTqvQss8hp11i4wVV8bD44PvwucfZ2bU7gRe",
    "Cw8CFyM9FkoMi7K7Crf6HNQqf4uEMzpKw6QNghXLvLkY",
    "ADaUMid9yfUytqMBgopwjb2DTLSokTSzL1zt6iGPaS49",
    "DfXygSm4jCyNCybVYYK6DwvWqjKee8pbDmJGcLWNDXjh",
    "ADuUkR4vqLUMWXxW9gh6D6L8pMSawimctcNZ5pGwDcEt",
    "DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL",
    "3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT",
]

_SERIES_PATTERN = re.compile(r"series:\s*\[(\d+)\]")


class RateLimitError(Exception):
    """HTTP 429 from an upstream API."""
    pass


class BaseAPIClient:
    """Base async client with retry logic."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30,
        max_retries: int = 3,
        initial_wait: float = 1.0,
        max_wait: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_wait = initial_wait
        self.max_wait = max_wait
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={
                    "User-Agent": "PulseTrader/1.0",
                    "Accept": "application/json",
                },
                transport=self._transport,
            )
        return self.client

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=(
                retry_if_exception_type(httpx.TransportError) |
                retry_if_exception_type(RateLimitError)
            ),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.initial_wait, min=self.initial_wait, max=self.max_wait),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a request, retrying transport errors and 429s; raises on any other non-2xx."""
        client = self._ensure_client()
        async for attempt in self._retrying():
            with attempt:
                response = await client.request(method=method, url=url, params=params, json=data)
                if response.status_code == 429:
                    raise RateLimitError(f"Rate limited by {url}")
                response.raise_for_status()
        return response

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = await self._request("GET", url, params=params)
        return response.json()

    async def post_json(self, url: str, data: Dict[str, Any]) -> Any:
        response = await self._request("POST", url, data=data)
        return response.json()


# ----------------------------------------------------------------------
# Sentiment
# ----------------------------------------------------------------------

class FearGreedFeed(BaseAPIClient):
    """
    Fear & Greed index scraped from the index provider's chart page.

    Never raises: a failed read returns the last good value, or the neutral
    default before any read has succeeded.
    """

    def __init__(self, url: str = DEFAULT_SENTIMENT_URL, default: int = DEFAULT_INDEX_VALUE, **kwargs):
        super().__init__(url, **kwargs)
        self.default = default
        self.last_value: Optional[int] = None

    @staticmethod
    def parse_index(html: str) -> int:
        match = _SERIES_PATTERN.search(html)
        if not match:
            raise ValueError("Could not parse series data from page")
        value = int(match.group(1))
        if not 0 <= value <= 100:
            raise ValueError(f"Invalid index value: {value}")
        return value

    async def fetch_index(self) -> int:
        try:
            response = await self._request("GET", self.base_url)
            value = self.parse_index(response.text)
        except (httpx.HTTPError, RateLimitError, ValueError) as e:
            fallback = self.last_value if self.last_value is not None else self.default
            logger.warning(f"Sentiment index unavailable ({e}); using {fallback}")
            return fallback

        self.last_value = value
        logger.debug(f"Sentiment index: {value}")
        return value


# ----------------------------------------------------------------------
# Price
# ----------------------------------------------------------------------

class JupiterPriceOracle(BaseAPIClient):
    """Spot USD price per token mint. Raises CriticalDataUnavailable when exhausted."""

    def __init__(self, url: str = DEFAULT_PRICE_URL, attempts: int = 5, retry_delay_seconds: float = 5.0,
                 **kwargs):
        # Attempts are counted here, not per request
        kwargs.setdefault("max_retries", 1)
        super().__init__(url, **kwargs)
        self.attempts = attempts
        self.retry_delay_seconds = retry_delay_seconds

    async def _read_price(self, token: TokenDescriptor) -> float:
        payload = await self.get_json(self.base_url, params={"ids": token.address})
        try:
            price = float(payload["data"][token.address]["price"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid price response for {token.name}") from e
        if not price or price <= 0:
            raise ValueError(f"Invalid price value for {token.name}: {price}")
        return round(price, 2)

    async def fetch_price(self, token: TokenDescriptor) -> float:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((httpx.HTTPError, RateLimitError, ValueError)),
                stop=stop_after_attempt(self.attempts),
                wait=wait_fixed(self.retry_delay_seconds),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    price = await self._read_price(token)
        except (httpx.HTTPError, RateLimitError, ValueError) as e:
            logger.error(f"Failed to fetch {token.name} price after {self.attempts} attempts: {e}")
            raise CriticalDataUnavailable("price", e) from e

        logger.debug(f"{token.name} price: {price}")
        return price


# ----------------------------------------------------------------------
# Aggregator
# ----------------------------------------------------------------------

class JupiterQuoteProvider(BaseAPIClient):
    """Swap quotes and unsigned swap transactions from the aggregator."""

    def __init__(self, url: str = DEFAULT_QUOTE_URL, **kwargs):
        super().__init__(url, **kwargs)

    async def get_quote(self, input_token: TokenDescriptor, output_token: TokenDescriptor,
                        amount: int, exact_out: bool = False, slippage_bps: int = 200) -> Quote:
        params = {
            "inputMint": input_token.address,
            "outputMint": output_token.address,
            "amount": str(int(amount)),
            "slippageBps": str(int(slippage_bps)),
            "swapMode": "ExactOut" if exact_out else "ExactIn",
        }
        try:
            payload = await self.get_json(f"{self.base_url}/quote", params=params)
            quote = Quote(
                input_mint=payload["inputMint"],
                output_mint=payload["outputMint"],
                in_amount=int(payload["inAmount"]),
                out_amount=int(payload["outAmount"]),
                exact_out=exact_out,
                raw=payload,
            )
        except (httpx.HTTPError, RateLimitError) as e:
            raise SwapQuoteError(f"Quote request failed: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise SwapQuoteError(f"Malformed quote response: {e}") from e

        logger.debug(
            f"Quote {input_token.name}->{output_token.name}: in={quote.in_amount} out={quote.out_amount}"
        )
        return quote

    async def build_swap_transaction(self, quote: Quote, wallet_address: str) -> str:
        body = {
            "quoteResponse": quote.raw,
            "userPublicKey": wallet_address,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        try:
            payload = await self.post_json(f"{self.base_url}/swap", body)
        except (httpx.HTTPError, RateLimitError) as e:
            raise SwapQuoteError(f"Swap transaction request failed: {e}") from e

        transaction = payload.get("swapTransaction") if isinstance(payload, dict) else None
        if not transaction:
            raise SwapQuoteError("Swap response carried no transaction")
        return transaction


# ----------------------------------------------------------------------
# Relay
# ----------------------------------------------------------------------

class JitoRelay(BaseAPIClient):
    """
    Bundle relay (JSON-RPC).

    Submission does its own 429 handling: exponential backoff capped at
    max_backoff_seconds plus up to 30% jitter. A 400 is a rejected bundle and
    is never retried. Status polling is left to the executor.
    """

    def __init__(
        self,
        url: str = DEFAULT_RELAY_URL,
        tip_floor_url: str = DEFAULT_TIP_FLOOR_URL,
        tip_accounts: Optional[List[str]] = None,
        submit_max_retries: int = 5,
        base_backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 5.0,
        tip_floor_timeout_seconds: float = 21.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        **kwargs,
    ):
        super().__init__(url, **kwargs)
        self.tip_floor_url = tip_floor_url
        self.tip_accounts = list(tip_accounts or TIP_ACCOUNTS)
        self.submit_max_retries = submit_max_retries
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.tip_floor_timeout_seconds = tip_floor_timeout_seconds
        self._sleep = sleep
        self._rng = rng or random.Random()

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retry `attempt` (0-based) after a 429."""
        wait = min(self.base_backoff_seconds * (2 ** attempt), self.max_backoff_seconds)
        return wait + self._rng.random() * 0.3 * wait

    @staticmethod
    def _rpc(method: str, params: List[Any]) -> Dict[str, Any]:
        return {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}

    async def send_bundle(self, transactions: List[str]) -> str:
        client = self._ensure_client()
        body = self._rpc("sendBundle", [transactions, {"encoding": "base64"}])

        response = None
        for attempt in range(self.submit_max_retries + 1):
            try:
                response = await client.post(self.base_url, json=body)
            except httpx.TransportError as e:
                logger.warning(f"Bundle submission attempt {attempt + 1} failed: {e}")
                if attempt == self.submit_max_retries:
                    raise BundleSubmissionError(f"Relay unreachable: {e}") from e
                continue

            if response.is_success:
                break
            if response.status_code == 400:
                raise BundleSubmissionError(f"Bad Request: {response.text}")
            if response.status_code != 429:
                raise BundleSubmissionError(f"Unexpected relay status {response.status_code}")
            if attempt == self.submit_max_retries:
                raise BundleSubmissionError(f"Still rate limited after {attempt + 1} attempts")

            delay = self.backoff_seconds(attempt)
            logger.warning(f"Relay rate limited; retrying in {delay:.2f}s")
            await self._sleep(delay)

        try:
            payload = response.json()
        except ValueError as e:
            raise BundleSubmissionError("Failed to parse relay response") from e
        if payload.get("error"):
            raise BundleSubmissionError(f"Relay error: {payload['error'].get('message')}")
        bundle_id = payload.get("result")
        if not bundle_id:
            raise BundleSubmissionError("No result in relay response")

        logger.info(f"Bundle submitted: {bundle_id}")
        return bundle_id

    async def get_bundle_status(self, bundle_id: str) -> BundleStatus:
        try:
            payload = await self.post_json(self.base_url, self._rpc("getInflightBundleStatuses", [[bundle_id]]))
        except (httpx.HTTPError, RateLimitError) as e:
            raise BundleSubmissionError(f"Status request failed: {e}", bundle_id) from e

        if payload.get("error"):
            raise BundleSubmissionError(f"Relay error: {payload['error'].get('message')}", bundle_id)

        values = (payload.get("result") or {}).get("value") or []
        if not values:
            # Not yet known to the relay
            return BundleStatus(bundle_id=bundle_id, status=PENDING)
        entry = values[0]
        return BundleStatus(
            bundle_id=bundle_id,
            status=entry.get("status") or TIMED_OUT,
            slot=entry.get("landed_slot"),
        )

    async def get_tip_floor(self) -> Optional[int]:
        """Landed-tip 50th percentile EMA in lamports, or None when unreadable."""
        client = self._ensure_client()
        try:
            response = await client.get(self.tip_floor_url, timeout=self.tip_floor_timeout_seconds)
            response.raise_for_status()
            payload = response.json()
            entry = payload[0] if isinstance(payload, list) else payload
            ema = entry["ema_landed_tips_50th_percentile"]
            if ema is None:
                raise ValueError("50th percentile is null")
            return int(float(ema) * LAMPORTS_PER_SOL)
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning(f"Tip floor unavailable: {e}")
            return None


# ----------------------------------------------------------------------
# Chain
# ----------------------------------------------------------------------

class SolanaRpcReader(BaseAPIClient):
    """Balance, blockhash and transaction reads over Solana JSON-RPC."""

    def __init__(self, url: str = DEFAULT_RPC_URL, commitment: str = "confirmed", **kwargs):
        super().__init__(url, **kwargs)
        self.commitment = commitment

    async def _call(self, method: str, params: List[Any]) -> Any:
        payload = await self.post_json(
            self.base_url, {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        )
        if payload.get("error"):
            raise RuntimeError(f"RPC {method} error: {payload['error'].get('message')}")
        return payload.get("result")

    async def get_token_balance(self, wallet_address: str, token: TokenDescriptor) -> float:
        if token.address == SOL.address:
            result = await self._call("getBalance", [wallet_address, {"commitment": self.commitment}])
            return token.from_smallest_units(int(result["value"]))

        result = await self._call(
            "getTokenAccountsByOwner",
            [wallet_address, {"mint": token.address}, {"encoding": "jsonParsed", "commitment": self.commitment}],
        )
        total = 0
        for account in result.get("value", []):
            amount = account["account"]["data"]["parsed"]["info"]["tokenAmount"]["amount"]
            total += int(amount)
        return token.from_smallest_units(total)

    async def get_balances(self, wallet_address: str, pair: TokenPair) -> Tuple[float, float]:
        base, quote = await asyncio.gather(
            self.get_token_balance(wallet_address, pair.base),
            self.get_token_balance(wallet_address, pair.quote),
        )
        return base, quote

    async def get_latest_blockhash(self) -> str:
        result = await self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        return result["value"]["blockhash"]

    async def get_token_changes(self, signature: str, wallet_address: str,
                                pair: TokenPair) -> Optional[Tuple[float, float]]:
        try:
            tx = await self._call(
                "getTransaction",
                [signature, {"encoding": "jsonParsed", "commitment": self.commitment,
                             "maxSupportedTransactionVersion": 0}],
            )
        except (httpx.HTTPError, RateLimitError, RuntimeError, ValueError) as e:
            logger.warning(f"Could not read transaction {signature}: {e}")
            return None
        if not tx or not tx.get("meta"):
            return None

        meta = tx["meta"]
        changes = []
        for token in (pair.base, pair.quote):
            if token.address == SOL.address:
                changes.append(self._native_change(tx, meta, wallet_address))
            else:
                changes.append(self._token_change(meta, wallet_address, token))
        return changes[0], changes[1]

    @staticmethod
    def _native_change(tx: Dict[str, Any], meta: Dict[str, Any], wallet_address: str) -> float:
        keys = tx.get("transaction", {}).get("message", {}).get("accountKeys", [])
        for i, key in enumerate(keys):
            pubkey = key.get("pubkey") if isinstance(key, dict) else key
            if pubkey == wallet_address:
                lamports = meta["postBalances"][i] - meta["preBalances"][i]
                if i == 0:
                    # Fee payer; the network fee is not part of the swap
                    lamports += meta.get("fee", 0)
                return lamports / LAMPORTS_PER_SOL
        return 0.0

    @staticmethod
    def _token_change(meta: Dict[str, Any], wallet_address: str, token: TokenDescriptor) -> float:
        def _sum(balances: List[Dict[str, Any]]) -> int:
            return sum(
                int(b["uiTokenAmount"]["amount"])
                for b in balances or []
                if b.get("mint") == token.address and b.get("owner") == wallet_address
            )

        raw = _sum(meta.get("postTokenBalances")) - _sum(meta.get("preTokenBalances"))
        return token.from_smallest_units(raw)
