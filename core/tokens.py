"""
Token descriptors for the traded pair.

One generic ledger/order book serves every pair; the pair is chosen once from
config/app.yaml and passed around as a TokenPair.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class TokenDescriptor:
    """Name, on-chain decimals and mint address of a token."""
    name: str
    decimals: int
    address: str

    def to_smallest_units(self, amount: float) -> int:
        """Convert a UI amount to integer base units (floored)."""
        return int(math.floor(amount * (10 ** self.decimals)))

    def from_smallest_units(self, raw: int) -> float:
        return float(raw) / (10 ** self.decimals)

    @classmethod
    def from_config(cls, raw: Dict[str, Any]) -> "TokenDescriptor":
        return cls(
            name=str(raw["name"]).upper(),
            decimals=int(raw["decimals"]),
            address=str(raw["address"]),
        )


@dataclass(frozen=True)
class TokenPair:
    base: TokenDescriptor
    quote: TokenDescriptor

    @property
    def symbol(self) -> str:
        return f"{self.base.name}/{self.quote.name}"

    @classmethod
    def from_config(cls, raw: Dict[str, Any]) -> "TokenPair":
        return cls(
            base=TokenDescriptor.from_config(raw["base"]),
            quote=TokenDescriptor.from_config(raw["quote"]),
        )


SOL = TokenDescriptor(name="SOL", decimals=9, address="So11111111111111111111111111111111111111112")
USDC = TokenDescriptor(name="USDC", decimals=6, address="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v")

DEFAULT_PAIR = TokenPair(base=SOL, quote=USDC)
