"""Test helpers for pulse-trader test suite"""

from tests.helpers.fakes import (
    FakeChain,
    FakeFeed,
    FakeOracle,
    FakeQuotes,
    FakeRelay,
    FakeSigner,
    StaticSettings,
    make_context,
    make_settings,
)

__all__ = [
    "FakeChain",
    "FakeFeed",
    "FakeOracle",
    "FakeQuotes",
    "FakeRelay",
    "FakeSigner",
    "StaticSettings",
    "make_context",
    "make_settings",
]
