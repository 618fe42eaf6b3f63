"""Shared exception types for core trading logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class StartupError(RuntimeError):
    """Unrecoverable startup condition (no RPC, missing secrets, lock held)."""


class SwapQuoteError(RuntimeError):
    """Aggregator could not produce a usable quote or swap transaction."""


class BundleSubmissionError(RuntimeError):
    """Relay rejected the bundle or it never landed."""

    def __init__(self, message: str, bundle_id: Optional[str] = None):
        super().__init__(message)
        self.bundle_id = bundle_id
