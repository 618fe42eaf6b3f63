"""Cooperative cancellation shared by the scheduler and the swap executor."""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class OperationCancelled(Exception):
    """Raised at a checkpoint after the token was cancelled."""


class CancellationToken:
    """
    Cancellation flag checked between awaits.

    Cancelling never interrupts an in-flight request; it only stops the next
    step (retry, new leg, next cycle) from starting and wakes sleepers early.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.info(f"Cancellation requested: {reason}")
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason or "cancelled")

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if woken by cancellation."""
        if self._event.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False
