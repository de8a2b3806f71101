"""
Execution context shared by the detector, executor and poller.

Holds the single trade-in-progress token and the running trade
counts. Only the holder of the token may run a triangle; everyone
else reads `in_progress`.
"""

import asyncio
import logging
from dataclasses import dataclass

from triarb.core.types import TradeCounts, TriangleOutcome


logger = logging.getLogger(__name__)


class TradeInProgressError(RuntimeError):
    """Raised when the token is requested while already held."""


@dataclass(slots=True, frozen=True)
class TradeToken:
    """Proof of holding the context. Released exactly once."""

    serial: int
    label: str


class ExecutionContext:
    """
    Owner of the trade-in-progress state.

    `acquire` is synchronous so a caller can take the token before
    its first suspension point. A halted context stays busy for good.
    """

    def __init__(self) -> None:
        self._holder: TradeToken | None = None
        self._serial = 0
        self._halt_reason: str | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._counts = TradeCounts()

    def acquire(self, label: str = "triangle") -> TradeToken:
        """
        Take the token.

        Raises:
            TradeInProgressError: If the token is held or the context is halted.
        """
        if self._halt_reason is not None:
            raise TradeInProgressError(f"Trading halted: {self._halt_reason}")
        if self._holder is not None:
            raise TradeInProgressError(f"Trade in progress: {self._holder.label}")

        self._serial += 1
        self._holder = TradeToken(self._serial, label)
        self._idle.clear()
        return self._holder

    def release(self, token: TradeToken) -> None:
        """Give the token back."""
        if self._holder is not token:
            raise ValueError(f"Token {token.serial} is not the current holder")

        self._holder = None
        if self._halt_reason is None:
            self._idle.set()

    def halt(self, reason: str) -> None:
        """Stop all future trading. Pollers waiting for idle stay parked."""
        if self._halt_reason is None:
            logger.warning(f"Trading halted: {reason}")
            self._halt_reason = reason
        self._idle.clear()

    def record_outcome(self, outcome: TriangleOutcome) -> TradeCounts:
        """Count a finalized triangle."""
        self._counts.record(outcome)
        return self._counts

    async def wait_idle(self) -> None:
        """Wait until no trade is in progress."""
        await self._idle.wait()

    @property
    def in_progress(self) -> bool:
        """True while a trade holds the token or trading is halted."""
        return self._holder is not None or self._halt_reason is not None

    @property
    def is_halted(self) -> bool:
        return self._halt_reason is not None

    @property
    def halt_reason(self) -> str | None:
        return self._halt_reason

    @property
    def counts(self) -> TradeCounts:
        return self._counts
