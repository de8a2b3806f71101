"""
Call-rate throttling for exchange requests.

A rate class admits at most `limit` calls in any `interval`-second
window, shared by every caller of that class regardless of account.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field

from triarb.config.constants import (
    DEFAULT_RATE_CLASS,
    DEFAULT_RATE_LIMIT_CALLS,
    DEFAULT_RATE_LIMIT_INTERVAL,
)


@dataclass
class RateClass:
    """
    Sliding-window limiter.

    Remembers the start time of the last `limit` calls; a new call
    waits until the oldest of them falls out of the window. Waiters
    are admitted in arrival order.
    """

    limit: int
    interval: float  # seconds
    _starts: deque[float] = field(default_factory=deque, init=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("limit must be at least 1")
        if self.interval <= 0:
            raise ValueError("interval must be positive")

    def _prune(self, now: float) -> None:
        """Drop starts that left the window."""
        cutoff = now - self.interval
        while self._starts and self._starts[0] <= cutoff:
            self._starts.popleft()

    def _wait_time(self, now: float) -> float:
        """Seconds until a slot frees up (0 if one is free)."""
        self._prune(now)
        if len(self._starts) < self.limit:
            return 0.0
        return self._starts[0] + self.interval - now

    async def acquire(self) -> None:
        """Wait for a slot and take it."""
        async with self._lock:
            while True:
                now = time.monotonic()
                wait = self._wait_time(now)
                if wait <= 0:
                    self._starts.append(now)
                    return
                await asyncio.sleep(wait)

    def try_acquire(self) -> bool:
        """
        Take a slot without waiting.

        Returns:
            True if a slot was free.
        """
        if self._lock.locked():
            return False
        now = time.monotonic()
        if self._wait_time(now) > 0:
            return False
        self._starts.append(now)
        return True

    @property
    def available(self) -> int:
        """Slots free right now."""
        self._prune(time.monotonic())
        return self.limit - len(self._starts)


class RateLimiter:
    """
    Registry of named rate classes.

    Unknown class names fall back to the default class so every call
    is throttled by something.
    """

    def __init__(
        self,
        default_limit: int = DEFAULT_RATE_LIMIT_CALLS,
        default_interval: float = DEFAULT_RATE_LIMIT_INTERVAL,
    ) -> None:
        """
        Initialize with the default class.

        Args:
            default_limit: Calls allowed per window for the default class.
            default_interval: Window length in seconds.
        """
        self._classes: dict[str, RateClass] = {
            DEFAULT_RATE_CLASS: RateClass(default_limit, default_interval),
        }

    def configure(self, name: str, limit: int, interval: float) -> RateClass:
        """Create or replace a rate class."""
        rate_class = RateClass(limit, interval)
        self._classes[name] = rate_class
        return rate_class

    def get(self, name: str) -> RateClass:
        """Get a rate class by name."""
        return self._classes.get(name) or self._classes[DEFAULT_RATE_CLASS]

    async def acquire(self, name: str = DEFAULT_RATE_CLASS) -> None:
        """Wait for a slot in the named class."""
        await self.get(name).acquire()
