"""
Time helpers.

Wall-clock microseconds stamp journal entries, events and order
records. Elapsed time is measured on the monotonic clock by
LatencyTimer.
"""

import time


def get_timestamp_us() -> int:
    """Microseconds since the Unix epoch."""
    return time.time_ns() // 1000


class LatencyTimer:
    """
    Context manager measuring how long a block took.

    Example:
        >>> with LatencyTimer() as timer:
        ...     await scheduler.submit("ticker", fetch)
        >>> timer.latency_us
    """

    __slots__ = ("_start_ns", "latency_us")

    def __init__(self) -> None:
        self._start_ns: int = 0
        self.latency_us: int = 0

    def __enter__(self) -> "LatencyTimer":
        self._start_ns = time.perf_counter_ns()
        return self

    def __exit__(self, *args: object) -> None:
        self.latency_us = (time.perf_counter_ns() - self._start_ns) // 1000


_UNITS = ((1_000_000, "s"), (1000, "ms"))


def format_duration_us(duration_us: int) -> str:
    """
    Render a duration with the largest unit that fits.

        >>> format_duration_us(850)
        '850μs'
        >>> format_duration_us(42_300)
        '42.30ms'
        >>> format_duration_us(3_000_000)
        '3.00s'
    """
    for scale, unit in _UNITS:
        if duration_us >= scale:
            return f"{duration_us / scale:.2f}{unit}"
    return f"{duration_us}μs"
