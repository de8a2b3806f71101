"""
In-memory trading metrics.

Latency windows for ticker fetches and whole triangles, free-form
counters, and per-direction trade statistics. The engine logs
`status_line()` on a timer and `to_dict()` once at exit.
"""

import time
from collections import deque
from dataclasses import asdict, dataclass

from triarb.core.types import Direction, TriangleResult
from triarb.utils.time import format_duration_us


@dataclass(slots=True, frozen=True)
class LatencyStats:
    """Summary of one latency window, in microseconds."""

    min_us: int = 0
    max_us: int = 0
    avg_us: float = 0.0
    p50_us: int = 0
    p95_us: int = 0
    p99_us: int = 0
    count: int = 0


def _summarize(samples: deque[int]) -> LatencyStats:
    if not samples:
        return LatencyStats()

    ordered = sorted(samples)
    last = len(ordered) - 1

    def rank(q: float) -> int:
        return ordered[min(last, int(q * len(ordered)))]

    return LatencyStats(
        min_us=ordered[0],
        max_us=ordered[-1],
        avg_us=sum(ordered) / len(ordered),
        p50_us=rank(0.50),
        p95_us=rank(0.95),
        p99_us=rank(0.99),
        count=len(ordered),
    )


@dataclass
class TradingStats:
    """What the detector fired and how the triangles ended."""

    triggers_clockwise: int = 0
    triggers_counter_clockwise: int = 0
    best_yield: float = 0.0
    triangles_successful: int = 0
    triangles_failed: int = 0
    retry_rounds: int = 0
    unresolved_orders: int = 0

    @property
    def triangles_total(self) -> int:
        return self.triangles_successful + self.triangles_failed

    @property
    def success_rate(self) -> float:
        if not self.triangles_total:
            return 0.0
        return self.triangles_successful / self.triangles_total


class MetricsCollector:
    """
    Metrics sink shared by the poller, detector and executor.

    Each latency name keeps its last `latency_window_size` samples.
    """

    def __init__(self, latency_window_size: int = 1000) -> None:
        self._window_size = latency_window_size
        self._latencies: dict[str, deque[int]] = {}
        self._counters: dict[str, int] = {}
        self._trading = TradingStats()
        self._started = time.monotonic()

    # =========================================================================
    # Recording
    # =========================================================================

    def record_latency(self, name: str, latency_us: int) -> None:
        """
        Add a sample to a latency window.

        Args:
            name: Window name, e.g. "ticker_fetch" or "triangle".
            latency_us: Elapsed time in microseconds.
        """
        window = self._latencies.get(name)
        if window is None:
            window = self._latencies[name] = deque(maxlen=self._window_size)
        window.append(latency_us)

    def increment_counter(self, name: str, value: int = 1) -> None:
        self._counters[name] = self.get_counter(name) + value

    def get_counter(self, name: str) -> int:
        return self._counters.get(name, 0)

    def record_trigger(self, direction: Direction, cycle_yield: float) -> None:
        """Count a detector trigger and track the best yield seen."""
        if direction is Direction.CLOCKWISE:
            self._trading.triggers_clockwise += 1
        else:
            self._trading.triggers_counter_clockwise += 1
        self._trading.best_yield = max(self._trading.best_yield, cycle_yield)

    def record_triangle(self, result: TriangleResult) -> None:
        """Count a finalized triangle."""
        stats = self._trading
        if result.is_success:
            stats.triangles_successful += 1
        else:
            stats.triangles_failed += 1

        stats.retry_rounds += result.retry_rounds
        stats.unresolved_orders += len(result.unresolved_order_ids)

        if result.duration_us > 0:
            self.record_latency("triangle", result.duration_us)

    # =========================================================================
    # Reading
    # =========================================================================

    def get_latency_stats(self, name: str) -> LatencyStats:
        """Summary of one window; all zeros if nothing was recorded."""
        return _summarize(self._latencies.get(name, deque()))

    def get_all_latency_stats(self) -> dict[str, LatencyStats]:
        return {name: _summarize(window) for name, window in self._latencies.items()}

    @property
    def trading_stats(self) -> TradingStats:
        return self._trading

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started

    def status_line(self) -> str:
        """One-line summary for periodic logging."""
        t = self._trading
        ticker_p50 = self.get_latency_stats("ticker_fetch").p50_us
        return (
            f"uptime={self.uptime_seconds:.0f}s "
            f"tickers={self.get_counter('ticker_fetches')} "
            f"ticker_errors={self.get_counter('ticker_errors')} "
            f"ticker_p50={format_duration_us(ticker_p50)} "
            f"triggers={t.triggers_clockwise}cw/{t.triggers_counter_clockwise}ccw "
            f"best_yield={t.best_yield:.5f} "
            f"triangles={t.triangles_successful}ok/{t.triangles_failed}fail "
            f"retries={t.retry_rounds}"
        )

    def to_dict(self) -> dict[str, object]:
        """Everything collected, for the shutdown journal entry."""
        trading: dict[str, object] = asdict(self._trading)
        trading["success_rate"] = self._trading.success_rate
        return {
            "uptime_seconds": self.uptime_seconds,
            "counters": dict(self._counters),
            "latencies": {
                name: asdict(stats) for name, stats in self.get_all_latency_stats().items()
            },
            "trading": trading,
        }

    def reset(self) -> None:
        self._latencies.clear()
        self._counters.clear()
        self._trading = TradingStats()
        self._started = time.monotonic()
