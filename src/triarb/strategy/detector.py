"""
Triangle yield detection.

With pairs A_B, B_C and A_C, start with one unit of A:

    clockwise:          A -> B (buy A_B) -> C (buy B_C) -> A (sell A_C)
    counter-clockwise:  A -> C (buy A_C) -> B (sell B_C) -> A (sell A_B)

Buying pays the ask, selling receives the bid. A yield above 1 means
the cycle ends with more A than it started with, before fees.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from triarb.config.constants import DEFAULT_PROFIT_THRESHOLD
from triarb.core.context import ExecutionContext
from triarb.core.types import Direction, PriceQuote
from triarb.market.prices import PriceCache
from triarb.telemetry.metrics import MetricsCollector


logger = logging.getLogger(__name__)


TriggerCallback = Callable[[Direction], None]


# =============================================================================
# Yield Functions
# =============================================================================


def clockwise_yield(p1: PriceQuote, p2: PriceQuote, p3: PriceQuote) -> float:
    """
    Yield of A -> B -> C -> A.

    Args:
        p1: Quote for A_B.
        p2: Quote for B_C.
        p3: Quote for A_C.
    """
    return (1.0 / p1.lowest_ask) / p2.lowest_ask * p3.highest_bid


def counter_clockwise_yield(p1: PriceQuote, p2: PriceQuote, p3: PriceQuote) -> float:
    """
    Yield of A -> C -> B -> A.

    Args:
        p1: Quote for A_B.
        p2: Quote for B_C.
        p3: Quote for A_C.
    """
    return (1.0 / p3.lowest_ask) * p2.highest_bid * p1.highest_bid


def _has_valid_prices(*quotes: PriceQuote) -> bool:
    return all(q.highest_bid > 0 and q.lowest_ask > 0 for q in quotes)


# =============================================================================
# Detector
# =============================================================================


@dataclass
class DetectorStats:
    """Statistics for yield evaluation."""

    evaluations: int = 0
    skipped_busy: int = 0
    skipped_incomplete: int = 0
    triggers: int = 0
    best_clockwise: float = 0.0
    best_counter_clockwise: float = 0.0


class ArbitrageDetector:
    """
    Decides when a triangle should be traded.

    Runs synchronously on every price change and after every finished
    triangle. At most one direction fires per evaluation, clockwise
    first, and nothing fires while a trade is in progress.
    """

    def __init__(
        self,
        prices: PriceCache,
        context: ExecutionContext,
        threshold: float = DEFAULT_PROFIT_THRESHOLD,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """
        Initialize detector.

        Args:
            prices: Cache of the three quotes.
            context: Trade state; evaluation is a no-op while busy.
            threshold: Yield a direction must strictly exceed.
            metrics: Optional metrics sink.
        """
        self._prices = prices
        self._context = context
        self._threshold = threshold
        self._metrics = metrics
        self._callbacks: list[TriggerCallback] = []
        self._stats = DetectorStats()

    def register_callback(self, callback: TriggerCallback) -> None:
        """Register callback invoked with the direction to trade."""
        self._callbacks.append(callback)

    def evaluate(self) -> Direction | None:
        """
        Check both directions against the threshold.

        Returns:
            The direction that was triggered, or None.
        """
        if self._context.in_progress:
            self._stats.skipped_busy += 1
            return None

        quotes = self._prices.get_triangle()
        if quotes is None or not _has_valid_prices(*quotes):
            self._stats.skipped_incomplete += 1
            return None

        self._stats.evaluations += 1
        cw = clockwise_yield(*quotes)
        ccw = counter_clockwise_yield(*quotes)
        self._stats.best_clockwise = max(self._stats.best_clockwise, cw)
        self._stats.best_counter_clockwise = max(self._stats.best_counter_clockwise, ccw)

        logger.debug(f"Yields: clockwise={cw:.6f} counter-clockwise={ccw:.6f}")

        if cw > self._threshold:
            return self._trigger(Direction.CLOCKWISE, cw)
        if ccw > self._threshold:
            return self._trigger(Direction.COUNTER_CLOCKWISE, ccw)
        return None

    def _trigger(self, direction: Direction, cycle_yield: float) -> Direction:
        self._stats.triggers += 1
        if self._metrics:
            self._metrics.record_trigger(direction, cycle_yield)

        logger.info(f"Opportunity {direction.value}: yield {cycle_yield:.6f} > {self._threshold}")

        for callback in self._callbacks:
            try:
                callback(direction)
            except Exception:
                logger.exception("Trigger callback failed")
        return direction

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def stats(self) -> DetectorStats:
        return self._stats
