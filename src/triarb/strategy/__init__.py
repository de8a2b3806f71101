"""Strategy module for triangle yield detection."""

from triarb.strategy.detector import (
    ArbitrageDetector,
    DetectorStats,
    clockwise_yield,
    counter_clockwise_yield,
)


__all__ = [
    "ArbitrageDetector",
    "DetectorStats",
    "clockwise_yield",
    "counter_clockwise_yield",
]
