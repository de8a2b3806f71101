"""Utility helpers shared across the trader."""

from triarb.utils.time import LatencyTimer, format_duration_us, get_timestamp_us


__all__ = [
    "LatencyTimer",
    "format_duration_us",
    "get_timestamp_us",
]
