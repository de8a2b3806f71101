"""Telemetry module for logging, the trade journal, alerts and metrics."""

from triarb.telemetry.alerts import OperatorAlerter
from triarb.telemetry.journal import TradeJournal
from triarb.telemetry.logger import AsyncLogger, setup_logging
from triarb.telemetry.metrics import MetricsCollector


__all__ = [
    "AsyncLogger",
    "MetricsCollector",
    "OperatorAlerter",
    "TradeJournal",
    "setup_logging",
]
