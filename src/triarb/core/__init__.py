"""Core module containing the engine, execution context, event bus and types."""

from triarb.core.context import ExecutionContext, TradeInProgressError, TradeToken
from triarb.core.event_bus import Event, EventBus, EventType
from triarb.core.types import (
    Balance,
    Direction,
    ExchangeClient,
    ExecutionState,
    Order,
    OrderSide,
    PriceQuote,
    ShutdownReason,
    TradeCounts,
    TradeLeg,
    Triangle,
    TriangleOutcome,
    TrianglePairs,
    TriangleResult,
)


__all__ = [
    "Balance",
    "Direction",
    "Event",
    "EventBus",
    "EventType",
    "ExchangeClient",
    "ExecutionContext",
    "ExecutionState",
    "Order",
    "OrderSide",
    "PriceQuote",
    "ShutdownReason",
    "TradeCounts",
    "TradeInProgressError",
    "TradeLeg",
    "TradeToken",
    "Triangle",
    "TriangleOutcome",
    "TrianglePairs",
    "TriangleResult",
]
