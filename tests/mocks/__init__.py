"""Mock implementations for testing."""

from tests.mocks.exchange import MockExchange, make_ticker
from tests.mocks.market import (
    CLOCKWISE_QUOTES,
    COUNTER_CLOCKWISE_QUOTES,
    FLAT_QUOTES,
    quotes_to_prices,
)


__all__ = [
    "CLOCKWISE_QUOTES",
    "COUNTER_CLOCKWISE_QUOTES",
    "FLAT_QUOTES",
    "MockExchange",
    "make_ticker",
    "quotes_to_prices",
]
