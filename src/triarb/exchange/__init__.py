"""Exchange access: HTTP client, paper exchange, scheduler and rate limits."""

from triarb.exchange.client import (
    ExchangeAPIError,
    ExchangeError,
    PoloniexClient,
    RequestSigner,
)
from triarb.exchange.models import (
    CancelOrderResponse,
    OpenOrder,
    PlaceOrderResponse,
    ResultingTrade,
    TickerEntry,
)
from triarb.exchange.paper import PaperExchange
from triarb.exchange.rate_limiter import RateClass, RateLimiter
from triarb.exchange.scheduler import (
    LaneConfig,
    RateLimitedScheduler,
    SchedulerClosedError,
)


__all__ = [
    "CancelOrderResponse",
    "ExchangeAPIError",
    "ExchangeError",
    "LaneConfig",
    "OpenOrder",
    "PaperExchange",
    "PlaceOrderResponse",
    "PoloniexClient",
    "RateClass",
    "RateLimitedScheduler",
    "RateLimiter",
    "RequestSigner",
    "ResultingTrade",
    "SchedulerClosedError",
    "TickerEntry",
]
