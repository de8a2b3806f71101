"""Market data: ticker polling, price cache and balances."""

from triarb.market.balances import BalanceTracker
from triarb.market.poller import TickerPoller
from triarb.market.prices import PriceCache


__all__ = [
    "BalanceTracker",
    "PriceCache",
    "TickerPoller",
]
