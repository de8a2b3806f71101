"""
Type definitions for the trader.

Dataclasses, enums and Protocols shared by every component. Value
types are frozen: a retry builds a new leg or order instead of
mutating the old one.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Protocol


if TYPE_CHECKING:
    from triarb.exchange.models import (
        CancelOrderResponse,
        OpenOrder,
        PlaceOrderResponse,
        TickerEntry,
    )


# =============================================================================
# Enums
# =============================================================================


class OrderSide(str, Enum):
    """Order side enumeration."""

    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class Direction(str, Enum):
    """Traversal direction around the triangle."""

    CLOCKWISE = "clockwise"
    COUNTER_CLOCKWISE = "counter-clockwise"


class ExecutionState(Enum):
    """States of a triangle run."""

    SIZING = auto()
    PLACING = auto()
    IMMEDIATE_CHECK = auto()
    POLLING_FILL = auto()
    CANCEL_RETRY_LOOP = auto()
    FINALIZED = auto()


class TriangleOutcome(str, Enum):
    """Terminal outcome of a triangle."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class ShutdownReason(str, Enum):
    """Why the engine stopped."""

    SIGNAL = "signal"
    PLACEMENT_FAILED = "placement_failed"
    TRADE_LIMIT = "trade_limit"


# =============================================================================
# Market Data Types
# =============================================================================


@dataclass(slots=True, frozen=True)
class PriceQuote:
    """
    Top of book for one pair.

    A pair without a quote is simply absent from the cache, so a
    quote always carries both sides.
    """

    pair: str
    highest_bid: float
    lowest_ask: float


@dataclass(slots=True, frozen=True)
class Balance:
    """Available amount of one asset."""

    asset: str
    available: float


@dataclass(slots=True, frozen=True)
class TrianglePairs:
    """
    The three pairs in their fixed ordering.

    first = A_B, second = B_C, third = A_C. The yield formulas and
    leg layout both depend on this ordering.
    """

    first: str
    second: str
    third: str

    @property
    def assets(self) -> tuple[str, str, str]:
        """Assets (A, B, C)."""
        a, b = self.first.split("_")
        c = self.second.split("_")[1]
        return a, b, c

    def as_tuple(self) -> tuple[str, str, str]:
        return (self.first, self.second, self.third)


# =============================================================================
# Triangle Types
# =============================================================================


@dataclass(slots=True, frozen=True)
class TradeLeg:
    """
    One buy or sell within a triangle.

    Immutable once an order is placed for it.
    """

    pair: str
    side: OrderSide
    account: str
    price: float
    amount: float

    def __repr__(self) -> str:
        return f"{self.side.value} {self.amount:.8f} {self.pair} @ {self.price:.8f} [{self.account}]"


@dataclass(slots=True, frozen=True)
class Order:
    """An order accepted by the exchange for a leg."""

    id: str
    leg: TradeLeg
    placed_at_us: int
    filled_amount: float = 0.0

    @property
    def unfilled_amount(self) -> float:
        return self.leg.amount - self.filled_amount


@dataclass(slots=True)
class Triangle:
    """Three legs forming one arbitrage cycle."""

    direction: Direction
    legs: tuple[TradeLeg, TradeLeg, TradeLeg]

    @property
    def pairs(self) -> tuple[str, ...]:
        return tuple(leg.pair for leg in self.legs)


# =============================================================================
# Execution Types
# =============================================================================


@dataclass(slots=True)
class TradeCounts:
    """Running totals updated once per finished triangle."""

    attempted: int = 0
    successful: int = 0
    unsuccessful: int = 0

    def record(self, outcome: TriangleOutcome) -> None:
        """Count a finished triangle."""
        self.attempted += 1
        if outcome is TriangleOutcome.SUCCESS:
            self.successful += 1
        else:
            self.unsuccessful += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "attempted": self.attempted,
            "successful": self.successful,
            "unsuccessful": self.unsuccessful,
        }


@dataclass(slots=True)
class TriangleResult:
    """Result of one triangle run."""

    triangle: Triangle
    outcome: TriangleOutcome
    final_state: ExecutionState
    orders: tuple[Order, ...] = ()
    retry_rounds: int = 0
    unresolved_order_ids: tuple[str, ...] = ()
    started_us: int = 0
    finished_us: int = 0
    error_message: str = ""
    history: list[ExecutionState] = field(default_factory=list)

    @property
    def is_success(self) -> bool:
        return self.outcome is TriangleOutcome.SUCCESS

    @property
    def duration_us(self) -> int:
        return self.finished_us - self.started_us


# =============================================================================
# Protocols (Interfaces)
# =============================================================================


class ExchangeClient(Protocol):
    """One set of exchange credentials (or the public endpoint)."""

    async def fetch_ticker(self) -> Mapping[str, "TickerEntry"]:
        """Get best bid/ask for every pair."""
        ...

    async def place_order(
        self,
        pair: str,
        side: OrderSide,
        price: float,
        amount: float,
    ) -> "PlaceOrderResponse":
        """Place a limit order."""
        ...

    async def cancel_order(self, order_id: str) -> "CancelOrderResponse":
        """Cancel an open order."""
        ...

    async def list_open_orders(self) -> Mapping[str, list["OpenOrder"]]:
        """Get open orders for every pair."""
        ...

    async def fetch_balances(self) -> Mapping[str, float]:
        """Get available balance per asset."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...
