"""
Pydantic models for Poloniex API responses.

The exchange sends numbers as strings; the models coerce them to
floats so the rest of the code never parses prices itself.
"""

from pydantic import BaseModel, Field, field_validator


class TickerEntry(BaseModel):
    """One pair from returnTicker."""

    highest_bid: float = Field(alias="highestBid")
    lowest_ask: float = Field(alias="lowestAsk")
    last: float | None = None
    is_frozen: bool = Field(default=False, alias="isFrozen")

    model_config = {"populate_by_name": True}

    @field_validator("is_frozen", mode="before")
    @classmethod
    def parse_frozen(cls, v: object) -> bool:
        """Poloniex sends "0"/"1"."""
        if isinstance(v, str):
            return v not in ("", "0")
        return bool(v)


class ResultingTrade(BaseModel):
    """A fill reported at order placement."""

    amount: float
    rate: float | None = None
    total: float | None = None
    trade_id: str | None = Field(default=None, alias="tradeID")
    type: str | None = None

    model_config = {"populate_by_name": True}

    @field_validator("trade_id", mode="before")
    @classmethod
    def stringify_id(cls, v: object) -> str | None:
        return None if v is None else str(v)


class PlaceOrderResponse(BaseModel):
    """Response to buy/sell."""

    order_number: str = Field(alias="orderNumber")
    resulting_trades: list[ResultingTrade] = Field(default_factory=list, alias="resultingTrades")

    model_config = {"populate_by_name": True}

    @field_validator("order_number", mode="before")
    @classmethod
    def stringify_order_number(cls, v: object) -> str:
        return str(v)

    @property
    def filled_amount(self) -> float:
        """Sum of amounts filled at placement."""
        return sum(t.amount for t in self.resulting_trades)


class CancelOrderResponse(BaseModel):
    """Response to cancelOrder."""

    success: bool
    message: str = ""

    @field_validator("success", mode="before")
    @classmethod
    def parse_success(cls, v: object) -> bool:
        """Poloniex answers success=1 on cancel."""
        if isinstance(v, str):
            return v.strip() == "1"
        return v == 1 or v is True


class OpenOrder(BaseModel):
    """One resting order from returnOpenOrders."""

    order_number: str = Field(alias="orderNumber")
    type: str = ""
    rate: float | None = None
    amount: float | None = None
    total: float | None = None

    model_config = {"populate_by_name": True}

    @field_validator("order_number", mode="before")
    @classmethod
    def stringify_order_number(cls, v: object) -> str:
        return str(v)
