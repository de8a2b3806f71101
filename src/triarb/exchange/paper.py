"""
Paper exchange for dry runs.

Reads real prices from a public client and fills every order
immediately at its limit price against in-memory balances. All four
sub-accounts share one paper wallet.
"""

import asyncio
import logging
from collections.abc import Mapping

from triarb.core.types import ExchangeClient, OrderSide
from triarb.exchange.client import ExchangeAPIError
from triarb.exchange.models import (
    CancelOrderResponse,
    OpenOrder,
    PlaceOrderResponse,
    ResultingTrade,
    TickerEntry,
)


logger = logging.getLogger(__name__)


class PaperExchange:
    """
    Simulated account filling orders on placement.

    Features:
    - Live public ticker from the wrapped client
    - Balance checks on every order
    - Optional simulated latency
    """

    def __init__(
        self,
        public: ExchangeClient,
        balances: Mapping[str, float],
        fee_rate: float = 0.0,
        latency_s: float = 0.0,
    ) -> None:
        """
        Initialize paper exchange.

        Args:
            public: Client used for the ticker.
            balances: Starting balances by asset.
            fee_rate: Fee deducted from the received asset.
            latency_s: Simulated delay per private call.
        """
        self._public = public
        self._balances: dict[str, float] = dict(balances)
        self._fee_rate = fee_rate
        self._latency_s = latency_s
        self._order_id = 0

    async def _delay(self) -> None:
        if self._latency_s > 0:
            await asyncio.sleep(self._latency_s)

    async def fetch_ticker(self) -> Mapping[str, TickerEntry]:
        return await self._public.fetch_ticker()

    async def place_order(
        self,
        pair: str,
        side: OrderSide,
        price: float,
        amount: float,
    ) -> PlaceOrderResponse:
        """Fill the whole order at `price`."""
        await self._delay()
        quote, base = pair.split("_")
        cost = amount * price

        if side is OrderSide.BUY:
            spend_asset, spend, get_asset, get = quote, cost, base, amount
        else:
            spend_asset, spend, get_asset, get = base, amount, quote, cost

        available = self._balances.get(spend_asset, 0.0)
        if spend > available + 1e-12:
            raise ExchangeAPIError(
                f"Not enough {spend_asset}: need {spend:.8f}, have {available:.8f}"
            )

        self._order_id += 1
        self._balances[spend_asset] = available - spend
        self._balances[get_asset] = self._balances.get(get_asset, 0.0) + get * (1 - self._fee_rate)

        logger.info(
            f"[PAPER] {side.value} {amount:.8f} {pair} @ {price:.8f} "
            f"(order {self._order_id})"
        )
        return PlaceOrderResponse(
            order_number=str(self._order_id),
            resulting_trades=[
                ResultingTrade(amount=amount, rate=price, total=cost, type=side.value.lower())
            ],
        )

    async def cancel_order(self, order_id: str) -> CancelOrderResponse:
        # Every paper order fills on placement, so nothing is cancellable
        await self._delay()
        return CancelOrderResponse(success=False, message=f"Order {order_id} is not open")

    async def list_open_orders(self) -> Mapping[str, list[OpenOrder]]:
        await self._delay()
        return {}

    async def fetch_balances(self) -> Mapping[str, float]:
        await self._delay()
        return dict(self._balances)

    async def close(self) -> None:
        await self._public.close()

    @property
    def balances(self) -> dict[str, float]:
        return dict(self._balances)
