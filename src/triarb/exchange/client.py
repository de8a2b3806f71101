"""
Async Poloniex REST client.

One instance per set of credentials (or one unauthenticated instance
for the public ticker). Throttling and per-account serialization are
the scheduler's job; this client only speaks HTTP.

Request signing is not implemented here: private commands hand the
encoded body to an injected RequestSigner and send back whatever
headers it returns.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Protocol
from urllib.parse import urlencode

import aiohttp
import orjson

from triarb.config.constants import (
    COMMAND_BALANCES,
    COMMAND_BUY,
    COMMAND_CANCEL,
    COMMAND_OPEN_ORDERS,
    COMMAND_SELL,
    COMMAND_TICKER,
    HTTP_TIMEOUT_S,
    POLONIEX_PUBLIC_URL,
    POLONIEX_TRADING_URL,
)
from triarb.core.types import OrderSide
from triarb.exchange.models import (
    CancelOrderResponse,
    OpenOrder,
    PlaceOrderResponse,
    TickerEntry,
)
from triarb.utils.time import get_timestamp_us


class ExchangeError(Exception):
    """Base exception for exchange errors."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class ExchangeAPIError(ExchangeError):
    """The exchange answered with an error payload."""

    pass


class RequestSigner(Protocol):
    """Produces authentication headers for a private request body."""

    def sign(self, body: bytes) -> dict[str, str]:
        """Get headers to send with `body`."""
        ...


def _format_decimal(value: float) -> str:
    """Render a price or amount without exponent or trailing zeros."""
    return f"{value:.8f}".rstrip("0").rstrip(".")


class PoloniexClient:
    """
    Poloniex REST client.

    Features:
    - Single keep-alive session
    - orjson parsing
    - Typed responses via pydantic models
    """

    def __init__(
        self,
        signer: RequestSigner | None = None,
        public_url: str = POLONIEX_PUBLIC_URL,
        trading_url: str = POLONIEX_TRADING_URL,
        timeout: float = HTTP_TIMEOUT_S,
        name: str = "public",
    ) -> None:
        """
        Initialize the client.

        Args:
            signer: Signs private requests. Public-only if None.
            public_url: Public API endpoint.
            trading_url: Trading API endpoint.
            timeout: Total request timeout in seconds.
            name: Account name used in error messages.
        """
        self._signer = signer
        self._public_url = public_url
        self._trading_url = trading_url
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._name = name
        self._session: aiohttp.ClientSession | None = None
        self._last_nonce = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=20,
                keepalive_timeout=30,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=self._timeout,
                json_serialize=lambda x: orjson.dumps(x).decode(),
            )
        return self._session

    async def close(self) -> None:
        """Close the client session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    @asynccontextmanager
    async def _request_context(self) -> AsyncIterator[aiohttp.ClientSession]:
        """Translate network failures into ExchangeError."""
        session = await self._get_session()
        try:
            yield session
        except aiohttp.ClientError as e:
            raise ExchangeError(f"[{self._name}] Network error: {e}") from e
        except TimeoutError as e:
            raise ExchangeError(f"[{self._name}] Request timed out") from e

    async def _public(self, command: str, **params: Any) -> Any:
        """Call a public command."""
        query = {"command": command, **params}
        async with self._request_context() as session:
            async with session.get(self._public_url, params=query) as response:
                return await self._handle_response(response)

    async def _private(self, command: str, **params: Any) -> Any:
        """Call a trading command."""
        if self._signer is None:
            raise ExchangeError(f"[{self._name}] No request signer configured for {command}")

        body = urlencode({"command": command, "nonce": self._next_nonce(), **params}).encode()
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            **self._signer.sign(body),
        }

        async with self._request_context() as session:
            async with session.post(self._trading_url, data=body, headers=headers) as response:
                return await self._handle_response(response)

    def _next_nonce(self) -> int:
        """Strictly increasing nonce."""
        nonce = max(get_timestamp_us(), self._last_nonce + 1)
        self._last_nonce = nonce
        return nonce

    async def _handle_response(self, response: aiohttp.ClientResponse) -> Any:
        """Parse and validate response."""
        text = await response.text()

        try:
            data = orjson.loads(text)
        except orjson.JSONDecodeError as e:
            raise ExchangeError(
                f"[{self._name}] Invalid JSON response ({response.status}): {e}",
                code=response.status,
            ) from e

        # Errors may arrive with a 200 status
        if isinstance(data, dict) and "error" in data:
            raise ExchangeAPIError(f"[{self._name}] API error: {data['error']}", code=response.status)
        if response.status >= 400:
            raise ExchangeAPIError(f"[{self._name}] HTTP {response.status}: {text}", code=response.status)

        return data

    # =========================================================================
    # Public Endpoints
    # =========================================================================

    async def fetch_ticker(self) -> dict[str, TickerEntry]:
        """Get best bid/ask for every pair."""
        data = await self._public(COMMAND_TICKER)
        return {pair: TickerEntry.model_validate(entry) for pair, entry in data.items()}

    # =========================================================================
    # Trading Endpoints
    # =========================================================================

    async def place_order(
        self,
        pair: str,
        side: OrderSide,
        price: float,
        amount: float,
    ) -> PlaceOrderResponse:
        """
        Place a limit order.

        Args:
            pair: Currency pair, e.g. "BTC_ETH".
            side: BUY or SELL.
            price: Limit rate.
            amount: Amount of the pair's second asset.

        Returns:
            Order number and any trades filled on placement.
        """
        command = COMMAND_BUY if side is OrderSide.BUY else COMMAND_SELL
        data = await self._private(
            command,
            currencyPair=pair,
            rate=_format_decimal(price),
            amount=_format_decimal(amount),
        )
        return PlaceOrderResponse.model_validate(data)

    async def cancel_order(self, order_id: str) -> CancelOrderResponse:
        """Cancel an open order."""
        data = await self._private(COMMAND_CANCEL, orderNumber=order_id)
        return CancelOrderResponse.model_validate(data)

    async def list_open_orders(self) -> dict[str, list[OpenOrder]]:
        """Get open orders for all pairs."""
        data = await self._private(COMMAND_OPEN_ORDERS, currencyPair="all")
        return {
            pair: [OpenOrder.model_validate(o) for o in orders]
            for pair, orders in data.items()
        }

    async def fetch_balances(self) -> dict[str, float]:
        """Get available balance per asset."""
        data = await self._private(COMMAND_BALANCES)
        return {asset: float(amount) for asset, amount in data.items()}

    async def __aenter__(self) -> "PoloniexClient":
        await self._get_session()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
