"""
Unit tests for TickerPoller.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from triarb.core.context import ExecutionContext
from triarb.core.types import TrianglePairs
from triarb.exchange.client import ExchangeError
from triarb.exchange.scheduler import RateLimitedScheduler
from triarb.market.poller import TickerPoller
from triarb.market.prices import PriceCache
from triarb.telemetry.metrics import MetricsCollector
from tests.mocks.exchange import MockExchange, make_ticker
from tests.mocks.market import CLOCKWISE_QUOTES, FLAT_QUOTES


@pytest.fixture
def cache(pairs: TrianglePairs) -> PriceCache:
    return PriceCache(pairs)


@pytest.fixture
def poller(
    scheduler: RateLimitedScheduler,
    mock_exchange: MockExchange,
    cache: PriceCache,
    context: ExecutionContext,
    metrics: MetricsCollector,
) -> TickerPoller:
    return TickerPoller(scheduler, mock_exchange, cache, context, metrics=metrics)


class TestFetch:
    """Tests for single fetches."""

    @pytest.mark.asyncio
    async def test_fetch_fills_cache(self, poller: TickerPoller, cache: PriceCache) -> None:
        """Test a fetch stores the three pairs."""
        assert await poller.fetch() is True

        assert cache.is_complete
        assert cache.ask("ETH_BCH") == FLAT_QUOTES["ETH_BCH"][1]

    @pytest.mark.asyncio
    async def test_callbacks_only_on_change(
        self, poller: TickerPoller, mock_exchange: MockExchange
    ) -> None:
        """Test unchanged prices do not notify."""
        callback = MagicMock()
        poller.add_callback(callback)

        await poller.fetch()
        await poller.fetch()
        callback.assert_called_once_with()

        mock_exchange.ticker = make_ticker(CLOCKWISE_QUOTES)
        assert await poller.fetch() is True
        assert callback.call_count == 2

    @pytest.mark.asyncio
    async def test_error_is_swallowed(
        self,
        poller: TickerPoller,
        mock_exchange: MockExchange,
        cache: PriceCache,
        metrics: MetricsCollector,
    ) -> None:
        """Test a failed fetch leaves the cache untouched."""
        await poller.fetch()
        mock_exchange.ticker_error = ExchangeError("timeout")

        assert await poller.fetch() is False
        assert cache.ask("BTC_ETH") == FLAT_QUOTES["BTC_ETH"][1]
        assert metrics.get_counter("ticker_errors") == 1

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_fetch(self, poller: TickerPoller) -> None:
        notified: list[int] = []

        def broken() -> None:
            raise RuntimeError("callback bug")

        poller.add_callback(broken)
        poller.add_callback(lambda: notified.append(1))

        assert await poller.fetch() is True
        assert notified == [1]

    @pytest.mark.asyncio
    async def test_missing_pair_in_ticker(
        self, poller: TickerPoller, mock_exchange: MockExchange, cache: PriceCache
    ) -> None:
        """Test a partial ticker updates what it can."""
        mock_exchange.ticker = make_ticker({"BTC_ETH": FLAT_QUOTES["BTC_ETH"]})

        assert await poller.fetch() is True
        assert cache.get("BTC_ETH") is not None
        assert not cache.is_complete

    @pytest.mark.asyncio
    async def test_fetch_not_single_shot_starts_polling(
        self, poller: TickerPoller, scheduler: RateLimitedScheduler
    ) -> None:
        await poller.fetch(single_shot=False)

        assert poller.is_running
        await scheduler.close()

    @pytest.mark.asyncio
    async def test_records_latency(self, poller: TickerPoller, metrics: MetricsCollector) -> None:
        await poller.fetch()

        assert metrics.get_latency_stats("ticker_fetch").count == 1
        assert metrics.get_counter("ticker_fetches") == 1


class TestPolling:
    """Tests for normal-mode polling."""

    @pytest.mark.asyncio
    async def test_polling_runs_until_stopped(
        self, poller: TickerPoller, mock_exchange: MockExchange
    ) -> None:
        poller.start()
        await asyncio.sleep(0.02)
        poller.stop()
        await asyncio.sleep(0)
        calls = mock_exchange.ticker_calls

        await asyncio.sleep(0.02)

        assert calls > 1
        assert mock_exchange.ticker_calls <= calls + 1
        assert not poller.is_running

    @pytest.mark.asyncio
    async def test_polling_pauses_during_trade(
        self,
        poller: TickerPoller,
        mock_exchange: MockExchange,
        context: ExecutionContext,
        scheduler: RateLimitedScheduler,
    ) -> None:
        """Test no normal-mode fetch runs while a trade holds the token."""
        token = context.acquire()
        poller.start()
        await asyncio.sleep(0.02)
        assert mock_exchange.ticker_calls == 0

        # Forced fetches still go through
        await poller.fetch()
        assert mock_exchange.ticker_calls == 1

        context.release(token)
        await asyncio.sleep(0.02)
        assert mock_exchange.ticker_calls > 1

        await scheduler.close()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(
        self, poller: TickerPoller, scheduler: RateLimitedScheduler
    ) -> None:
        first = poller.start()

        assert poller.start() is first
        await scheduler.close()
