"""
Ticker polling.

Keeps the PriceCache fresh through the scheduler's ticker lane and
tells the detector when anything moved.
"""

import asyncio
import logging
from collections.abc import Callable, Mapping

from triarb.config.constants import (
    DEFAULT_RATE_CLASS,
    PRIORITY_DEFAULT,
    PRIORITY_FORCED_TICKER,
    TICKER_LANE,
)
from triarb.core.context import ExecutionContext
from triarb.core.types import ExchangeClient, PriceQuote
from triarb.exchange.models import TickerEntry
from triarb.exchange.scheduler import RateLimitedScheduler
from triarb.market.prices import PriceCache
from triarb.telemetry.metrics import MetricsCollector
from triarb.utils.time import LatencyTimer


logger = logging.getLogger(__name__)


PriceChangeCallback = Callable[[], None]

RECURRING_NAME = "ticker"


class TickerPoller:
    """
    Fetches the ticker and updates the PriceCache.

    Normal mode is a scheduler-owned loop at default priority that
    parks while a trade is in progress. Forced mode (`fetch`) is a
    single higher-priority fetch used mid-trade. Failures in either
    mode are logged and swallowed.
    """

    def __init__(
        self,
        scheduler: RateLimitedScheduler,
        client: ExchangeClient,
        cache: PriceCache,
        context: ExecutionContext,
        metrics: MetricsCollector | None = None,
        lane: str = TICKER_LANE,
        rate_class: str = DEFAULT_RATE_CLASS,
    ) -> None:
        """
        Initialize poller.

        Args:
            scheduler: Scheduler all fetches go through.
            client: Client providing the public ticker.
            cache: Cache to update.
            context: Trade state; normal polling pauses while busy.
            metrics: Optional metrics sink.
            lane: Scheduler lane for fetches.
            rate_class: Rate class for fetches.
        """
        self._scheduler = scheduler
        self._client = client
        self._cache = cache
        self._context = context
        self._metrics = metrics
        self._lane = lane
        self._rate_class = rate_class
        self._callbacks: list[PriceChangeCallback] = []
        self._task: asyncio.Task[None] | None = None

    def add_callback(self, callback: PriceChangeCallback) -> None:
        """Register a callback run after every price change."""
        self._callbacks.append(callback)

    def start(self) -> "asyncio.Task[None]":
        """Start normal-mode polling."""
        if self.is_running:
            return self._task  # type: ignore[return-value]

        self._task = self._scheduler.start_recurring(
            RECURRING_NAME,
            self._lane,
            self._timed_fetch,
            priority=PRIORITY_DEFAULT,
            rate_class=self._rate_class,
            on_result=self._on_ticker,
            on_error=self._on_error,
            gate=self._context.wait_idle,
        )
        logger.info("Ticker polling started")
        return self._task

    def stop(self) -> None:
        """Stop normal-mode polling."""
        if self._scheduler.stop_recurring(RECURRING_NAME):
            logger.info("Ticker polling stopped")
        self._task = None

    async def fetch(
        self,
        priority: int = PRIORITY_FORCED_TICKER,
        single_shot: bool = True,
    ) -> bool:
        """
        Fetch the ticker once.

        Args:
            priority: Scheduler priority for the fetch.
            single_shot: If False, make sure normal polling runs afterwards.

        Returns:
            True if prices changed, False if unchanged or the fetch failed.
        """
        try:
            ticker = await self._scheduler.submit(
                self._lane,
                self._timed_fetch,
                priority=priority,
                rate_class=self._rate_class,
            )
        except Exception as e:
            self._on_error(e)
            changed = False
        else:
            changed = self._on_ticker(ticker)

        if not single_shot:
            self.start()
        return changed

    async def _timed_fetch(self) -> Mapping[str, TickerEntry]:
        with LatencyTimer() as timer:
            ticker = await self._client.fetch_ticker()
        if self._metrics:
            self._metrics.record_latency("ticker_fetch", timer.latency_us)
        return ticker

    def _on_ticker(self, ticker: Mapping[str, TickerEntry]) -> bool:
        """Apply a ticker and notify on change."""
        if self._metrics:
            self._metrics.increment_counter("ticker_fetches")

        quotes: dict[str, PriceQuote] = {}
        for pair in self._cache.pairs.as_tuple():
            entry = ticker.get(pair)
            if entry is None:
                logger.warning(f"Ticker has no entry for {pair}")
                continue
            quotes[pair] = PriceQuote(pair, entry.highest_bid, entry.lowest_ask)

        changed = self._cache.apply(quotes)
        if not changed:
            return False

        if self._metrics:
            self._metrics.increment_counter("price_changes")
        logger.debug(f"Prices changed: {self._cache.to_dict()}")

        for callback in self._callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Price change callback failed")
        return True

    def _on_error(self, error: Exception) -> None:
        if self._metrics:
            self._metrics.increment_counter("ticker_errors")
        logger.warning(f"Ticker fetch failed: {error}")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()
