"""
Main trading engine orchestrator.

Builds every component from Settings, wires poller -> detector ->
executor, and runs until a signal, the trade limit or a fatal
placement failure ends the session.
"""

import asyncio
import contextlib
import logging
import signal
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from typing import Any

from pydantic import SecretStr

from triarb.config.constants import (
    METRICS_REPORT_INTERVAL,
    PRIORITY_FORCED_TICKER,
    TICKER_LANE,
    UTILITY_ACCOUNT,
)
from triarb.config.settings import ACCOUNT_NAMES, ConfigurationError, Settings
from triarb.core.context import ExecutionContext
from triarb.core.event_bus import Event, EventBus, EventType
from triarb.core.types import (
    Direction,
    ExchangeClient,
    ShutdownReason,
    TrianglePairs,
    TriangleResult,
)
from triarb.exchange.client import PoloniexClient, RequestSigner
from triarb.exchange.paper import PaperExchange
from triarb.exchange.rate_limiter import RateLimiter
from triarb.exchange.scheduler import LaneConfig, RateLimitedScheduler
from triarb.execution.executor import ExecutorConfig, PlacementError, TriangleExecutor
from triarb.market.balances import BalanceTracker
from triarb.market.poller import TickerPoller
from triarb.market.prices import PriceCache
from triarb.strategy.detector import ArbitrageDetector
from triarb.telemetry.alerts import OperatorAlerter
from triarb.telemetry.journal import TradeJournal
from triarb.telemetry.logger import AsyncLogger, setup_logging
from triarb.telemetry.metrics import MetricsCollector


logger = logging.getLogger(__name__)


# Builds a signer for (account, api_key, api_secret)
SignerFactory = Callable[[str, SecretStr, SecretStr], RequestSigner]

PUBLIC_CLIENT = "public"


class TradingEngine:
    """
    Main trading engine orchestrator.

    Manages the complete lifecycle of:
    - Exchange clients (live or paper) and the shared scheduler
    - Ticker polling and yield detection
    - Triangle execution and operator alerts
    - Logging, journal and metrics
    """

    def __init__(
        self,
        settings: Settings,
        signer_factory: SignerFactory | None = None,
        clients: Mapping[str, ExchangeClient] | None = None,
        configure_logging: bool = True,
        report_interval: float = METRICS_REPORT_INTERVAL,
    ) -> None:
        """
        Initialize the engine.

        Args:
            settings: Application settings.
            signer_factory: Builds request signers for live trading.
            clients: Prebuilt clients by account name plus "public";
                bypasses client construction when given.
            configure_logging: Install the async logging handlers.
            report_interval: Seconds between status lines.
        """
        self._settings = settings
        self._signer_factory = signer_factory
        self._injected_clients = dict(clients) if clients else None
        self._configure_logging = configure_logging
        self._report_interval = report_interval

        self._shutdown_event = asyncio.Event()
        self._shutdown_reason: ShutdownReason | None = None
        self._running = False
        self._stopped = False

        self._pairs = TrianglePairs(settings.pair_ab, settings.pair_bc, settings.pair_ac)

        # Infrastructure
        self._event_bus = EventBus()
        self._metrics = MetricsCollector()
        self._context = ExecutionContext()
        self._journal = TradeJournal(settings.log_dir)
        self._alerter = OperatorAlerter(self._journal, settings.alert_webhook_url)
        self._async_logger: AsyncLogger | None = None

        # Components (initialized in setup)
        self._scheduler: RateLimitedScheduler | None = None
        self._clients: dict[str, ExchangeClient] = {}
        self._prices = PriceCache(self._pairs)
        self._balances: BalanceTracker | None = None
        self._poller: TickerPoller | None = None
        self._detector: ArbitrageDetector | None = None
        self._executor: TriangleExecutor | None = None
        self._report_task: asyncio.Task[None] | None = None

    # =========================================================================
    # Setup
    # =========================================================================

    async def setup(self) -> None:
        """Build and wire all components."""
        if self._configure_logging:
            self._async_logger = setup_logging(
                level=self._settings.log_level,
                log_dir=self._settings.log_dir,
            )

        logger.info("Initializing trading engine...")
        self._journal.start()

        self._scheduler = self._build_scheduler()
        self._clients = self._injected_clients or self._build_clients()

        self._balances = BalanceTracker(
            self._scheduler,
            self._clients[UTILITY_ACCOUNT],
            self._pairs.assets,
        )
        self._poller = TickerPoller(
            self._scheduler,
            self._clients.get(PUBLIC_CLIENT, self._clients[UTILITY_ACCOUNT]),
            self._prices,
            self._context,
            metrics=self._metrics,
        )
        self._detector = ArbitrageDetector(
            self._prices,
            self._context,
            threshold=self._settings.profit_threshold,
            metrics=self._metrics,
        )
        self._executor = TriangleExecutor(
            self._scheduler,
            self._clients,
            self._pairs,
            self._prices,
            self._balances,
            self._poller,
            self._context,
            config=ExecutorConfig.from_settings(self._settings),
            event_bus=self._event_bus,
            journal=self._journal,
            metrics=self._metrics,
        )

        self._poller.add_callback(self._detector.evaluate)
        self._detector.register_callback(self._on_trigger)
        self._executor.register_callback(self._on_triangle_finalized)
        self._event_bus.subscribe(EventType.ORDERS_UNRESOLVED, self._alerter.on_orders_unresolved)

        logger.info(
            f"Trading {self._pairs.first} / {self._pairs.second} / {self._pairs.third} "
            f"({'paper' if self._settings.dry_run else 'live'}), "
            f"threshold {self._settings.profit_threshold}"
        )

    def _build_scheduler(self) -> RateLimitedScheduler:
        rate_limiter = RateLimiter(
            self._settings.rate_limit_calls,
            self._settings.rate_limit_interval,
        )
        lanes = {name: LaneConfig(concurrency=1) for name in ACCOUNT_NAMES}
        lanes[TICKER_LANE] = LaneConfig(
            concurrency=None,
            min_interval=self._settings.ticker_min_interval,
        )
        return RateLimitedScheduler(rate_limiter, lanes)

    def _build_clients(self) -> dict[str, ExchangeClient]:
        """One client per account, plus the public ticker client."""
        public = PoloniexClient(name=PUBLIC_CLIENT)

        if self._settings.dry_run:
            paper = PaperExchange(public, self._settings.paper_balances)
            clients: dict[str, ExchangeClient] = dict.fromkeys(ACCOUNT_NAMES, paper)
            clients[PUBLIC_CLIENT] = public
            return clients

        if self._signer_factory is None:
            raise ConfigurationError("Live trading needs a request signer factory")

        clients = {PUBLIC_CLIENT: public}
        for name in ACCOUNT_NAMES:
            credentials = self._settings.credentials_for(name)
            if credentials is None:
                raise ConfigurationError(f"Missing credentials for {name}")
            clients[name] = PoloniexClient(signer=self._signer_factory(name, *credentials), name=name)
        return clients

    # =========================================================================
    # Wiring
    # =========================================================================

    def _on_trigger(self, direction: Direction) -> None:
        """Detector fired: start the triangle."""
        if self._executor is None or self._shutdown_event.is_set():
            return
        task = self._executor.launch(direction)
        task.add_done_callback(self._on_triangle_done)

    def _on_triangle_done(self, task: "asyncio.Task[TriangleResult]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, PlacementError):
            self.request_shutdown(ShutdownReason.PLACEMENT_FAILED)
        elif exc is not None:
            logger.error(f"Triangle task failed: {exc!r}")

    def _on_triangle_finalized(self, result: TriangleResult) -> None:
        """Enforce the trade limit, then look for the next triangle."""
        if self._context.is_halted:
            return

        max_trades = self._settings.max_trades
        if max_trades and self._context.counts.attempted >= max_trades:
            logger.info(f"Trade limit of {max_trades} reached")
            self.request_shutdown(ShutdownReason.TRADE_LIMIT)
            return

        if self._detector is not None:
            self._detector.evaluate()

    # =========================================================================
    # Run
    # =========================================================================

    async def start_trading(self) -> None:
        """
        Load initial balances and prices, then start polling.

        The startup fetches run while holding the context so the
        detector stays quiet until both are in place.
        """
        assert self._balances and self._poller and self._detector

        token = self._context.acquire("startup")
        try:
            await self._balances.refresh(priority=PRIORITY_FORCED_TICKER)
            await self._poller.fetch(priority=PRIORITY_FORCED_TICKER, single_shot=True)
        finally:
            self._context.release(token)

        self._journal.record(
            "initialized",
            prices=self._prices.to_dict(),
            balances=self._balances.snapshot(),
            dry_run=self._settings.dry_run,
        )

        self._poller.start()
        self._detector.evaluate()

    async def run(self) -> ShutdownReason | None:
        """
        Run until shutdown is requested.

        Returns:
            Why the engine stopped.
        """
        self._running = True

        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._handle_loop_exception)
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self.request_shutdown, ShutdownReason.SIGNAL)

        try:
            logger.info("Starting trading engine...")
            await self.start_trading()
            self._report_task = asyncio.create_task(self._report_loop(), name="status-report")
            await self._shutdown_event.wait()
        finally:
            await self.shutdown()

        return self._shutdown_reason

    async def _report_loop(self) -> None:
        while True:
            await asyncio.sleep(self._report_interval)
            logger.info(f"Status: {self._metrics.status_line()}")

    def request_shutdown(self, reason: ShutdownReason) -> None:
        """Ask the engine to stop. The first reason wins."""
        if self._shutdown_reason is None:
            self._shutdown_reason = reason
            logger.info(f"Shutdown requested: {reason.value}")
        self._shutdown_event.set()

    def _handle_loop_exception(
        self,
        loop: asyncio.AbstractEventLoop,
        context: dict[str, Any],
    ) -> None:
        exc = context.get("exception")
        logger.error(
            f"Unhandled exception in event loop: {context.get('message', '')}",
            exc_info=exc,
        )

    async def shutdown(self) -> None:
        """Gracefully shut down the engine."""
        if self._stopped:
            return
        self._stopped = True
        self._running = False
        logger.info("Shutting down engine...")

        if self._report_task:
            self._report_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._report_task

        if self._poller:
            self._poller.stop()

        if self._executor and self._executor.current and not self._executor.current.done():
            logger.warning("Interrupting triangle in progress; its orders may remain open")
            self._journal.record("triangle_interrupted")
            self._executor.current.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._executor.current

        if self._scheduler:
            await self._scheduler.close()

        closed: set[int] = set()
        for client in self._clients.values():
            if id(client) not in closed:
                closed.add(id(client))
                await client.close()
        await self._alerter.close()

        await self._event_bus.publish(Event(EventType.SHUTDOWN, self._shutdown_reason, source="engine"))

        counts = self._context.counts
        logger.info(f"Final status: {self._metrics.status_line()}")
        logger.info(
            f"Triangles: attempted={counts.attempted}, successful={counts.successful}, "
            f"unsuccessful={counts.unsuccessful}"
        )
        self._journal.record(
            "shutdown",
            reason=self._shutdown_reason,
            counts=counts.to_dict(),
            metrics=self._metrics.to_dict(),
        )
        self._journal.stop()

        logger.info("Engine shutdown complete")
        if self._async_logger:
            self._async_logger.stop()

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def shutdown_reason(self) -> ShutdownReason | None:
        return self._shutdown_reason

    @property
    def context(self) -> ExecutionContext:
        return self._context

    @property
    def prices(self) -> PriceCache:
        return self._prices

    @property
    def balances(self) -> BalanceTracker | None:
        return self._balances

    @property
    def executor(self) -> TriangleExecutor | None:
        return self._executor

    @property
    def journal(self) -> TradeJournal:
        return self._journal

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics


@asynccontextmanager
async def create_engine(settings: Settings, **kwargs: Any) -> AsyncIterator[TradingEngine]:
    """
    Create and manage engine lifecycle.

    Usage:
        async with create_engine(settings) as engine:
            await engine.run()
    """
    engine = TradingEngine(settings, **kwargs)

    try:
        await engine.setup()
        yield engine
    finally:
        await engine.shutdown()
