"""
Triangle execution engine.

Runs one triangle from sizing to a definite outcome:

    SIZING -> PLACING -> IMMEDIATE_CHECK -> POLLING_FILL
           -> CANCEL_RETRY_LOOP -> FINALIZED

Each stage may short-circuit to FINALIZED with SUCCESS once every leg
is confirmed filled. A placement failure is fatal: trading halts and
the error propagates to whoever launched the run.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from functools import partial
from typing import TYPE_CHECKING, Any

from triarb.config.constants import (
    DEFAULT_BALANCE_FRACTION,
    DEFAULT_FILL_POLL_INTERVAL_S,
    DEFAULT_FILL_TIMEOUT_S,
    DEFAULT_MAX_RETRY_ROUNDS,
    DEFAULT_RETRY_BACKOFF_S,
    FILL_TOLERANCE,
    PRIORITY_FORCED_TICKER,
    PRIORITY_ORDER,
    TRADE_ACCOUNTS,
    UTILITY_ACCOUNT,
)
from triarb.core.context import ExecutionContext, TradeToken
from triarb.core.event_bus import Event, EventBus, EventType
from triarb.core.types import (
    Direction,
    ExchangeClient,
    ExecutionState,
    Order,
    OrderSide,
    TradeLeg,
    Triangle,
    TriangleOutcome,
    TrianglePairs,
    TriangleResult,
)
from triarb.exchange.scheduler import RateLimitedScheduler
from triarb.market.balances import BalanceTracker
from triarb.market.poller import TickerPoller
from triarb.market.prices import PriceCache
from triarb.telemetry.journal import TradeJournal
from triarb.telemetry.metrics import MetricsCollector
from triarb.utils.time import format_duration_us, get_timestamp_us


if TYPE_CHECKING:
    from triarb.config.settings import Settings


logger = logging.getLogger(__name__)


FinalizedCallback = Callable[[TriangleResult], None]


class PlacementError(Exception):
    """An order for a leg could not be placed. Trading cannot continue."""

    def __init__(
        self,
        message: str,
        legs: Sequence[TradeLeg] = (),
        placed: Sequence[Order] = (),
    ) -> None:
        super().__init__(message)
        self.legs = tuple(legs)
        self.placed = tuple(placed)


@dataclass
class ExecutorConfig:
    """Executor configuration."""

    balance_fraction: float = DEFAULT_BALANCE_FRACTION
    fill_timeout: float = DEFAULT_FILL_TIMEOUT_S
    fill_poll_interval: float = DEFAULT_FILL_POLL_INTERVAL_S
    retry_backoff: float = DEFAULT_RETRY_BACKOFF_S
    max_retry_rounds: int = DEFAULT_MAX_RETRY_ROUNDS

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ExecutorConfig":
        return cls(
            balance_fraction=settings.balance_fraction,
            fill_timeout=settings.fill_timeout_s,
            fill_poll_interval=settings.fill_poll_interval_s,
            retry_backoff=settings.retry_backoff_s,
            max_retry_rounds=settings.max_retry_rounds,
        )


@dataclass
class _Run:
    """Mutable bookkeeping for one triangle run."""

    direction: Direction
    started_us: int
    triangle: Triangle | None = None
    orders: list[Order] = field(default_factory=list)
    history: list[ExecutionState] = field(default_factory=list)
    retry_rounds: int = 0
    unresolved: tuple[str, ...] = ()
    error: str = ""

    def enter(self, state: ExecutionState) -> None:
        self.history.append(state)
        logger.debug(f"Triangle {self.direction.value}: {state.name}")


class TriangleExecutor:
    """
    Executes triangles, one at a time.

    Features:
    - Concurrent placement of all three legs, one lane per account
    - Fill confirmation through the utility account's open orders
    - Bounded cancel-and-replace of legs left open past the timeout
    - Escalation when orders can be neither filled nor cancelled
    """

    def __init__(
        self,
        scheduler: RateLimitedScheduler,
        accounts: Mapping[str, ExchangeClient],
        pairs: TrianglePairs,
        prices: PriceCache,
        balances: BalanceTracker,
        poller: TickerPoller,
        context: ExecutionContext,
        config: ExecutorConfig | None = None,
        event_bus: EventBus | None = None,
        journal: TradeJournal | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """
        Initialize executor.

        Args:
            scheduler: Scheduler every exchange call goes through.
            accounts: Client per account name; lanes share the names.
            pairs: Triangle pairs.
            prices: Price cache used for sizing.
            balances: Balance tracker used for sizing, refreshed at the end.
            poller: Ticker poller, forced before every retry.
            context: Trade-in-progress token owner.
            config: Executor configuration.
            event_bus: Receives lifecycle and escalation events.
            journal: Trade journal.
            metrics: Metrics sink.
        """
        missing = [a for a in (*TRADE_ACCOUNTS, UTILITY_ACCOUNT) if a not in accounts]
        if missing:
            raise ValueError(f"Missing clients for accounts: {', '.join(missing)}")

        self._scheduler = scheduler
        self._accounts = dict(accounts)
        self._pairs = pairs
        self._prices = prices
        self._balances = balances
        self._poller = poller
        self._context = context
        self._config = config or ExecutorConfig()
        self._event_bus = event_bus
        self._journal = journal or TradeJournal()
        self._metrics = metrics

        self._callbacks: list[FinalizedCallback] = []
        self._current: asyncio.Task[TriangleResult] | None = None

    def register_callback(self, callback: FinalizedCallback) -> None:
        """Register callback invoked after every finalized triangle."""
        self._callbacks.append(callback)

    # =========================================================================
    # Entry Points
    # =========================================================================

    def launch(self, direction: Direction) -> "asyncio.Task[TriangleResult]":
        """
        Start a triangle in the background.

        The context token is taken before this returns, so a second
        launch in the same tick fails instead of racing.

        Raises:
            TradeInProgressError: If a triangle is already running.
        """
        token = self._context.acquire(direction.value)
        self._current = asyncio.create_task(
            self._run(token, direction),
            name=f"triangle-{token.serial}",
        )
        return self._current

    async def execute(self, direction: Direction) -> TriangleResult:
        """Run a triangle and wait for its result."""
        return await self.launch(direction)

    # =========================================================================
    # Run
    # =========================================================================

    async def _run(self, token: TradeToken, direction: Direction) -> TriangleResult:
        run = _Run(direction=direction, started_us=get_timestamp_us())
        fatal: PlacementError | None = None

        try:
            try:
                outcome = await self._trade(run)
            except PlacementError as e:
                fatal = e
                run.error = str(e)
                outcome = TriangleOutcome.FAILURE
                logger.critical(f"Order placement failed, halting: {e}")
                self._context.halt(f"placement failed: {e}")
                self._journal.record(
                    "placement_failed",
                    direction=direction,
                    error=str(e),
                    legs=[repr(leg) for leg in e.legs],
                    orders=[o.id for o in run.orders],
                    unresolved=list(run.unresolved),
                )
            except Exception as e:
                run.error = str(e)
                outcome = TriangleOutcome.FAILURE
                logger.exception(f"Triangle {direction.value} aborted")

            result = await self._finalize(run, outcome)
        finally:
            self._context.release(token)

        for callback in self._callbacks:
            try:
                callback(result)
            except Exception:
                logger.exception("Finalized callback failed")

        if fatal is not None:
            raise fatal
        return result

    async def _trade(self, run: _Run) -> TriangleOutcome:
        run.enter(ExecutionState.SIZING)
        run.triangle = self.size(run.direction)
        logger.info(f"Executing {run.direction.value} triangle: {list(run.triangle.legs)}")
        self._journal.record(
            "triangle_started",
            direction=run.direction,
            legs=[repr(leg) for leg in run.triangle.legs],
            prices=self._prices.to_dict(),
            balances=self._balances.snapshot(),
        )
        await self._publish(EventType.TRIANGLE_STARTED, {"direction": run.direction})

        run.enter(ExecutionState.PLACING)
        try:
            run.orders = await self._place_legs(run.triangle.legs)
        except PlacementError as e:
            run.orders = list(e.placed)
            resting = [o.id for o in e.placed if not self._filled_on_placement(o)]
            if resting:
                await self._escalate(run, resting, "placement failed with other legs resting")
            raise

        run.enter(ExecutionState.IMMEDIATE_CHECK)
        if all(self._filled_on_placement(o) for o in run.orders):
            logger.info("All legs filled on placement")
            return TriangleOutcome.SUCCESS

        run.enter(ExecutionState.POLLING_FILL)
        if await self._poll_fills(run.orders):
            return TriangleOutcome.SUCCESS

        run.enter(ExecutionState.CANCEL_RETRY_LOOP)
        return await self._cancel_retry_loop(run)

    # =========================================================================
    # Sizing
    # =========================================================================

    def size(self, direction: Direction) -> Triangle:
        """
        Build the three legs from current prices and balances.

        Leg order is A_B, A_C, B_C on trade_0, trade_1, trade_2. Going
        clockwise buys A_B, sells A_C and buys B_C; counter-clockwise
        flips every side.

        Raises:
            KeyError: If a pair has no quote.
        """
        clockwise = direction is Direction.CLOCKWISE
        layout = (
            (self._pairs.first, OrderSide.BUY, TRADE_ACCOUNTS[0]),
            (self._pairs.third, OrderSide.SELL, TRADE_ACCOUNTS[1]),
            (self._pairs.second, OrderSide.BUY, TRADE_ACCOUNTS[2]),
        )
        legs = tuple(
            self._size_leg(pair, side if clockwise else side.opposite, account)
            for pair, side, account in layout
        )
        return Triangle(direction, legs)  # type: ignore[arg-type]

    def _size_leg(self, pair: str, side: OrderSide, account: str) -> TradeLeg:
        """Price at the touch, amount from the spendable balance."""
        quote_asset, base_asset = pair.split("_")
        fraction = self._config.balance_fraction

        if side is OrderSide.BUY:
            price = self._prices.ask(pair)
            amount = fraction * self._balances.get(quote_asset) / price
        else:
            price = self._prices.bid(pair)
            amount = fraction * self._balances.get(base_asset)

        return TradeLeg(pair=pair, side=side, account=account, price=price, amount=amount)

    def _resize(self, leg: TradeLeg) -> TradeLeg:
        resized = self._size_leg(leg.pair, leg.side, leg.account)
        return replace(leg, price=resized.price, amount=resized.amount)

    # =========================================================================
    # Placement
    # =========================================================================

    async def _place_legs(self, legs: Sequence[TradeLeg]) -> list[Order]:
        """
        Place legs concurrently, each on its own account lane.

        Raises:
            PlacementError: If any leg failed. Orders placed for the other
                legs are left as they are and carried on the error.
        """
        results = await asyncio.gather(
            *(self._place(leg) for leg in legs),
            return_exceptions=True,
        )

        failed: list[TradeLeg] = []
        errors: list[str] = []
        orders: list[Order] = []
        for leg, result in zip(legs, results, strict=True):
            if isinstance(result, Order):
                orders.append(result)
            elif isinstance(result, Exception):
                failed.append(leg)
                errors.append(f"{leg.pair}: {result}")
            else:
                raise result

        if failed:
            raise PlacementError("; ".join(errors), failed, orders)
        return orders

    async def _place(self, leg: TradeLeg) -> Order:
        if leg.amount <= 0 or leg.price <= 0:
            raise ValueError(f"Nothing to trade for {leg!r}")

        client = self._accounts[leg.account]
        response = await self._scheduler.submit(
            leg.account,
            partial(client.place_order, leg.pair, leg.side, leg.price, leg.amount),
            priority=PRIORITY_ORDER,
        )

        order = Order(
            id=response.order_number,
            leg=leg,
            placed_at_us=get_timestamp_us(),
            filled_amount=response.filled_amount,
        )
        logger.info(f"Placed order {order.id}: {leg!r}, filled {order.filled_amount:.8f}")
        self._journal.record(
            "order_placed",
            order_id=order.id,
            leg=repr(leg),
            filled=order.filled_amount,
        )
        return order

    @staticmethod
    def _filled_on_placement(order: Order) -> bool:
        return abs(order.leg.amount - order.filled_amount) < FILL_TOLERANCE

    # =========================================================================
    # Fill Tracking
    # =========================================================================

    async def _open_order_ids(self) -> set[str] | None:
        """Ids of every open order, or None if the query failed."""
        client = self._accounts[UTILITY_ACCOUNT]
        try:
            open_orders = await self._scheduler.submit(UTILITY_ACCOUNT, client.list_open_orders)
        except Exception as e:
            logger.warning(f"Open orders query failed: {e}")
            return None
        return {o.order_number for orders in open_orders.values() for o in orders}

    async def _poll_fills(self, orders: Sequence[Order]) -> bool:
        """
        Poll until no order is open or the fill timeout passes.

        Returns:
            True if every order was confirmed filled.
        """
        ids = {o.id for o in orders}
        deadline = time.monotonic() + self._config.fill_timeout

        while True:
            open_ids = await self._open_order_ids()
            if open_ids is not None and not ids & open_ids:
                logger.info("All legs filled")
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.info(f"Fill timeout after {self._config.fill_timeout}s")
                return False
            await asyncio.sleep(min(self._config.fill_poll_interval, remaining))

    # =========================================================================
    # Cancel & Retry
    # =========================================================================

    async def _cancel_retry_loop(self, run: _Run) -> TriangleOutcome:
        """
        Cancel legs still open and re-place them at fresh prices.

        Ends in SUCCESS once nothing is open, in FAILURE when every
        cancel in a round failed or the round limit is reached.
        """
        for round_no in range(1, self._config.max_retry_rounds + 1):
            run.retry_rounds = round_no

            open_ids = await self._open_order_ids()
            if open_ids is None:
                await asyncio.sleep(self._config.retry_backoff)
                continue

            open_legs = [i for i, order in enumerate(run.orders) if order.id in open_ids]
            if not open_legs:
                logger.info(f"All legs filled after {round_no - 1} retry rounds")
                return TriangleOutcome.SUCCESS

            logger.warning(
                f"Retry round {round_no}: "
                f"{len(open_legs)} legs open ({[run.orders[i].leg.pair for i in open_legs]})"
            )
            self._journal.record(
                "retry_round",
                round=round_no,
                open_orders=[run.orders[i].id for i in open_legs],
            )

            cancelled = await asyncio.gather(
                *(self._cancel(run.orders[i]) for i in open_legs)
            )
            if not any(cancelled):
                await self._escalate(
                    run,
                    [run.orders[i].id for i in open_legs],
                    "every cancellation failed",
                )
                return TriangleOutcome.FAILURE

            await self._poller.fetch(priority=PRIORITY_FORCED_TICKER, single_shot=True)

            retry_legs = [i for i, ok in zip(open_legs, cancelled, strict=True) if ok]
            try:
                new_orders = await self._place_legs(
                    [self._resize(run.orders[i].leg) for i in retry_legs]
                )
            except PlacementError as e:
                await self._abandon_round(run, open_legs, retry_legs, e, round_no)
                raise
            for i, order in zip(retry_legs, new_orders, strict=True):
                run.orders[i] = order

            await asyncio.sleep(self._config.retry_backoff)

        open_ids = await self._open_order_ids()
        if open_ids is None:
            open_ids = {o.id for o in run.orders}
        still_open = [o.id for o in run.orders if o.id in open_ids]
        if not still_open:
            return TriangleOutcome.SUCCESS

        await self._escalate(
            run,
            still_open,
            f"still open after {self._config.max_retry_rounds} retry rounds",
        )
        return TriangleOutcome.FAILURE

    async def _cancel(self, order: Order) -> bool:
        """Cancel through the utility account. False on any failure."""
        client = self._accounts[UTILITY_ACCOUNT]
        try:
            response = await self._scheduler.submit(
                UTILITY_ACCOUNT,
                partial(client.cancel_order, order.id),
            )
        except Exception as e:
            logger.warning(f"Cancel of order {order.id} failed: {e}")
            return False

        logger.info(f"Cancel order {order.id}: {'ok' if response.success else 'rejected'}")
        return response.success

    async def _abandon_round(
        self,
        run: _Run,
        open_legs: list[int],
        retry_legs: list[int],
        error: PlacementError,
        round_no: int,
    ) -> None:
        """
        Record what a failed re-placement left on the exchange.

        Legs re-placed in this round replace their cancelled orders;
        legs whose cancel failed are still resting as before.
        """
        placed = {order.leg.pair: order for order in error.placed}
        for i in retry_legs:
            order = placed.get(run.orders[i].leg.pair)
            if order is not None:
                run.orders[i] = order

        failed_pairs = {leg.pair for leg in error.legs}
        resting: list[str] = []
        for i in open_legs:
            order = run.orders[i]
            if i in retry_legs and (
                order.leg.pair in failed_pairs or self._filled_on_placement(order)
            ):
                continue
            resting.append(order.id)

        if resting:
            await self._escalate(run, resting, f"placement failed in retry round {round_no}")

    async def _escalate(self, run: _Run, order_ids: list[str], reason: str) -> None:
        run.unresolved = tuple(order_ids)
        logger.error(f"Triangle {run.direction.value} unresolved: {reason}")
        await self._publish(
            EventType.ORDERS_UNRESOLVED,
            {
                "direction": run.direction.value,
                "order_ids": order_ids,
                "retry_rounds": run.retry_rounds,
                "reason": reason,
            },
        )

    # =========================================================================
    # Finalization
    # =========================================================================

    async def _finalize(self, run: _Run, outcome: TriangleOutcome) -> TriangleResult:
        run.enter(ExecutionState.FINALIZED)
        result = TriangleResult(
            triangle=run.triangle or Triangle(run.direction, ()),  # type: ignore[arg-type]
            outcome=outcome,
            final_state=ExecutionState.FINALIZED,
            orders=tuple(run.orders),
            retry_rounds=run.retry_rounds,
            unresolved_order_ids=run.unresolved,
            started_us=run.started_us,
            finished_us=get_timestamp_us(),
            error_message=run.error,
            history=run.history,
        )

        counts = self._context.record_outcome(outcome)
        if self._metrics:
            self._metrics.record_triangle(result)

        try:
            await self._balances.refresh()
        except Exception as e:
            logger.error(f"Balance refresh after triangle failed: {e}")

        # the poller was parked for the whole triangle
        await self._poller.fetch(priority=PRIORITY_FORCED_TICKER, single_shot=True)

        logger.info(
            f"Triangle {run.direction.value} {outcome.value} "
            f"in {format_duration_us(result.duration_us)} "
            f"(attempted={counts.attempted}, successful={counts.successful}, "
            f"unsuccessful={counts.unsuccessful})"
        )
        self._journal.record(
            "triangle_finished",
            direction=run.direction,
            outcome=outcome,
            duration_us=result.duration_us,
            retry_rounds=run.retry_rounds,
            orders=[o.id for o in run.orders],
            unresolved=list(run.unresolved),
            error=run.error,
            counts=counts.to_dict(),
            prices=self._prices.to_dict(),
            balances=self._balances.snapshot(),
        )
        await self._publish(EventType.TRIANGLE_FINISHED, result)
        return result

    async def _publish(self, event_type: EventType, payload: Any) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(Event(event_type, payload, source="executor"))

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    @property
    def current(self) -> "asyncio.Task[TriangleResult] | None":
        """Task of the most recent run."""
        return self._current
