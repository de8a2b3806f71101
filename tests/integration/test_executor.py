"""
Integration tests for triangle execution.

Runs the executor against the mock exchange through a real scheduler,
price cache, balance tracker and ticker poller.
"""

from dataclasses import dataclass, field

import pytest
import pytest_asyncio

from triarb.core.context import ExecutionContext, TradeInProgressError
from triarb.core.event_bus import Event, EventBus, EventType
from triarb.core.types import (
    Direction,
    ExecutionState,
    OrderSide,
    TrianglePairs,
    TriangleOutcome,
    TriangleResult,
)
from triarb.exchange.client import ExchangeError
from triarb.exchange.scheduler import RateLimitedScheduler
from triarb.execution.executor import ExecutorConfig, PlacementError, TriangleExecutor
from triarb.market.balances import BalanceTracker
from triarb.market.poller import TickerPoller
from triarb.market.prices import PriceCache
from triarb.strategy.detector import ArbitrageDetector
from triarb.telemetry.journal import TradeJournal
from triarb.telemetry.metrics import MetricsCollector
from tests.mocks.exchange import MockExchange, make_ticker
from tests.mocks.market import CLOCKWISE_QUOTES, FLAT_QUOTES, quotes_to_prices


ACCOUNTS = ("trade_0", "trade_1", "trade_2", "utility")


@dataclass
class Harness:
    """Executor plus everything it talks to."""

    executor: TriangleExecutor
    exchange: MockExchange
    context: ExecutionContext
    balances: BalanceTracker
    poller: TickerPoller
    prices: PriceCache
    journal: TradeJournal
    metrics: MetricsCollector
    events: list[Event] = field(default_factory=list)
    results: list[TriangleResult] = field(default_factory=list)

    def events_of(self, event_type: EventType) -> list[Event]:
        return [e for e in self.events if e.type is event_type]


def build_harness(
    exchange: MockExchange,
    scheduler: RateLimitedScheduler,
    prices: PriceCache,
    pairs: TrianglePairs,
    **config: float,
) -> Harness:
    context = ExecutionContext()
    journal = TradeJournal()
    metrics = MetricsCollector()
    bus = EventBus()
    balances = BalanceTracker(scheduler, exchange, pairs.assets)
    poller = TickerPoller(scheduler, exchange, prices, context)

    executor = TriangleExecutor(
        scheduler=scheduler,
        accounts=dict.fromkeys(ACCOUNTS, exchange),
        pairs=pairs,
        prices=prices,
        balances=balances,
        poller=poller,
        context=context,
        config=ExecutorConfig(
            **{
                "fill_timeout": 0.05,
                "fill_poll_interval": 0.01,
                "retry_backoff": 0.0,
                "max_retry_rounds": 3,
                **config,
            }
        ),
        event_bus=bus,
        journal=journal,
        metrics=metrics,
    )

    harness = Harness(executor, exchange, context, balances, poller, prices, journal, metrics)
    for event_type in EventType:
        bus.subscribe_sync(event_type, harness.events.append)
    executor.register_callback(harness.results.append)
    return harness


@pytest_asyncio.fixture
async def harness(
    mock_exchange: MockExchange,
    scheduler: RateLimitedScheduler,
    price_cache: PriceCache,
    pairs: TrianglePairs,
) -> Harness:
    h = build_harness(mock_exchange, scheduler, price_cache, pairs)
    await h.balances.refresh()
    return h


class TestSizing:
    """Tests for leg sizing."""

    @pytest.mark.asyncio
    async def test_clockwise_legs(self, harness: Harness) -> None:
        """Test buy A_B, sell A_C, buy B_C at the touch."""
        triangle = harness.executor.size(Direction.CLOCKWISE)
        leg1, leg2, leg3 = triangle.legs

        assert (leg1.pair, leg1.side, leg1.account) == ("BTC_ETH", OrderSide.BUY, "trade_0")
        assert leg1.price == 0.0741
        assert leg1.amount == pytest.approx(0.999 * 1.0 / 0.0741)

        assert (leg2.pair, leg2.side, leg2.account) == ("BTC_BCH", OrderSide.SELL, "trade_1")
        assert leg2.price == 0.0131
        assert leg2.amount == pytest.approx(0.999 * 50.0)

        assert (leg3.pair, leg3.side, leg3.account) == ("ETH_BCH", OrderSide.BUY, "trade_2")
        assert leg3.price == 0.178
        assert leg3.amount == pytest.approx(0.999 * 10.0 / 0.178)

    @pytest.mark.asyncio
    async def test_counter_clockwise_legs(self, harness: Harness) -> None:
        """Test every side flips and prices move to the other side of the book."""
        leg1, leg2, leg3 = harness.executor.size(Direction.COUNTER_CLOCKWISE).legs

        assert (leg1.side, leg1.price) == (OrderSide.SELL, 0.074)
        assert leg1.amount == pytest.approx(0.999 * 10.0)

        assert (leg2.side, leg2.price) == (OrderSide.BUY, 0.0132)
        assert leg2.amount == pytest.approx(0.999 * 1.0 / 0.0132)

        assert (leg3.side, leg3.price) == (OrderSide.SELL, 0.177)
        assert leg3.amount == pytest.approx(0.999 * 50.0)

    def test_missing_account_rejected(
        self,
        mock_exchange: MockExchange,
        scheduler: RateLimitedScheduler,
        price_cache: PriceCache,
        pairs: TrianglePairs,
        context: ExecutionContext,
    ) -> None:
        with pytest.raises(ValueError, match="utility"):
            TriangleExecutor(
                scheduler=scheduler,
                accounts=dict.fromkeys(ACCOUNTS[:3], mock_exchange),
                pairs=pairs,
                prices=price_cache,
                balances=BalanceTracker(scheduler, mock_exchange, pairs.assets),
                poller=TickerPoller(scheduler, mock_exchange, price_cache, context),
                context=context,
            )


class TestFillPaths:
    """Tests for triangles that end in SUCCESS."""

    @pytest.mark.asyncio
    async def test_immediate_fill(self, harness: Harness) -> None:
        """Test all legs filled on placement skips fill polling."""
        result = await harness.executor.execute(Direction.CLOCKWISE)

        assert result.outcome is TriangleOutcome.SUCCESS
        assert result.history == [
            ExecutionState.SIZING,
            ExecutionState.PLACING,
            ExecutionState.IMMEDIATE_CHECK,
            ExecutionState.FINALIZED,
        ]
        assert harness.exchange.open_order_queries == 0
        assert len(harness.exchange.placed) == 3
        assert harness.context.counts.successful == 1
        assert not harness.context.in_progress

    @pytest.mark.asyncio
    async def test_legs_placed_concurrently(
        self,
        scheduler: RateLimitedScheduler,
        price_cache: PriceCache,
        pairs: TrianglePairs,
    ) -> None:
        """Test the three legs are in flight at once on separate lanes."""
        exchange = MockExchange(quotes=CLOCKWISE_QUOTES, latency_s=0.01)
        harness = build_harness(exchange, scheduler, price_cache, pairs)
        await harness.balances.refresh()

        await harness.executor.execute(Direction.CLOCKWISE)

        assert exchange.max_active == 3

    @pytest.mark.asyncio
    async def test_fill_found_by_polling(self, harness: Harness) -> None:
        """Test resting orders that fill before the timeout."""
        harness.exchange.fill_on_place = False
        harness.exchange.fill_after_queries = 2

        result = await harness.executor.execute(Direction.CLOCKWISE)

        assert result.outcome is TriangleOutcome.SUCCESS
        assert ExecutionState.POLLING_FILL in result.history
        assert ExecutionState.CANCEL_RETRY_LOOP not in result.history
        assert harness.exchange.open_order_queries == 2
        assert harness.exchange.cancelled == []

    @pytest.mark.asyncio
    async def test_only_open_legs_retried(self, harness: Harness) -> None:
        """Test a filled leg is left alone while the others are replaced."""
        exchange = harness.exchange
        exchange.fill_on_place = False
        exchange.fill_pairs = {"BTC_BCH"}
        exchange.ticker = make_ticker(CLOCKWISE_QUOTES)

        def fill_from_now_on() -> None:
            exchange.fill_on_place = True

        # The forced fetch before re-placement sees new prices
        harness.poller.add_callback(fill_from_now_on)

        result = await harness.executor.execute(Direction.CLOCKWISE)

        assert result.outcome is TriangleOutcome.SUCCESS
        assert ExecutionState.CANCEL_RETRY_LOOP in result.history

        first_ab, retry_ab = exchange.placed_for("BTC_ETH")
        first_bc, retry_bc = exchange.placed_for("ETH_BCH")
        assert len(exchange.placed_for("BTC_BCH")) == 1
        assert sorted(exchange.cancelled) == sorted([first_ab["id"], first_bc["id"]])

        # Re-placed at the refreshed ask
        assert retry_bc["price"] == 0.170
        assert retry_ab["side"] is OrderSide.BUY
        assert {o.id for o in result.orders} == {
            retry_ab["id"],
            retry_bc["id"],
            exchange.placed_for("BTC_BCH")[0]["id"],
        }
        assert harness.journal.recent("retry_round")


class TestFailurePaths:
    """Tests for triangles that end in FAILURE."""

    @pytest.mark.asyncio
    async def test_every_cancel_fails(self, harness: Harness) -> None:
        """Test nothing is re-placed when no cancel succeeds."""
        harness.exchange.fill_on_place = False
        harness.exchange.uncancellable = {"BTC_ETH", "ETH_BCH", "BTC_BCH"}

        result = await harness.executor.execute(Direction.CLOCKWISE)

        assert result.outcome is TriangleOutcome.FAILURE
        assert result.retry_rounds == 1
        assert len(harness.exchange.placed) == 3
        assert len(result.unresolved_order_ids) == 3

        (event,) = harness.events_of(EventType.ORDERS_UNRESOLVED)
        assert event.payload["reason"] == "every cancellation failed"
        assert sorted(event.payload["order_ids"]) == sorted(result.unresolved_order_ids)

    @pytest.mark.asyncio
    async def test_retry_rounds_are_bounded(self, harness: Harness) -> None:
        """Test orders that never fill escalate after the last round."""
        harness.exchange.fill_on_place = False

        result = await harness.executor.execute(Direction.CLOCKWISE)

        assert result.outcome is TriangleOutcome.FAILURE
        assert result.retry_rounds == 3
        # Initial placement plus three re-placements of all three legs
        assert len(harness.exchange.placed) == 12
        assert len(harness.exchange.cancelled) == 9

        (event,) = harness.events_of(EventType.ORDERS_UNRESOLVED)
        assert "3 retry rounds" in event.payload["reason"]
        assert harness.metrics.trading_stats.unresolved_orders == 3

    @pytest.mark.asyncio
    async def test_unknown_order_state_escalates(self, harness: Harness) -> None:
        """Test a utility account that cannot list orders ends in escalation."""
        harness.exchange.fill_on_place = False
        harness.exchange.open_orders_error = ExchangeError("down")

        result = await harness.executor.execute(Direction.CLOCKWISE)

        assert result.outcome is TriangleOutcome.FAILURE
        assert harness.exchange.cancelled == []
        assert len(result.unresolved_order_ids) == 3

    @pytest.mark.asyncio
    async def test_placement_failure_halts(self, harness: Harness) -> None:
        """Test a rejected order halts trading and propagates."""
        harness.exchange.failing_pairs = {"BTC_BCH"}

        with pytest.raises(PlacementError, match="BTC_BCH") as exc_info:
            await harness.executor.execute(Direction.CLOCKWISE)

        assert [leg.pair for leg in exc_info.value.legs] == ["BTC_BCH"]
        assert harness.context.is_halted
        assert harness.context.counts.unsuccessful == 1

        (result,) = harness.results
        assert result.outcome is TriangleOutcome.FAILURE
        assert ExecutionState.IMMEDIATE_CHECK not in result.history
        assert harness.events_of(EventType.ORDERS_UNRESOLVED) == []

        (entry,) = harness.journal.recent("placement_failed")
        assert len(entry["orders"]) == 2

        with pytest.raises(TradeInProgressError):
            harness.executor.launch(Direction.CLOCKWISE)

    @pytest.mark.asyncio
    async def test_placement_failure_reports_resting_legs(self, harness: Harness) -> None:
        """Test legs left resting by a failed placement are escalated."""
        exchange = harness.exchange
        exchange.fill_on_place = False
        exchange.failing_pairs = {"BTC_BCH"}

        with pytest.raises(PlacementError):
            await harness.executor.execute(Direction.CLOCKWISE)

        assert len(exchange.open) == 2
        (event,) = harness.events_of(EventType.ORDERS_UNRESOLVED)
        assert sorted(event.payload["order_ids"]) == sorted(exchange.open)

    @pytest.mark.asyncio
    async def test_placement_failure_during_retry(self, harness: Harness) -> None:
        """Test a rejected re-placement records and escalates the re-placed siblings."""
        exchange = harness.exchange
        exchange.fill_on_place = False
        exchange.fail_after = {"BTC_BCH": 1}

        with pytest.raises(PlacementError, match="BTC_BCH"):
            await harness.executor.execute(Direction.CLOCKWISE)

        # BTC_ETH and ETH_BCH were cancelled and re-placed, BTC_BCH was cancelled
        assert len(exchange.placed) == 5
        assert len(exchange.open) == 2
        assert harness.context.is_halted

        (entry,) = harness.journal.recent("placement_failed")
        assert set(exchange.open) <= set(entry["orders"])
        assert sorted(entry["unresolved"]) == sorted(exchange.open)

        (event,) = harness.events_of(EventType.ORDERS_UNRESOLVED)
        assert sorted(event.payload["order_ids"]) == sorted(exchange.open)
        assert event.payload["reason"] == "placement failed in retry round 1"

        (result,) = harness.results
        assert result.outcome is TriangleOutcome.FAILURE
        assert set(result.unresolved_order_ids) == set(exchange.open)

    @pytest.mark.asyncio
    async def test_empty_balance_is_placement_failure(self, harness: Harness) -> None:
        """Test a zero-sized leg is never sent to the exchange."""
        harness.exchange.balances["BTC"] = 0.0
        await harness.balances.refresh()

        with pytest.raises(PlacementError):
            await harness.executor.execute(Direction.CLOCKWISE)

        assert harness.exchange.placed_for("BTC_ETH") == []


class TestLifecycle:
    """Tests for the trade-in-progress guarantee and reporting."""

    @pytest.mark.asyncio
    async def test_second_launch_rejected(self, harness: Harness) -> None:
        """Test only one triangle runs at a time."""
        first = harness.executor.launch(Direction.CLOCKWISE)

        with pytest.raises(TradeInProgressError):
            harness.executor.launch(Direction.COUNTER_CLOCKWISE)

        result = await first
        assert result.triangle.direction is Direction.CLOCKWISE
        assert harness.context.counts.attempted == 1

    @pytest.mark.asyncio
    async def test_context_released_before_callbacks(self, harness: Harness) -> None:
        """Test finalized callbacks can start the next triangle."""
        seen: list[bool] = []
        harness.executor.register_callback(lambda _result: seen.append(harness.context.in_progress))

        await harness.executor.execute(Direction.CLOCKWISE)

        assert seen == [False]

    @pytest.mark.asyncio
    async def test_reporting(self, harness: Harness) -> None:
        """Test journal, events and metrics for one triangle."""
        result = await harness.executor.execute(Direction.COUNTER_CLOCKWISE)

        assert [e["event"] for e in harness.journal.recent()] == [
            "triangle_started",
            "order_placed",
            "order_placed",
            "order_placed",
            "triangle_finished",
        ]
        finished = harness.journal.recent("triangle_finished")[0]
        assert finished["outcome"] is TriangleOutcome.SUCCESS
        assert finished["counts"] == {"attempted": 1, "successful": 1, "unsuccessful": 0}
        assert finished["prices"] == harness.prices.to_dict()

        assert [e.type for e in harness.events] == [
            EventType.TRIANGLE_STARTED,
            EventType.TRIANGLE_FINISHED,
        ]
        assert harness.events[-1].payload is result
        assert harness.metrics.trading_stats.triangles_successful == 1
        assert harness.results == [result]

    @pytest.mark.asyncio
    async def test_balances_refreshed_after_triangle(self, harness: Harness) -> None:
        harness.exchange.balances = {"BTC": 3.0, "ETH": 10.0, "BCH": 50.0}

        await harness.executor.execute(Direction.CLOCKWISE)

        assert harness.balances.get("BTC") == 3.0
        assert harness.balances.refresh_count == 2

    @pytest.mark.asyncio
    async def test_prices_refreshed_before_next_evaluation(
        self,
        harness: Harness,
        price_cache: PriceCache,
    ) -> None:
        """Test the detector pass after a trade sees the market as it is now."""
        price_cache.apply(quotes_to_prices(CLOCKWISE_QUOTES))
        triggered: list[Direction] = []
        detector = ArbitrageDetector(price_cache, harness.context)
        detector.register_callback(triggered.append)
        harness.executor.register_callback(lambda _result: detector.evaluate())

        # the opportunity is gone by the time the legs fill
        await harness.executor.execute(Direction.CLOCKWISE)

        assert harness.exchange.ticker_calls == 1
        assert price_cache.ask("ETH_BCH") == FLAT_QUOTES["ETH_BCH"][1]
        assert triggered == []
