"""
Rate-limited, priority-aware task scheduler.

Every exchange call goes through `RateLimitedScheduler.submit`. Two
independent limits apply to each task:

- its lane, which caps how many tasks of that lane run at once (one
  lane per sub-account with concurrency 1 keeps authenticated calls
  from a key strictly sequential);
- its rate class, which caps calls per time window across all lanes.

Pending tasks in a lane start highest priority first, FIFO among
equal priorities. Nothing is ordered across lanes.
"""

import asyncio
import heapq
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from triarb.config.constants import DEFAULT_RATE_CLASS, PRIORITY_DEFAULT
from triarb.exchange.rate_limiter import RateLimiter


logger = logging.getLogger(__name__)


T = TypeVar("T")

Action = Callable[[], Awaitable[Any]]


class SchedulerClosedError(RuntimeError):
    """Raised for tasks submitted to, or still pending in, a closed scheduler."""


@dataclass(slots=True, frozen=True)
class LaneConfig:
    """
    Lane limits.

    concurrency=None means unlimited parallel tasks. min_interval
    spaces consecutive task starts within the lane.
    """

    concurrency: int | None = None
    min_interval: float = 0.0


@dataclass(order=True)
class SchedulerTask:
    """A queued action. Executed at most once."""

    sort_key: tuple[int, int]
    lane: str = field(compare=False)
    priority: int = field(compare=False)
    rate_class: str = field(compare=False)
    action: Action = field(compare=False, repr=False)
    future: "asyncio.Future[Any]" = field(compare=False, repr=False)


@dataclass
class _LaneState:
    config: LaneConfig
    pending: list[SchedulerTask] = field(default_factory=list)
    in_flight: int = 0
    last_start: float = float("-inf")
    spacing_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def has_capacity(self) -> bool:
        limit = self.config.concurrency
        return limit is None or self.in_flight < limit


@dataclass
class SchedulerStats:
    """Scheduler counters."""

    submitted: int = 0
    completed: int = 0
    failed: int = 0
    pending: dict[str, int] = field(default_factory=dict)
    in_flight: dict[str, int] = field(default_factory=dict)


class RateLimitedScheduler:
    """
    Task queue with per-lane concurrency and global rate classes.

    Failures of an action propagate to the caller of `submit`; retry
    policy belongs to the caller.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        lanes: dict[str, LaneConfig] | None = None,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            rate_limiter: Rate classes shared by all lanes.
            lanes: Initial lane configuration by name.
        """
        self._rate_limiter = rate_limiter or RateLimiter()
        self._lanes: dict[str, _LaneState] = {}
        self._running: set[asyncio.Task[None]] = set()
        self._recurring: dict[str, asyncio.Task[None]] = {}
        self._seq = 0
        self._closed = False

        self._submitted = 0
        self._completed = 0
        self._failed = 0

        for name, config in (lanes or {}).items():
            self.configure_lane(name, config)

    def configure_lane(self, name: str, config: LaneConfig) -> None:
        """Create or reconfigure a lane."""
        if config.concurrency is not None and config.concurrency < 1:
            raise ValueError(f"Lane {name}: concurrency must be at least 1")

        lane = self._lanes.get(name)
        if lane is None:
            self._lanes[name] = _LaneState(config)
        else:
            lane.config = config

    def _lane(self, name: str) -> _LaneState:
        lane = self._lanes.get(name)
        if lane is None:
            # Unconfigured lanes are unlimited
            lane = _LaneState(LaneConfig())
            self._lanes[name] = lane
        return lane

    async def submit(
        self,
        lane: str,
        action: Callable[[], Awaitable[T]],
        priority: int = PRIORITY_DEFAULT,
        rate_class: str = DEFAULT_RATE_CLASS,
    ) -> T:
        """
        Queue an action and wait for its result.

        Args:
            lane: Lane name.
            action: Zero-argument coroutine function.
            priority: Higher starts first within the lane.
            rate_class: Throttle applied to the call.

        Returns:
            Whatever the action returns.

        Raises:
            SchedulerClosedError: If the scheduler is closed.
            Exception: Whatever the action raised.
        """
        if self._closed:
            raise SchedulerClosedError("Scheduler is closed")

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._seq += 1
        task = SchedulerTask(
            sort_key=(-priority, self._seq),
            lane=lane,
            priority=priority,
            rate_class=rate_class,
            action=action,
            future=future,
        )

        heapq.heappush(self._lane(lane).pending, task)
        self._submitted += 1
        self._pump(lane)

        return await future

    def _pump(self, name: str) -> None:
        """Start pending tasks while the lane has capacity."""
        lane = self._lanes[name]
        while lane.pending and lane.has_capacity and not self._closed:
            task = heapq.heappop(lane.pending)
            if task.future.done():
                # Caller gave up before the task started
                continue

            lane.in_flight += 1
            runner = asyncio.create_task(self._run(lane, task))
            self._running.add(runner)
            runner.add_done_callback(self._running.discard)

    async def _run(self, lane: _LaneState, task: SchedulerTask) -> None:
        """Execute one task once its lane spacing and rate class allow."""
        try:
            await self._space(lane)
            await self._rate_limiter.acquire(task.rate_class)
            if task.future.done():
                return
            result = await task.action()
        except asyncio.CancelledError:
            if self._closed and not task.future.done():
                task.future.set_exception(SchedulerClosedError("Scheduler closed"))
            else:
                task.future.cancel()
            raise
        except Exception as e:
            self._failed += 1
            if not task.future.done():
                task.future.set_exception(e)
        else:
            self._completed += 1
            if not task.future.done():
                task.future.set_result(result)
        finally:
            lane.in_flight -= 1
            self._pump(task.lane)

    async def _space(self, lane: _LaneState) -> None:
        """Enforce the lane's minimum interval between starts."""
        min_interval = lane.config.min_interval
        if min_interval <= 0:
            return

        async with lane.spacing_lock:
            wait = lane.last_start + min_interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            lane.last_start = time.monotonic()

    # =========================================================================
    # Recurring Tasks
    # =========================================================================

    def start_recurring(
        self,
        name: str,
        lane: str,
        action: Callable[[], Awaitable[T]],
        *,
        priority: int = PRIORITY_DEFAULT,
        rate_class: str = DEFAULT_RATE_CLASS,
        on_result: Callable[[T], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        gate: Callable[[], Awaitable[None]] | None = None,
    ) -> "asyncio.Task[None]":
        """
        Resubmit an action forever until the scheduler closes.

        Each iteration waits on `gate` (if given), submits the action,
        and hands the result to `on_result`. Errors go to `on_error`
        and never end the loop.

        Args:
            name: Unique loop name.
            lane: Lane for every submission.
            action: Zero-argument coroutine function.
            priority: Submission priority.
            rate_class: Submission rate class.
            on_result: Called with each successful result.
            on_error: Called with each failure.
            gate: Awaited before each submission; blocks while it blocks.

        Returns:
            The background task driving the loop.
        """
        if name in self._recurring and not self._recurring[name].done():
            raise ValueError(f"Recurring task {name!r} already running")

        loop_task = asyncio.create_task(
            self._recur(name, lane, action, priority, rate_class, on_result, on_error, gate),
            name=f"recurring:{name}",
        )
        self._recurring[name] = loop_task
        return loop_task

    async def _recur(
        self,
        name: str,
        lane: str,
        action: Callable[[], Awaitable[T]],
        priority: int,
        rate_class: str,
        on_result: Callable[[T], None] | None,
        on_error: Callable[[Exception], None] | None,
        gate: Callable[[], Awaitable[None]] | None,
    ) -> None:
        logger.debug(f"Recurring task {name} started on lane {lane}")
        while not self._closed:
            if gate is not None:
                await gate()
                if self._closed:
                    break

            try:
                result = await self.submit(lane, action, priority, rate_class)
            except SchedulerClosedError:
                break
            except Exception as e:
                if on_error is not None:
                    on_error(e)
                else:
                    logger.warning(f"Recurring task {name} failed: {e}")
                continue

            if on_result is not None:
                try:
                    on_result(result)
                except Exception:
                    logger.exception(f"Result handler for {name} failed")

        logger.debug(f"Recurring task {name} stopped")

    def stop_recurring(self, name: str) -> bool:
        """
        Cancel a recurring loop.

        Returns:
            True if a running loop was cancelled.
        """
        loop_task = self._recurring.pop(name, None)
        if loop_task is None or loop_task.done():
            return False
        loop_task.cancel()
        return True

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def close(self) -> None:
        """Stop recurring loops, cancel running tasks, fail pending ones."""
        if self._closed:
            return
        self._closed = True

        for lane in self._lanes.values():
            while lane.pending:
                task = heapq.heappop(lane.pending)
                if not task.future.done():
                    task.future.set_exception(SchedulerClosedError("Scheduler closed"))

        tasks = [*self._recurring.values(), *self._running]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._recurring.clear()
        logger.info("Scheduler closed")

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def stats(self) -> SchedulerStats:
        """Snapshot of counters and queue depths."""
        return SchedulerStats(
            submitted=self._submitted,
            completed=self._completed,
            failed=self._failed,
            pending={name: len(lane.pending) for name, lane in self._lanes.items()},
            in_flight={name: lane.in_flight for name, lane in self._lanes.items()},
        )
