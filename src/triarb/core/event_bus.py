"""
Lifecycle notifications.

The executor announces triangle starts, finishes and unresolved
orders here; the engine announces shutdown. Price changes never pass
through the bus: the poller calls the detector directly.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Generic, TypeVar

from triarb.utils.time import get_timestamp_us


logger = logging.getLogger(__name__)


class EventType(Enum):
    """Lifecycle events."""

    TRIANGLE_STARTED = auto()
    TRIANGLE_FINISHED = auto()
    ORDERS_UNRESOLVED = auto()
    SHUTDOWN = auto()


P = TypeVar("P")


@dataclass(slots=True)
class Event(Generic[P]):
    """One notification and what it carries."""

    type: EventType
    payload: P
    timestamp_us: int = field(default_factory=get_timestamp_us)
    source: str = ""


AsyncHandler = Callable[[Event[Any]], Awaitable[None]]
SyncHandler = Callable[[Event[Any]], None]


@dataclass(slots=True)
class _Subscription:
    priority: int
    handler: AsyncHandler | SyncHandler
    awaitable: bool


class EventBus:
    """
    In-process publish/subscribe.

    Sync subscribers run before async ones; within each group higher
    priority runs first and ties keep subscription order. A handler
    that raises is logged and skipped.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[EventType, list[_Subscription]] = {}

    def _add(self, event_type: EventType, sub: _Subscription) -> None:
        subs = self._subscriptions.setdefault(event_type, [])
        subs.append(sub)
        # sort is stable, so equal priorities stay in arrival order
        subs.sort(key=lambda s: (s.awaitable, -s.priority))

    def subscribe(self, event_type: EventType, handler: AsyncHandler, priority: int = 0) -> None:
        """
        Register a coroutine handler.

        Args:
            event_type: Event to listen for.
            handler: Coroutine function taking the event.
            priority: Higher runs earlier.
        """
        self._add(event_type, _Subscription(priority, handler, awaitable=True))

    def subscribe_sync(self, event_type: EventType, handler: SyncHandler, priority: int = 0) -> None:
        """Register a plain function handler."""
        self._add(event_type, _Subscription(priority, handler, awaitable=False))

    def unsubscribe(self, event_type: EventType, handler: AsyncHandler | SyncHandler) -> bool:
        """
        Drop a handler.

        Returns:
            False if it was not subscribed.
        """
        subs = self._subscriptions.get(event_type, [])
        for sub in subs:
            if sub.handler is handler:
                subs.remove(sub)
                return True
        return False

    async def publish(self, event: Event[Any]) -> None:
        """Hand an event to every subscriber of its type."""
        for sub in list(self._subscriptions.get(event.type, ())):
            try:
                if sub.awaitable:
                    await sub.handler(event)  # type: ignore[misc]
                else:
                    sub.handler(event)
            except Exception:
                logger.exception(f"Handler for {event.type.name} failed")

    def handler_count(self, event_type: EventType) -> int:
        return len(self._subscriptions.get(event_type, ()))
