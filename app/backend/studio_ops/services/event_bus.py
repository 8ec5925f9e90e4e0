"""Cache-invalidation publish/subscribe bus.

Mutating code publishes a named event once a write has completed; any number
of independent subscribers (view refreshers, websocket pushers, caches) react
without the writer knowing about them. One bus instance is created per
application and handed to consumers explicitly.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from typing import Any

from studio_ops.core.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[[dict[str, Any]], Any]

DEFAULT_MAX_SUBSCRIBERS = 100
DEFAULT_DEBOUNCE_SECONDS = 0.5


class CacheEvent(str, Enum):
    PROJECT_CREATED = "project:created"
    PROJECT_UPDATED = "project:updated"
    PROJECT_DELETED = "project:deleted"
    TASK_CREATED = "task:created"
    TASK_UPDATED = "task:updated"
    TASK_STATUS_CHANGED = "task:status_changed"
    TASK_ASSIGNMENT_CHANGED = "task:assignment_changed"
    TASK_DELETED = "task:deleted"
    TASKS_BULK_UPDATED = "tasks:bulk_updated"
    REFRESH_ALL = "refresh:all"


class SubscriberLimitError(RuntimeError):
    def __init__(self, event: CacheEvent, limit: int) -> None:
        super().__init__(f"Subscriber limit of {limit} reached for event {event.value}.")
        self.event = event
        self.limit = limit


class DebouncedHandler:
    """Collapse bursts of calls into one callback after a quiet window.

    Every call cancels the pending timer and schedules a new one, so the
    callback runs once, ``window_seconds`` after the last call, with the last
    payload. Calls from other threads are marshalled onto the owning loop.
    """

    def __init__(
        self,
        callback: Handler,
        *,
        window_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.callback = callback
        self.window_seconds = window_seconds
        self._loop = loop or asyncio.get_running_loop()
        self._timer: asyncio.TimerHandle | None = None
        self._payload: dict[str, Any] = {}
        self._tasks: set[asyncio.Future[Any]] = set()
        self._cancelled = False

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def __call__(self, payload: dict[str, Any]) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._reschedule(payload)
        else:
            self._loop.call_soon_threadsafe(self._reschedule, payload)

    def _reschedule(self, payload: dict[str, Any]) -> None:
        if self._cancelled:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._payload = payload
        self._timer = self._loop.call_later(self.window_seconds, self._fire)

    def _fire(self) -> None:
        self._timer = None
        try:
            result = self.callback(self._payload)
        except Exception:
            logger.warning("Debounced refetch callback failed", exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def cancel(self) -> None:
        """Drop the pending timer; callbacks already running are left to finish."""

        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class Subscription:
    """Handle returned by ``subscribe_debounced``; ``close`` tears everything down."""

    def __init__(self, bus: CacheInvalidationBus, handler: DebouncedHandler, unsubscribe: Callable[[], None]) -> None:
        self._bus = bus
        self.handler = handler
        self._unsubscribe = unsubscribe
        self.closed = False

    @property
    def pending(self) -> bool:
        return self.handler.pending

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._unsubscribe()
        self.handler.cancel()
        self._bus._forget(self)


class CacheInvalidationBus:
    """In-process publish/subscribe channel with a per-event subscriber cap."""

    def __init__(
        self,
        *,
        max_subscribers: int = DEFAULT_MAX_SUBSCRIBERS,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self.max_subscribers = max_subscribers
        self.debounce_seconds = debounce_seconds
        self._handlers: dict[CacheEvent, list[Handler]] = {}
        self._subscriptions: list[Subscription] = []
        self._lock = threading.RLock()
        self.closed = False

    def publish(self, event: CacheEvent | str, payload: Mapping[str, Any] | None = None) -> int:
        """Deliver ``payload`` to every handler of ``event``; return how many ran.

        A failing handler is logged and does not stop delivery to the others.
        """

        name = CacheEvent(event)
        if self.closed:
            logger.warning("Dropping %s published on a closed bus", name.value)
            return 0

        with self._lock:
            handlers = list(self._handlers.get(name, ()))
        body = dict(payload or {})
        logger.debug("Publishing %s to %d subscriber(s): %s", name.value, len(handlers), body)

        delivered = 0
        for handler in handlers:
            try:
                handler(body)
            except Exception:
                logger.warning("Subscriber for %s failed", name.value, exc_info=True)
                continue
            delivered += 1
        return delivered

    def subscribe(self, event: CacheEvent | str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` and return a function that unregisters it."""

        name = CacheEvent(event)
        with self._lock:
            if self.closed:
                raise RuntimeError("Cannot subscribe to a closed event bus.")
            handlers = self._handlers.setdefault(name, [])
            if len(handlers) >= self.max_subscribers:
                raise SubscriberLimitError(name, self.max_subscribers)
            handlers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                current = self._handlers.get(name)
                if current and handler in current:
                    current.remove(handler)

        return unsubscribe

    def subscribe_many(self, events: Iterable[CacheEvent | str], handler: Handler) -> Callable[[], None]:
        unsubscribers: list[Callable[[], None]] = []
        try:
            for event in events:
                unsubscribers.append(self.subscribe(event, handler))
        except Exception:
            for unsubscribe in unsubscribers:
                unsubscribe()
            raise

        def unsubscribe_all() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return unsubscribe_all

    def subscribe_debounced(
        self,
        events: Iterable[CacheEvent | str],
        callback: Handler,
        *,
        window_seconds: float | None = None,
    ) -> Subscription:
        """Subscribe a refetch callback that fires once per burst of events.

        Must be called from inside the event loop that should run ``callback``.
        """

        handler = DebouncedHandler(
            callback,
            window_seconds=self.debounce_seconds if window_seconds is None else window_seconds,
        )
        subscription = Subscription(self, handler, self.subscribe_many(events, handler))
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _forget(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def subscriber_count(self, event: CacheEvent | str | None = None) -> int:
        with self._lock:
            if event is None:
                return sum(len(handlers) for handlers in self._handlers.values())
            return len(self._handlers.get(CacheEvent(event), ()))

    def clear(self) -> None:
        """Cancel debounced subscriptions and drop every handler."""

        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.close()
        with self._lock:
            self._handlers.clear()

    def close(self) -> None:
        self.clear()
        self.closed = True
        logger.info("Cache invalidation bus closed")
