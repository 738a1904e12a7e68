"""Thread-safe EventBus and a queued dispatcher in front of it.

The EventBus delivers events synchronously on the publisher's thread. The
EventDispatcher puts a worker thread between producers and the bus so a slow
or failing subscriber never holds up a capture or matching loop.
"""

from __future__ import annotations

import threading
import time
from collections import Counter, deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from log_config.logger import get_logger

logger = get_logger(__name__)

EventType = TypeVar('EventType')
EventHandler = Callable[[EventType], None]


class EventBus:
    """Type-keyed publish/subscribe with synchronous delivery.

    Handlers run on the publisher's thread in subscription order. A handler
    that raises is logged and skipped; the remaining handlers still run.

    Example:
        ```python
        bus = EventBus()
        bus.subscribe(StateChangedEvent, lambda e: print(f"Now {e.state}"))
        bus.publish(StateChangedEvent(GameState.IDLE, GameState.STOPPED, MatchResult.NONE))
        ```
    """

    def __init__(self):
        self._handlers: Dict[Type, List[EventHandler]] = {}
        self._published: Counter = Counter()
        self._lock = threading.Lock()
        self._created_at = time.time()

    def subscribe(self, event_type: Type[EventType], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.setdefault(event_type, [])
            handlers.append(handler)
            count = len(handlers)
        logger.debug(f"Subscribed to {event_type.__name__} ({count} handler(s))")

    def unsubscribe(self, event_type: Type[EventType], handler: EventHandler) -> bool:
        """Remove handler; returns False when it was not subscribed."""
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler not in handlers:
                return False
            handlers.remove(handler)
            return True

    def publish(self, event: Any) -> None:
        event_type = type(event)
        with self._lock:
            handlers = list(self._handlers.get(event_type, ()))
            self._published[event_type] += 1

        failures = 0
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                failures += 1
                logger.error(f"{event_type.__name__} handler raised {e.__class__.__name__}: {e}")
        if failures:
            logger.warning(f"{failures}/{len(handlers)} handlers failed for {event_type.__name__}")

    def get_subscriber_count(self, event_type: Type[EventType]) -> int:
        with self._lock:
            return len(self._handlers.get(event_type, ()))

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of event_types, total_subscribers, event_counts and uptime_seconds."""
        with self._lock:
            return {
                "event_types": len(self._handlers),
                "total_subscribers": sum(len(h) for h in self._handlers.values()),
                "event_counts": {t.__name__: n for t, n in self._published.items()},
                "uptime_seconds": time.time() - self._created_at,
            }


class EventDispatcher:
    """Queues events and delivers them to an EventBus from a worker thread.

    Event types listed in ``coalesce`` keep only their most recent pending
    instance: if a newer one arrives before the worker has delivered the
    previous one, the previous one is dropped. All other events are delivered
    in publish order.

    ``publish`` never blocks on subscriber execution.
    """

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        coalesce: Iterable[Type] = (),
        name: str = "event-dispatcher",
    ):
        self._bus = bus or EventBus()
        self._coalesce = frozenset(coalesce)
        self._name = name
        self._queue: Deque[Tuple[str, Any]] = deque()
        self._latest: Dict[Type, Any] = {}
        self._cond = threading.Condition()
        self._running = False
        self._busy = False
        self._thread: Optional[threading.Thread] = None
        self._dropped = 0

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def dropped_count(self) -> int:
        with self._cond:
            return self._dropped

    def subscribe(self, event_type: Type[EventType], handler: EventHandler) -> None:
        self._bus.subscribe(event_type, handler)

    def unsubscribe(self, event_type: Type[EventType], handler: EventHandler) -> bool:
        return self._bus.unsubscribe(event_type, handler)

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._running = True
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        """Stop the worker. Events still queued are discarded."""
        with self._cond:
            if not self._running:
                return
            self._running = False
            self._queue.clear()
            self._latest.clear()
            self._cond.notify_all()
            thread = self._thread
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def publish(self, event: Any) -> None:
        event_type = type(event)
        with self._cond:
            if not self._running:
                return
            if event_type in self._coalesce:
                if event_type in self._latest:
                    self._dropped += 1
                    self._latest[event_type] = event
                    return
                self._latest[event_type] = event
                self._queue.append(("latest", event_type))
            else:
                self._queue.append(("event", event))
            self._cond.notify()

    def wait_until_idle(self, timeout: float = 1.0) -> bool:
        """Block until every queued event has been delivered."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._queue or self._busy:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def _run(self) -> None:
        while True:
            with self._cond:
                while self._running and not self._queue:
                    self._cond.wait()
                if not self._running:
                    return
                kind, payload = self._queue.popleft()
                if kind == "latest":
                    event = self._latest.pop(payload)
                else:
                    event = payload
                self._busy = True

            try:
                self._bus.publish(event)
            finally:
                with self._cond:
                    self._busy = False
                    self._cond.notify_all()
