"""Error event bus for reporting non-fatal failures.

Components that absorb an error at their boundary (capture device loss, a
failed prediction call, a history write that did not land) publish it here so
other components, typically a UI, can react without the failure propagating.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

ErrorCallback = Callable[["ErrorEvent"], None]


class ErrorSeverity(Enum):
    INFO = "info"
    WARNING = "warning"  # absorbed, monitoring continues
    ERROR = "error"  # the operation that raised it was abandoned
    CRITICAL = "critical"


_LOG_LEVELS = {
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


class ErrorCategory(Enum):
    """Subsystem an error originated from."""

    CAPTURE = "capture"
    MATCHING = "matching"
    AUTH = "auth"
    PREDICTION = "prediction"
    HISTORY = "history"
    SYSTEM = "system"


@dataclass
class ErrorEvent:
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    source: str
    timestamp: float = field(default_factory=time.time)
    exception: Optional[BaseException] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        text = f"[{self.severity.value.upper()}] {self.category.value}/{self.source}: {self.message}"
        if self.exception is not None:
            text += f" ({type(self.exception).__name__})"
        return text


class ErrorEventBus:
    """Publish-subscribe bus for error events.

    Keeps a bounded history and per-category counts so a late subscriber can
    still show what went wrong. Subscribers run on the publishing thread.
    """

    def __init__(self, max_history: int = 100):
        # Key None holds subscribers to every category.
        self._subscribers: Dict[Optional[ErrorCategory], List[ErrorCallback]] = {}
        self._history: Deque[ErrorEvent] = deque(maxlen=max_history)
        self._counts: Counter = Counter()
        self._lock = threading.Lock()

    def subscribe(self, callback: ErrorCallback, category: Optional[ErrorCategory] = None) -> None:
        """Register callback for one category, or for all when category is None."""
        with self._lock:
            self._subscribers.setdefault(category, []).append(callback)

    def unsubscribe(self, callback: ErrorCallback, category: Optional[ErrorCategory] = None) -> None:
        with self._lock:
            callbacks = self._subscribers.get(category, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def publish(self, event: ErrorEvent) -> None:
        with self._lock:
            self._history.append(event)
            self._counts[event.category] += 1
            targets = list(self._subscribers.get(event.category, ()))
            targets.extend(self._subscribers.get(None, ()))

        logger.log(_LOG_LEVELS[event.severity], str(event))

        for callback in targets:
            try:
                callback(event)
            except Exception as e:
                name = getattr(callback, "__name__", repr(callback))
                logger.error(f"Error subscriber {name} raised: {e}", exc_info=True)

    def report(
        self,
        category: ErrorCategory,
        severity: ErrorSeverity,
        message: str,
        source: str,
        exception: Optional[BaseException] = None,
        **metadata: Any,
    ) -> None:
        """Build and publish an error event in one call."""
        self.publish(
            ErrorEvent(
                category=category,
                severity=severity,
                message=message,
                source=source,
                exception=exception,
                metadata=metadata,
            )
        )

    def get_history(self, category: Optional[ErrorCategory] = None, limit: int = 100) -> List[ErrorEvent]:
        """Oldest-first list of retained events, optionally for one category."""
        with self._lock:
            history = list(self._history)
        if category is not None:
            history = [e for e in history if e.category == category]
        return history[-limit:]

    def get_error_counts(self) -> Dict[ErrorCategory, int]:
        with self._lock:
            return dict(self._counts)

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()
            self._counts.clear()


__all__ = [
    "ErrorSeverity",
    "ErrorCategory",
    "ErrorEvent",
    "ErrorEventBus",
]
