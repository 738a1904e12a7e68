"""Event system for component notifications and error reporting."""

from app.events.error_bus import (
    ErrorCategory,
    ErrorEvent,
    ErrorEventBus,
    ErrorSeverity,
)
from app.events.event_bus import EventBus, EventDispatcher

__all__ = [
    "ErrorCategory",
    "ErrorEvent",
    "ErrorEventBus",
    "ErrorSeverity",
    "EventBus",
    "EventDispatcher",
]
