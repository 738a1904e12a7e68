"""Guards for capture calls that can block indefinitely."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, TypeVar

from exceptions import CameraConnectionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_with_timeout(
    func: Callable[..., T],
    timeout_seconds: float,
    error_message: str = "Operation timed out",
    *args: Any,
    **kwargs: Any,
) -> T:
    """Call ``func(*args, **kwargs)`` on a helper thread and wait at most ``timeout_seconds``.

    Some drivers hang inside ``VideoCapture`` when a device is half-plugged.
    The helper thread cannot be interrupted, so on timeout it is abandoned and
    the caller gets a CameraConnectionError straight away. Exceptions raised by
    ``func`` itself propagate unchanged.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="capture-timeout")
    try:
        return pool.submit(func, *args, **kwargs).result(timeout=timeout_seconds)
    except FutureTimeoutError:
        message = f"{error_message} after {timeout_seconds}s"
        logger.error(message)
        raise CameraConnectionError(message) from None
    finally:
        pool.shutdown(wait=False)


def exponential_backoff(attempt: int, base_delay: float = 0.01, max_delay: float = 0.5) -> float:
    """Delay before retry number ``attempt`` (0-based), doubling up to ``max_delay``."""
    return min(base_delay * (2**attempt), max_delay)


__all__ = [
    "run_with_timeout",
    "exponential_backoff",
]
