"""Tests for capture timeout and backoff helpers."""

from __future__ import annotations

import time

import pytest

from capture.timeout_utils import exponential_backoff, run_with_timeout
from exceptions import CameraConnectionError


class TestRunWithTimeout:
    """run_with_timeout guards device calls that can hang."""

    def test_returns_result_of_fast_call(self):
        assert run_with_timeout(lambda: 42, timeout_seconds=1.0) == 42

    def test_slow_call_raises_connection_error(self):
        """A call that outlives the timeout surfaces as a connection error."""

        def hang():
            time.sleep(1.0)

        with pytest.raises(CameraConnectionError, match="timed out"):
            run_with_timeout(hang, timeout_seconds=0.1)

    def test_caller_is_released_promptly(self):
        started = time.monotonic()
        with pytest.raises(CameraConnectionError):
            run_with_timeout(time.sleep, 0.1, "Device open timed out", 1.0)
        assert time.monotonic() - started < 0.8

    def test_errors_from_call_propagate(self):
        def broken():
            raise ValueError("bad index")

        with pytest.raises(ValueError, match="bad index"):
            run_with_timeout(broken, timeout_seconds=1.0)

    def test_forwards_arguments(self):
        def join(a, b, sep="-"):
            return f"{a}{sep}{b}"

        assert run_with_timeout(join, 1.0, "unused", "x", "y", sep="+") == "x+y"

    def test_custom_message_used(self):
        with pytest.raises(CameraConnectionError, match="Open of device 3"):
            run_with_timeout(time.sleep, 0.05, "Open of device 3", 0.5)


class TestExponentialBackoff:
    """Delays used between failed frame reads."""

    def test_starts_at_base_delay(self):
        assert exponential_backoff(0, base_delay=0.01) == 0.01

    def test_doubles_each_attempt(self):
        delays = [exponential_backoff(i, base_delay=0.05, max_delay=10.0) for i in range(4)]
        assert delays == [0.05, 0.1, 0.2, 0.4]

    def test_capped_at_max_delay(self):
        assert exponential_backoff(20, base_delay=0.01, max_delay=0.5) == 0.5
