"""Shared pytest fixtures."""

from __future__ import annotations

import json
import threading
import time
from typing import Callable

import numpy as np
import pytest

from contracts import TokenData
from integrations.twitch.http import HttpResponse
from integrations.twitch.oauth_config import TwitchOAuthConfig
from integrations.twitch.tokens import MemoryTokenStore


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    """Poll a predicate until it holds or the timeout passes."""

    def _wait(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait


@pytest.fixture
def noise_image() -> np.ndarray:
    """Deterministic 240x320 BGR noise frame."""
    rng = np.random.default_rng(1234)
    return rng.integers(0, 256, size=(240, 320, 3), dtype=np.uint8)


NOW = 1_700_000_000.0


class FakeTransport:
    """Scripted HttpTransport stand-in that records every request.

    Routes are matched by method and URL prefix, most recent first. A route
    answers with an HttpResponse, a list of responses consumed in order (the
    last one repeats), or a callable taking the request arguments.
    """

    def __init__(self):
        self.calls = []
        self._routes = []
        self._lock = threading.Lock()

    def on(self, method: str, url_prefix: str, responder) -> None:
        if isinstance(responder, list):
            responder = list(responder)
        with self._lock:
            self._routes.insert(0, (method.upper(), url_prefix, responder))

    def calls_to(self, method: str, url_prefix: str):
        with self._lock:
            return [c for c in self.calls if c[0] == method.upper() and c[1].startswith(url_prefix)]

    def request(self, method, url, headers=None, body=None):
        with self._lock:
            self.calls.append((method.upper(), url, dict(headers or {}), body))
            for route_method, prefix, responder in self._routes:
                if route_method == method.upper() and url.startswith(prefix):
                    break
            else:
                return HttpResponse(404, b'{"message": "no route"}')
            if isinstance(responder, list):
                responder = responder.pop(0) if len(responder) > 1 else responder[0]
        if callable(responder):
            return responder(method, url, headers, body)
        return responder


def json_response(status: int, payload) -> HttpResponse:
    return HttpResponse(status, json.dumps(payload).encode("utf-8"))


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def respond():
    """Factory for JSON responses."""
    return json_response


@pytest.fixture
def make_token():
    def _make(access="access-1", refresh="refresh-1", expires_in=3600.0, user_id="1234", name="Streamer"):
        return TokenData(
            access_token=access,
            refresh_token=refresh,
            expires_at=NOW + expires_in,
            user_id=user_id,
            user_login=name.lower(),
            user_display_name=name,
        )

    return _make


@pytest.fixture
def oauth_config() -> TwitchOAuthConfig:
    return TwitchOAuthConfig("client-id", "client-secret", "http://127.0.0.1:0/callback/")


@pytest.fixture
def clock():
    """Fixed epoch clock for expiry checks."""
    return lambda: NOW


class CountingTokenStore(MemoryTokenStore):
    """MemoryTokenStore that counts saves."""

    def __init__(self, token=None):
        super().__init__(token)
        self.save_count = 0

    def save(self, token):
        super().save(token)
        self.save_count += 1


class UnwritableTokenStore(MemoryTokenStore):
    """Loads normally but fails every write, like a full or read-only disk."""

    def save(self, token):
        raise OSError(28, "No space left on device")

    def delete(self):
        raise PermissionError(13, "Permission denied")


@pytest.fixture
def counting_token_store() -> CountingTokenStore:
    return CountingTokenStore()


@pytest.fixture
def unwritable_token_store():
    """Factory for stores that fail every write."""
    return UnwritableTokenStore
