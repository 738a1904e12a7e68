"""Minimal HTTP transport used by the Twitch clients."""

from __future__ import annotations

import http.client
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional
from urllib.error import HTTPError
from urllib.parse import urlencode
from urllib.request import Request, urlopen


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decode the body as JSON. Raises ValueError on malformed content."""
        if not self.body:
            return {}
        return json.loads(self.body.decode("utf-8"))


class HttpTransport(ABC):
    """Sends one request and returns the response.

    Non-2xx statuses are returned as responses. Connection failures raise
    OSError (urllib's URLError and socket timeouts are OSError subclasses;
    protocol failures such as a truncated body surface as ConnectionError).
    """

    @abstractmethod
    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> HttpResponse:
        ...


class UrllibTransport(HttpTransport):
    """urllib.request based transport."""

    def __init__(self, timeout: float = 10.0):
        self._timeout = timeout

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> HttpResponse:
        req = Request(url, data=body, headers=dict(headers or {}), method=method.upper())
        try:
            try:
                with urlopen(req, timeout=self._timeout) as response:
                    return HttpResponse(
                        status=response.status,
                        body=response.read(),
                        headers=dict(response.headers.items()),
                    )
            except HTTPError as e:
                payload = e.read() if e.fp is not None else b""
                return HttpResponse(
                    status=e.code,
                    body=payload,
                    headers=dict(e.headers.items()) if e.headers is not None else {},
                )
        except http.client.HTTPException as e:
            raise ConnectionError(f"{method.upper()} {url} failed: {e!r}") from e


def form_body(fields: Mapping[str, str]) -> bytes:
    return urlencode(fields).encode("utf-8")


def json_body(payload: Any) -> bytes:
    return json.dumps(payload).encode("utf-8")


FORM_HEADERS: Dict[str, str] = {"Content-Type": "application/x-www-form-urlencoded"}
JSON_HEADERS: Dict[str, str] = {"Content-Type": "application/json"}
