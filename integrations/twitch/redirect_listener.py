"""Local HTTP listener that receives the OAuth authorization redirect."""

from __future__ import annotations

import html
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse, urlunparse

from exceptions import OperationCancelledError
from log_config.logger import get_logger

logger = get_logger(__name__)

_PAGE = """<!DOCTYPE html>
<html><head><meta charset="utf-8"><title>Chohan - {title}</title></head>
<body style="font-family: sans-serif; text-align: center; margin-top: 15%;">
<h1 style="color: {color};">{title}</h1>
<p>{message}</p>
</body></html>
"""


def _normalize_path(path: str) -> str:
    return path.rstrip("/") or "/"


class RedirectListener:
    """Serves the redirect URI on localhost until one callback arrives.

    Usage:
        with RedirectListener(redirect_uri, expected_state=state) as listener:
            open_browser(url)
            params = listener.wait(timeout=300, cancel_event=cancel)
    """

    def __init__(self, redirect_uri: str, expected_state: Optional[str] = None):
        parsed = urlparse(redirect_uri)
        self._parsed = parsed
        self._host = parsed.hostname or "localhost"
        self._port = parsed.port or 80
        self._path = _normalize_path(parsed.path or "/")
        self._expected_state = expected_state

        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._received = threading.Event()
        self._params: Optional[Dict[str, str]] = None

    @property
    def redirect_uri(self) -> str:
        """Redirect URI with the port actually bound."""
        port = self._server.server_address[1] if self._server is not None else self._port
        netloc = f"{self._host}:{port}"
        return urlunparse(self._parsed._replace(netloc=netloc))

    def start(self) -> None:
        listener = self

        class _CallbackHandler(BaseHTTPRequestHandler):
            def do_GET(self):
                parsed = urlparse(self.path)
                if _normalize_path(parsed.path) != listener._path:
                    self.send_error(404)
                    return
                params = {key: values[0] for key, values in parse_qs(parsed.query).items() if values}
                title, message, success = listener._describe(params)
                body = _PAGE.format(
                    title=html.escape(title),
                    message=html.escape(message),
                    color="#4CAF50" if success else "#FF4533",
                ).encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)
                listener._deliver(params)

            def log_message(self, format, *args):
                logger.debug(f"Redirect listener: {format % args}")

        self._server = HTTPServer((self._host, self._port), _CallbackHandler)
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name="oauth-redirect-listener",
            daemon=True,
        )
        self._thread.start()
        logger.debug(f"Listening for OAuth redirect on {self.redirect_uri}")

    def wait(self, timeout: float, cancel_event: Optional[threading.Event] = None) -> Optional[Dict[str, str]]:
        """Wait for the redirect's query parameters.

        Returns:
            The query parameters, or None on timeout

        Raises:
            OperationCancelledError: If cancel_event is set while waiting
        """
        deadline = time.monotonic() + timeout
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError("Authorization cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            if self._received.wait(min(0.1, remaining)):
                return dict(self._params or {})

    def close(self) -> None:
        server = self._server
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
        self._thread = None
        logger.debug("OAuth redirect listener closed")

    def __enter__(self) -> "RedirectListener":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _deliver(self, params: Dict[str, str]) -> None:
        if self._received.is_set():
            return
        self._params = params
        self._received.set()

    def _describe(self, params: Dict[str, str]) -> Tuple[str, str, bool]:
        if params.get("error"):
            return "Authorization failed", f"Twitch returned an error: {params['error']}", False
        if self._expected_state is not None and params.get("state") != self._expected_state:
            return "Security error", "The state parameter did not match. Authorization was aborted.", False
        if not params.get("code"):
            return "Authorization failed", "No authorization code was received.", False
        return "Authorization complete", "Chohan is now linked. You can close this tab.", True
