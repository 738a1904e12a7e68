"""Twitch OAuth session management.

CredentialManager owns the single access/refresh token pair. It restores a
persisted session on startup, runs the interactive authorization code flow,
refreshes tokens behind one gate so concurrent callers share a single token
exchange, and wraps Helix requests with a refresh-and-retry-once policy for
401 responses.
"""

from __future__ import annotations

import secrets
import threading
import time
import webbrowser
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Tuple
from urllib.parse import urlencode

from app.events.event_bus import EventDispatcher
from app.events.event_types import AuthStateChangedEvent
from contracts import TokenData
from exceptions import (
    AuthConfigurationError,
    AuthenticationRequiredError,
    OperationCancelledError,
)
from log_config.logger import get_logger

from .http import FORM_HEADERS, JSON_HEADERS, HttpResponse, HttpTransport, UrllibTransport, form_body, json_body
from .oauth_config import HELIX_BASE_URL, REVOKE_URL, TOKEN_URL, VALIDATE_URL, TwitchOAuthConfig
from .redirect_listener import RedirectListener
from .tokens import TokenStore

logger = get_logger(__name__)

INTERACTIVE_TIMEOUT_S = 300.0


@dataclass(frozen=True)
class AuthResult:
    authenticated: bool
    reason: str


class CredentialManager:
    """Maintains one authenticated Twitch session.

    Args:
        config: Client id, secret and redirect URI
        store: Persistence for the token pair
        transport: HTTP transport (urllib by default)
        dispatcher: Optional dispatcher for AuthStateChangedEvent
        clock: Epoch-seconds clock used for expiry checks
    """

    def __init__(
        self,
        config: TwitchOAuthConfig,
        store: TokenStore,
        transport: Optional[HttpTransport] = None,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._store = store
        self._transport = transport or UrllibTransport()
        self._dispatcher = dispatcher
        self._clock = clock

        self._token: Optional[TokenData] = None
        self._refresh_gate = threading.Lock()

    # Properties

    @property
    def token(self) -> Optional[TokenData]:
        return self._token

    @property
    def is_authenticated(self) -> bool:
        """True while a session exists; an expired token is refreshed on use."""
        token = self._token
        return token is not None and bool(token.access_token)

    @property
    def user_id(self) -> Optional[str]:
        token = self._token
        return token.user_id if token is not None and token.user_id else None

    @property
    def display_name(self) -> Optional[str]:
        token = self._token
        return token.user_display_name if token is not None else None

    # Startup

    def initialize(self) -> AuthResult:
        """Restore the persisted session. Never raises for a missing or stale token."""
        token = self._store.load()
        if token is None:
            return self._report(AuthResult(False, "Not authenticated"))

        self._token = token
        if token.has_valid_token(self._clock()) and self._validate(token.access_token):
            return self._report(AuthResult(True, f"Authenticated as {token.user_display_name}"))

        if token.refresh_token and self._refresh(stale_access_token=token.access_token):
            return self._report(AuthResult(True, f"Authenticated as {token.user_display_name}"))

        self._token = None
        return self._report(AuthResult(False, "Token expired, sign in again"))

    def _validate(self, access_token: str) -> bool:
        try:
            response = self._transport.request(
                "GET", VALIDATE_URL, headers={"Authorization": f"OAuth {access_token}"}
            )
        except OSError as e:
            logger.warning(f"Token validation request failed: {e}")
            return False
        return response.ok

    # Interactive login

    def authenticate_interactive(
        self,
        cancel_event: Optional[threading.Event] = None,
        timeout: float = INTERACTIVE_TIMEOUT_S,
        open_browser: Optional[Callable[[str], Any]] = None,
    ) -> AuthResult:
        """Run the authorization code flow through the user's browser.

        Only one interactive flow may run at a time; callers must not start a
        second one concurrently.

        Raises:
            AuthConfigurationError: If client id or secret is missing
        """
        if not self._config.is_valid:
            raise AuthConfigurationError("Twitch client id and client secret must be configured")

        opener = open_browser or webbrowser.open
        state = secrets.token_urlsafe(16)
        listener = RedirectListener(self._config.redirect_uri, expected_state=state)
        try:
            try:
                listener.start()
            except OSError as e:
                return self._report(AuthResult(False, f"Cannot listen on {self._config.redirect_uri}: {e}"))

            redirect_uri = listener.redirect_uri
            opener(self._config.build_authorize_url(state, redirect_uri=redirect_uri))
            params = listener.wait(timeout, cancel_event)
        except OperationCancelledError:
            return self._report(AuthResult(False, "Authentication cancelled"))
        finally:
            listener.close()

        if params is None:
            return self._report(AuthResult(False, "Authentication timed out"))
        if params.get("error"):
            detail = params.get("error_description") or params["error"]
            return self._report(AuthResult(False, f"Authorization denied: {detail}"))
        if params.get("state") != state:
            return self._report(AuthResult(False, "State parameter mismatch, authentication aborted"))
        code = params.get("code")
        if not code:
            return self._report(AuthResult(False, "No authorization code received"))

        try:
            return self._exchange_code(code, redirect_uri, cancel_event)
        except OperationCancelledError:
            return self._report(AuthResult(False, "Authentication cancelled"))

    def _exchange_code(
        self, code: str, redirect_uri: str, cancel_event: Optional[threading.Event]
    ) -> AuthResult:
        _check_cancel(cancel_event)
        try:
            response = self._transport.request(
                "POST",
                TOKEN_URL,
                headers=FORM_HEADERS,
                body=form_body(
                    {
                        "client_id": self._config.client_id,
                        "client_secret": self._config.client_secret,
                        "code": code,
                        "grant_type": "authorization_code",
                        "redirect_uri": redirect_uri,
                    }
                ),
            )
        except OSError as e:
            return self._report(AuthResult(False, f"Token exchange error: {e}"))

        if not response.ok:
            return self._report(AuthResult(False, f"Token exchange failed: HTTP {response.status}"))
        try:
            access_token, refresh_token, expires_in = _parse_token_response(response)
        except ValueError as e:
            return self._report(AuthResult(False, f"Token response could not be parsed: {e}"))

        _check_cancel(cancel_event)
        user = self._fetch_user(access_token)
        token = TokenData(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=self._clock() + expires_in,
            user_id=str(user.get("id", "")),
            user_login=str(user.get("login", "")),
            user_display_name=str(user.get("display_name", "")),
        )
        self._token = token
        self._persist(token)
        return self._report(AuthResult(True, f"Authenticated as {token.user_display_name}"))

    def _fetch_user(self, access_token: str) -> Mapping[str, Any]:
        try:
            response = self._transport.request(
                "GET",
                f"{HELIX_BASE_URL}/users",
                headers=self._helix_headers(access_token),
            )
            if not response.ok:
                logger.warning(f"User lookup failed: HTTP {response.status}")
                return {}
            users = response.json().get("data") or []
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(f"User lookup failed: {e}")
            return {}
        return users[0] if users else {}

    # Refresh

    def refresh(self) -> bool:
        """Refresh the access token if it is expired.

        Concurrent callers serialize on one gate; callers that arrive after
        another caller already refreshed return True without a network call.
        """
        return self._refresh(stale_access_token=None)

    def _refresh(self, stale_access_token: Optional[str]) -> bool:
        """Refresh behind the gate.

        With ``stale_access_token`` set, the exchange is skipped only if the
        current token differs from it (another caller already replaced it)
        and is still valid. Without it, only an expired token is refreshed.
        """
        if self._token is None:
            return False

        with self._refresh_gate:
            current = self._token
            if current is None or not current.refresh_token:
                return False

            now = self._clock()
            if stale_access_token is None:
                if current.has_valid_token(now):
                    return True
            elif current.access_token != stale_access_token and current.has_valid_token(now):
                return True

            try:
                response = self._transport.request(
                    "POST",
                    TOKEN_URL,
                    headers=FORM_HEADERS,
                    body=form_body(
                        {
                            "client_id": self._config.client_id,
                            "client_secret": self._config.client_secret,
                            "grant_type": "refresh_token",
                            "refresh_token": current.refresh_token,
                        }
                    ),
                )
            except OSError as e:
                # Session kept so a later attempt can still succeed
                logger.warning(f"Token refresh request failed: {e}")
                return False

            if not response.ok:
                self._clear_session(f"Token refresh rejected (HTTP {response.status}), sign in again")
                return False
            try:
                access_token, refresh_token, expires_in = _parse_token_response(response)
            except ValueError as e:
                self._clear_session(f"Token refresh response invalid: {e}")
                return False

            refreshed = TokenData(
                access_token=access_token,
                refresh_token=refresh_token or current.refresh_token,
                expires_at=self._clock() + expires_in,
                user_id=current.user_id,
                user_login=current.user_login,
                user_display_name=current.user_display_name,
            )
            self._token = refreshed
            self._persist(refreshed)
            logger.info(f"Access token refreshed for {refreshed.user_display_name}")
            self._publish(True, "Token refreshed", refreshed.user_display_name)
            return True

    def _clear_session(self, reason: str) -> None:
        self._token = None
        self._forget()
        logger.warning(reason)
        self._publish(False, reason, None)

    # Authenticated calls

    def call_authenticated(
        self,
        method: str,
        path: str,
        body: Optional[Any] = None,
        params: Optional[Mapping[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> HttpResponse:
        """Send a Helix request with the current access token.

        The token is refreshed first if it is at or near expiry. A 401
        response triggers one refresh and exactly one retry.

        Returns:
            The response, unmodified, for every status other than 401

        Raises:
            AuthenticationRequiredError: No session, refresh failed, or the
                retried request was still unauthorized
            OperationCancelledError: cancel_event was set before sending
            OSError: Transport failures propagate unchanged
        """
        token = self._token
        if token is None:
            raise AuthenticationRequiredError("Not authenticated with Twitch")

        if token.is_expired(self._clock()):
            if not self._refresh(stale_access_token=token.access_token):
                raise AuthenticationRequiredError("Token refresh failed, sign in again")

        response, used_token = self._send(method, path, body, params, cancel_event)
        if response.status != 401:
            return response

        logger.info(f"{method} {path} returned 401, refreshing token")
        if not self._refresh(stale_access_token=used_token):
            raise AuthenticationRequiredError("Token refresh failed, sign in again")

        response, _ = self._send(method, path, body, params, cancel_event)
        if response.status == 401:
            raise AuthenticationRequiredError("Request still unauthorized after token refresh")
        return response

    def _send(
        self,
        method: str,
        path: str,
        body: Optional[Any],
        params: Optional[Mapping[str, str]],
        cancel_event: Optional[threading.Event],
    ) -> Tuple[HttpResponse, str]:
        _check_cancel(cancel_event)
        token = self._token
        if token is None:
            raise AuthenticationRequiredError("Not authenticated with Twitch")

        url = path if path.startswith("http") else f"{HELIX_BASE_URL}{path}"
        if params:
            url = f"{url}?{urlencode(params)}"
        headers = self._helix_headers(token.access_token)
        payload = None
        if body is not None:
            headers.update(JSON_HEADERS)
            payload = json_body(body)
        response = self._transport.request(method, url, headers=headers, body=payload)
        return response, token.access_token

    def _helix_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Client-Id": self._config.client_id,
        }

    # Logout

    def logout(self) -> None:
        """Revoke the token (best-effort) and clear the session unconditionally."""
        token = self._token
        if token is not None and token.access_token:
            try:
                response = self._transport.request(
                    "POST",
                    REVOKE_URL,
                    headers=FORM_HEADERS,
                    body=form_body({"client_id": self._config.client_id, "token": token.access_token}),
                )
                if not response.ok:
                    logger.debug(f"Token revoke returned HTTP {response.status}")
            except OSError as e:
                logger.debug(f"Token revoke failed: {e}")

        with self._refresh_gate:
            self._token = None
            self._forget()
        self._report(AuthResult(False, "Logged out"))

    # Helpers

    def _persist(self, token: TokenData) -> None:
        # The in-memory session stays usable when the store cannot be written
        try:
            self._store.save(token)
        except OSError as e:
            logger.error(f"Could not persist Twitch token: {e}")

    def _forget(self) -> None:
        try:
            self._store.delete()
        except OSError as e:
            logger.error(f"Could not delete stored Twitch token: {e}")

    def _report(self, result: AuthResult) -> AuthResult:
        if result.authenticated:
            logger.info(result.reason)
        else:
            logger.warning(result.reason)
        self._publish(result.authenticated, result.reason, self.display_name if result.authenticated else None)
        return result

    def _publish(self, authenticated: bool, reason: str, display_name: Optional[str]) -> None:
        if self._dispatcher is not None:
            self._dispatcher.publish(
                AuthStateChangedEvent(authenticated=authenticated, reason=reason, display_name=display_name)
            )


def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError("Operation cancelled")


def _parse_token_response(response: HttpResponse) -> Tuple[str, str, float]:
    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError("token response is not an object")
    access_token = payload.get("access_token")
    if not access_token:
        raise ValueError("access_token missing")
    try:
        expires_in = float(payload.get("expires_in", 0))
    except (TypeError, ValueError):
        raise ValueError("expires_in is not a number")
    return str(access_token), str(payload.get("refresh_token") or ""), expires_in
