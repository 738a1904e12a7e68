"""Twitch OAuth endpoints, scopes and client settings."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

AUTHORIZE_URL = "https://id.twitch.tv/oauth2/authorize"
TOKEN_URL = "https://id.twitch.tv/oauth2/token"
VALIDATE_URL = "https://id.twitch.tv/oauth2/validate"
REVOKE_URL = "https://id.twitch.tv/oauth2/revoke"
HELIX_BASE_URL = "https://api.twitch.tv/helix"

REQUIRED_SCOPES = (
    "channel:read:predictions",
    "channel:manage:predictions",
)

DEFAULT_REDIRECT_URI = "http://localhost:8080/callback/"


@dataclass(frozen=True)
class TwitchOAuthConfig:
    """Application credentials registered in the Twitch developer console."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = DEFAULT_REDIRECT_URI

    @property
    def is_valid(self) -> bool:
        return bool(self.client_id.strip()) and bool(self.client_secret.strip())

    @property
    def scope_string(self) -> str:
        return " ".join(REQUIRED_SCOPES)

    def build_authorize_url(self, state: str, redirect_uri: Optional[str] = None) -> str:
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": redirect_uri or self.redirect_uri,
                "response_type": "code",
                "scope": self.scope_string,
                "state": state,
                "force_verify": "true",
            }
        )
        return f"{AUTHORIZE_URL}?{query}"
