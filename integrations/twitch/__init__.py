"""Twitch OAuth session and Helix predictions client."""

from .credentials import AuthResult, CredentialManager
from .http import HttpResponse, HttpTransport, UrllibTransport
from .oauth_config import TwitchOAuthConfig
from .predictions import PredictionClient, PredictionInfo
from .redirect_listener import RedirectListener
from .tokens import FileTokenStore, MemoryTokenStore, TokenStore

__all__ = [
    "AuthResult",
    "CredentialManager",
    "FileTokenStore",
    "HttpResponse",
    "HttpTransport",
    "MemoryTokenStore",
    "PredictionClient",
    "PredictionInfo",
    "RedirectListener",
    "TokenStore",
    "TwitchOAuthConfig",
    "UrllibTransport",
]
