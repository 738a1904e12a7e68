"""Persistent storage for the OAuth token pair."""

from __future__ import annotations

import json
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from contracts import TokenData
from log_config.logger import get_logger

logger = get_logger(__name__)


class TokenStore(ABC):
    """Opaque persistence for a single token. Implementations must be thread-safe."""

    @abstractmethod
    def load(self) -> Optional[TokenData]:
        ...

    @abstractmethod
    def save(self, token: TokenData) -> None:
        ...

    @abstractmethod
    def delete(self) -> None:
        ...


class MemoryTokenStore(TokenStore):
    def __init__(self, token: Optional[TokenData] = None):
        self._token = token
        self._lock = threading.Lock()

    def load(self) -> Optional[TokenData]:
        with self._lock:
            return self._token

    def save(self, token: TokenData) -> None:
        with self._lock:
            self._token = token

    def delete(self) -> None:
        with self._lock:
            self._token = None


class FileTokenStore(TokenStore):
    """Stores the token as JSON readable only by the current user.

    A file that cannot be parsed is deleted and treated as absent.
    """

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[TokenData]:
        with self._lock:
            if not self._path.exists():
                return None
            try:
                data = json.loads(self._path.read_text(encoding="utf-8"))
                token = TokenData.from_dict(data)
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Discarding unreadable token file {self._path}: {e}")
                self._delete_locked()
                return None
            if not token.access_token:
                self._delete_locked()
                return None
            return token

    def save(self, token: TokenData) -> None:
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            fd = os.open(str(tmp_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(token.to_dict(), f, indent=2)
            os.replace(tmp_path, self._path)
            try:
                os.chmod(self._path, 0o600)
            except OSError as e:
                logger.debug(f"Could not restrict permissions on {self._path}: {e}")

    def delete(self) -> None:
        with self._lock:
            self._delete_locked()

    def _delete_locked(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
