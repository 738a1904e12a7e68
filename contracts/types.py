"""Core data contracts for capture, matching, state, and predictions."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np

# Seconds before actual expiry at which a token is already treated as expired
TOKEN_EXPIRY_MARGIN_S = 30.0


@dataclass(frozen=True)
class Frame:
    device_id: str
    frame_index: int
    t_capture_monotonic_ns: int
    image: Any
    width: int
    height: int

    @property
    def is_empty(self) -> bool:
        return self.image is None or getattr(self.image, "size", 0) == 0

    def copy(self) -> "Frame":
        """Return a frame that owns an independent copy of the pixel data."""
        image = self.image.copy() if self.image is not None else None
        return Frame(
            device_id=self.device_id,
            frame_index=self.frame_index,
            t_capture_monotonic_ns=self.t_capture_monotonic_ns,
            image=image,
            width=self.width,
            height=self.height,
        )


@dataclass(frozen=True)
class Roi:
    """Rectangle in frame-pixel coordinates."""

    x: int
    y: int
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError(f"ROI size must be non-negative, got {self.width}x{self.height}")

    @property
    def area(self) -> int:
        return self.width * self.height

    def clip(self, frame_width: int, frame_height: int) -> "Roi":
        """Clip to frame bounds. The result may have zero area."""
        x = max(0, self.x)
        y = max(0, self.y)
        right = min(frame_width, self.x + self.width)
        bottom = min(frame_height, self.y + self.height)
        return Roi(x, y, max(0, right - x), max(0, bottom - y))

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.width, self.height)


class TriggerName(str, Enum):
    START = "start"
    WIN = "win"
    LOSE = "lose"


@dataclass(frozen=True)
class Trigger:
    name: str
    roi: Roi
    template: Optional[np.ndarray] = None
    threshold: float = 0.80

    def __post_init__(self) -> None:
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"Threshold must be within [0, 1], got {self.threshold}")

    @property
    def has_template(self) -> bool:
        return self.template is not None and self.template.size > 0

    @property
    def is_armed(self) -> bool:
        """Inert triggers (no template or zero-area ROI) never match."""
        return self.has_template and self.roi.area > 0


@dataclass(frozen=True)
class TriggerScore:
    score: float
    matched: bool


class MatchResult(Enum):
    """Classification of one frame against the triggers active for a state."""

    NONE = "none"
    START = "start"
    WIN = "win"
    LOSE = "lose"


class GameState(Enum):
    STOPPED = "stopped"
    IDLE = "idle"  # Watching for the start screen
    VOTING = "voting"  # Prediction open, watching for win/lose
    RESOLVED = "resolved"  # Outcome detected, waiting to re-arm


@dataclass(frozen=True)
class StateChange:
    state: GameState
    previous: GameState
    classification: MatchResult


class PredictionStatus(Enum):
    NONE = "none"  # Not connected, nothing attempted
    CREATED = "created"
    FAILED = "failed"
    CANCELED = "canceled"
    RESOLVED = "resolved"


@dataclass
class PredictionHandle:
    prediction_id: str
    outcome_ids: list = field(default_factory=list)
    status: PredictionStatus = PredictionStatus.CREATED


@dataclass
class TokenData:
    access_token: str
    refresh_token: str = ""
    expires_at: float = 0.0  # Epoch seconds
    user_id: str = ""
    user_login: str = ""
    user_display_name: str = ""

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at - TOKEN_EXPIRY_MARGIN_S

    def has_valid_token(self, now: Optional[float] = None) -> bool:
        return bool(self.access_token) and not self.is_expired(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "user_id": self.user_id,
            "user_login": self.user_login,
            "user_display_name": self.user_display_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenData":
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(data.get("refresh_token", "")),
            expires_at=float(data.get("expires_at", 0.0)),
            user_id=str(data.get("user_id", "")),
            user_login=str(data.get("user_login", "")),
            user_display_name=str(data.get("user_display_name", "")),
        )
