"""Event types for UI-facing notifications.

All events are immutable dataclasses that flow through the EventBus.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from contracts import Frame, GameState, MatchResult, PredictionStatus, TriggerScore


@dataclass(frozen=True)
class FrameCapturedEvent:
    """Published for every frame the capture loop reads.

    Published By: FrameSource
    Frequency: up to the capture target rate (~30/sec)

    Attributes:
        frame: Independent copy of the captured frame
    """
    frame: Frame


@dataclass(frozen=True)
class MatchScoresEvent:
    """Published once per matching tick.

    Attributes:
        state: State the triggers were selected for
        scores: Per-trigger score and matched flag
        best_score: Highest score this tick (0.0 when nothing evaluated)
        result: Classification fed to the state machine
    """
    state: GameState
    scores: Dict[str, TriggerScore]
    best_score: float
    result: MatchResult


@dataclass(frozen=True)
class StateChangedEvent:
    state: GameState
    previous: GameState
    classification: MatchResult


@dataclass(frozen=True)
class PredictionUpdatedEvent:
    """Published when the live prediction changes remotely or locally.

    Attributes:
        prediction_id: Remote id, empty when no prediction was created
        status: Status after the operation
        message: Human-readable summary
    """
    prediction_id: str
    status: PredictionStatus
    message: str = ""


@dataclass(frozen=True)
class AuthStateChangedEvent:
    authenticated: bool
    reason: str
    display_name: Optional[str] = None
