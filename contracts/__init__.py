"""Shared data contracts for Chohan."""

from .types import (
    Frame,
    GameState,
    MatchResult,
    PredictionHandle,
    PredictionStatus,
    Roi,
    StateChange,
    TokenData,
    Trigger,
    TriggerName,
    TriggerScore,
)

__all__ = [
    "Frame",
    "GameState",
    "MatchResult",
    "PredictionHandle",
    "PredictionStatus",
    "Roi",
    "StateChange",
    "TokenData",
    "Trigger",
    "TriggerName",
    "TriggerScore",
]
