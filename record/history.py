"""Audit trail of detected match starts and outcomes."""

from __future__ import annotations

import json
import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

from contracts import PredictionStatus
from exceptions import HistoryError
from log_config.logger import get_logger

logger = get_logger(__name__)

EVENT_START = "start"
EVENT_WIN = "win"
EVENT_LOSE = "lose"
EVENT_TYPES = (EVENT_START, EVENT_WIN, EVENT_LOSE)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class HistoryEntry:
    event_type: str
    confidence: float
    prediction_id: str = ""
    prediction_status: PredictionStatus = PredictionStatus.NONE
    timestamp: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        if self.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown history event type: {self.event_type!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "confidence": round(float(self.confidence), 4),
            "prediction_id": self.prediction_id,
            "prediction_status": self.prediction_status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            event_type=str(data["event_type"]),
            confidence=float(data.get("confidence", 0.0)),
            prediction_id=str(data.get("prediction_id", "")),
            prediction_status=PredictionStatus(data.get("prediction_status", PredictionStatus.NONE.value)),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


class HistorySink(Protocol):
    def record(self, entry: HistoryEntry) -> None:
        ...


class _HistoryStats(ABC):
    """Win/loss statistics over ``self.load()``."""

    @abstractmethod
    def load(self) -> List[HistoryEntry]:
        ...

    @property
    def win_count(self) -> int:
        return sum(1 for e in self.load() if e.event_type == EVENT_WIN)

    @property
    def lose_count(self) -> int:
        return sum(1 for e in self.load() if e.event_type == EVENT_LOSE)

    @property
    def total_matches(self) -> int:
        return self.win_count + self.lose_count

    @property
    def win_rate(self) -> float:
        """Wins over decided matches; NaN before the first win or loss."""
        total = self.total_matches
        return self.win_count / total if total > 0 else math.nan

    def recent(self, count: int = 20) -> List[HistoryEntry]:
        """Most recent entries first."""
        entries = sorted(self.load(), key=lambda e: e.timestamp, reverse=True)
        return entries[:count]


class MemoryHistorySink(_HistoryStats):
    def __init__(self) -> None:
        self._entries: List[HistoryEntry] = []
        self._lock = threading.Lock()

    def record(self, entry: HistoryEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def load(self) -> List[HistoryEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class JsonlHistorySink(_HistoryStats):
    """Appends one JSON object per line.

    Lines that cannot be parsed are skipped on load.
    """

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def record(self, entry: HistoryEntry) -> None:
        line = json.dumps(entry.to_dict())
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as e:
                raise HistoryError(f"Failed to write history entry to {self._path}: {e}") from e

    def load(self) -> List[HistoryEntry]:
        with self._lock:
            if not self._path.exists():
                return []
            lines = self._path.read_text(encoding="utf-8").splitlines()

        entries: List[HistoryEntry] = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                entries.append(HistoryEntry.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed history line {number} in {self._path}: {e}")
        return entries

    def clear(self) -> None:
        with self._lock:
            try:
                self._path.unlink()
            except FileNotFoundError:
                pass


def make_entry(
    event_type: str,
    confidence: float,
    prediction_id: Optional[str],
    status: PredictionStatus,
) -> HistoryEntry:
    return HistoryEntry(
        event_type=event_type,
        confidence=confidence,
        prediction_id=prediction_id or "",
        prediction_status=status,
    )


__all__ = [
    "EVENT_LOSE",
    "EVENT_START",
    "EVENT_WIN",
    "HistoryEntry",
    "HistorySink",
    "JsonlHistorySink",
    "MemoryHistorySink",
    "make_entry",
]
