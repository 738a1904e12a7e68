"""Twitch Helix predictions client."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from exceptions import PredictionError
from log_config.logger import get_logger

from .credentials import CredentialManager
from .http import HttpResponse

logger = get_logger(__name__)

MAX_TITLE_LENGTH = 45
MAX_OUTCOME_LENGTH = 25
MIN_DURATION_S = 30
MAX_DURATION_S = 1800
MIN_OUTCOMES = 2
MAX_OUTCOMES = 10


@dataclass(frozen=True)
class PredictionInfo:
    prediction_id: str
    outcome_ids: List[str] = field(default_factory=list)
    status: str = ""


def clamp_title(title: str) -> str:
    return title[:MAX_TITLE_LENGTH]


def clamp_outcome(label: str) -> str:
    return label[:MAX_OUTCOME_LENGTH]


def clamp_duration(duration_seconds: int) -> int:
    return max(MIN_DURATION_S, min(MAX_DURATION_S, int(duration_seconds)))


class PredictionClient:
    """Create, lock, resolve and cancel channel predictions.

    Every call goes through CredentialManager.call_authenticated, so a 401
    is refreshed and retried once transparently.

    Raises (all methods):
        PredictionError: Non-success status, malformed response, or no
            broadcaster id for the session
        AuthenticationRequiredError: The session cannot be authenticated
        OSError: Transport failure
    """

    def __init__(self, credentials: CredentialManager):
        self._credentials = credentials

    def create_prediction(
        self,
        title: str,
        outcomes: Sequence[str],
        duration_seconds: int = 60,
        cancel_event: Optional[threading.Event] = None,
    ) -> PredictionInfo:
        if not MIN_OUTCOMES <= len(outcomes) <= MAX_OUTCOMES:
            raise ValueError(f"A prediction needs {MIN_OUTCOMES}-{MAX_OUTCOMES} outcomes, got {len(outcomes)}")

        safe_title = clamp_title(title)
        body = {
            "broadcaster_id": self._broadcaster_id(),
            "title": safe_title,
            "outcomes": [{"title": clamp_outcome(label)} for label in outcomes],
            "prediction_window": clamp_duration(duration_seconds),
        }
        response = self._credentials.call_authenticated(
            "POST", "/predictions", body=body, cancel_event=cancel_event
        )
        info = self._parse_prediction(response, "create")
        logger.info(f"Prediction created: \"{safe_title}\" (id {info.prediction_id})")
        return info

    def lock_prediction(self, prediction_id: str, cancel_event: Optional[threading.Event] = None) -> None:
        self._patch(prediction_id, "LOCKED", cancel_event=cancel_event)
        logger.info(f"Prediction locked: {prediction_id}")

    def resolve_prediction(
        self,
        prediction_id: str,
        winning_outcome_id: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._patch(prediction_id, "RESOLVED", winning_outcome_id=winning_outcome_id, cancel_event=cancel_event)
        logger.info(f"Prediction resolved: {prediction_id} -> outcome {winning_outcome_id}")

    def cancel_prediction(self, prediction_id: str, cancel_event: Optional[threading.Event] = None) -> None:
        self._patch(prediction_id, "CANCELED", cancel_event=cancel_event)
        logger.info(f"Prediction canceled: {prediction_id}")

    def get_prediction(
        self, prediction_id: str, cancel_event: Optional[threading.Event] = None
    ) -> PredictionInfo:
        response = self._credentials.call_authenticated(
            "GET",
            "/predictions",
            params={"broadcaster_id": self._broadcaster_id(), "id": prediction_id},
            cancel_event=cancel_event,
        )
        return self._parse_prediction(response, "get")

    def _patch(
        self,
        prediction_id: str,
        status: str,
        winning_outcome_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        body: Dict[str, Any] = {
            "broadcaster_id": self._broadcaster_id(),
            "id": prediction_id,
            "status": status,
        }
        if winning_outcome_id is not None:
            body["winning_outcome_id"] = winning_outcome_id
        response = self._credentials.call_authenticated(
            "PATCH", "/predictions", body=body, cancel_event=cancel_event
        )
        if not response.ok:
            raise PredictionError(
                f"Prediction {status.lower()} failed: HTTP {response.status} {response.text}",
                status=response.status,
            )

    def _broadcaster_id(self) -> str:
        broadcaster_id = self._credentials.user_id
        if not broadcaster_id:
            raise PredictionError("Broadcaster id unknown for the current session")
        return broadcaster_id

    @staticmethod
    def _parse_prediction(response: HttpResponse, operation: str) -> PredictionInfo:
        if not response.ok:
            raise PredictionError(
                f"Prediction {operation} failed: HTTP {response.status} {response.text}",
                status=response.status,
            )
        try:
            data = response.json().get("data") or []
            prediction = data[0]
            return PredictionInfo(
                prediction_id=str(prediction["id"]),
                outcome_ids=[str(outcome["id"]) for outcome in prediction.get("outcomes", [])],
                status=str(prediction.get("status", "")),
            )
        except (ValueError, AttributeError, IndexError, KeyError, TypeError) as e:
            raise PredictionError(f"Prediction {operation} response could not be parsed: {e}",
                                  status=response.status)
