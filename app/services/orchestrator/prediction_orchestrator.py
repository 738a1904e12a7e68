"""PredictionOrchestrator - turns state transitions into prediction calls.

Transition handlers run synchronously inside the state machine's
notification, so they only snapshot what they need and enqueue the work.
A single background worker performs the remote calls in transition order,
which keeps a create ahead of the resolve that follows it.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import replace
from typing import Callable, Optional

from app.events.error_bus import ErrorCategory, ErrorEventBus, ErrorSeverity
from app.events.event_bus import EventDispatcher
from app.events.event_types import PredictionUpdatedEvent
from app.pipeline.state_machine import DetectionStateMachine
from configs.settings import PredictionConfig
from contracts import GameState, MatchResult, PredictionHandle, PredictionStatus, StateChange
from exceptions import ChohanError
from integrations.twitch.credentials import CredentialManager
from integrations.twitch.predictions import PredictionClient
from log_config.logger import get_logger
from record.history import EVENT_LOSE, EVENT_START, EVENT_WIN, HistorySink, make_entry

logger = get_logger(__name__)

# Failures of a remote call that are absorbed into a status
_REMOTE_ERRORS = (ChohanError, OSError, ValueError)

_WIN_OUTCOME_INDEX = 0
_LOSE_OUTCOME_INDEX = 1


class PredictionOrchestrator:
    """Binds the detection state machine to the prediction lifecycle.

    - VOTING entered (start/none): create a prediction if a session exists
    - RESOLVED entered: record the outcome, then resolve the live prediction
    - stop(): cancel the live prediction, then stop the state machine

    At most one prediction handle is live. Resolve and stop each take the
    handle under one lock, so only one of them acts on a given prediction.
    """

    def __init__(
        self,
        state_machine: DetectionStateMachine,
        credentials: CredentialManager,
        predictions: PredictionClient,
        settings: Optional[PredictionConfig] = None,
        history: Optional[HistorySink] = None,
        confidence_source: Callable[[], float] = lambda: 0.0,
        dispatcher: Optional[EventDispatcher] = None,
        error_bus: Optional[ErrorEventBus] = None,
    ):
        self._state_machine = state_machine
        self._credentials = credentials
        self._predictions = predictions
        self._settings = settings or PredictionConfig()
        self._history = history
        self._confidence_source = confidence_source
        self._dispatcher = dispatcher
        self._error_bus = error_bus

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="prediction-worker")
        self._handle_lock = threading.Lock()
        self._handle: Optional[PredictionHandle] = None
        self._status = PredictionStatus.NONE
        self._generation = 0
        self._closed = False

        state_machine.subscribe(self._on_state_change)
        logger.info("PredictionOrchestrator initialized")

    # Properties

    @property
    def handle(self) -> Optional[PredictionHandle]:
        """Copy of the live prediction handle, if any."""
        with self._handle_lock:
            return replace(self._handle) if self._handle is not None else None

    @property
    def status(self) -> PredictionStatus:
        return self._status

    # Transition handling (runs on the notifying thread)

    def _on_state_change(self, change: StateChange) -> None:
        if change.state == GameState.VOTING and change.classification in (MatchResult.NONE, MatchResult.START):
            confidence = self._snapshot_confidence()
            generation = self._generation
            self._submit(self._enter_voting, generation, confidence)
        elif change.state == GameState.RESOLVED:
            confidence = self._snapshot_confidence()
            self._submit(self._enter_resolved, change.classification, confidence)

    def _snapshot_confidence(self) -> float:
        try:
            return float(self._confidence_source())
        except Exception as e:
            logger.warning(f"Confidence source failed: {e}")
            return 0.0

    def _submit(self, fn, *args) -> Optional[Future]:
        if self._closed:
            logger.debug(f"Orchestrator shut down, dropping {fn.__name__}")
            return None
        try:
            return self._executor.submit(self._run_task, fn, *args)
        except RuntimeError as e:
            logger.warning(f"Could not schedule {fn.__name__}: {e}")
            return None

    @staticmethod
    def _run_task(fn, *args) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.error(f"Prediction task {fn.__name__} failed: {e}", exc_info=True)

    # Worker tasks

    def _enter_voting(self, generation: int, confidence: float) -> None:
        if generation != self._generation:
            logger.debug("Voting entry superseded by stop, skipping")
            return

        stale = self._take_handle()
        if stale is not None:
            self._cancel_remote(stale, reason="replaced by a new round")

        prediction_id = ""
        if not self._credentials.is_authenticated:
            status = PredictionStatus.NONE
            message = "Not connected to Twitch, no prediction created"
            logger.info(message)
        else:
            settings = self._settings
            try:
                info = self._predictions.create_prediction(
                    settings.title,
                    [settings.win_label, settings.lose_label],
                    settings.duration_seconds,
                )
            except _REMOTE_ERRORS as e:
                status = PredictionStatus.FAILED
                message = f"Prediction create failed: {e}"
                self._report_error(message, e)
            else:
                adopted = False
                with self._handle_lock:
                    if generation == self._generation:
                        self._handle = PredictionHandle(
                            prediction_id=info.prediction_id,
                            outcome_ids=list(info.outcome_ids),
                            status=PredictionStatus.CREATED,
                        )
                        adopted = True
                if not adopted:
                    # Stopped while the create was in flight
                    self._cancel_remote(
                        PredictionHandle(info.prediction_id, list(info.outcome_ids)),
                        reason="created after stop",
                    )
                    return
                prediction_id = info.prediction_id
                status = PredictionStatus.CREATED
                message = f"Prediction {prediction_id} created"

        self._status = status
        self._record_history(EVENT_START, confidence, prediction_id, status)
        self._publish(prediction_id, status, message)

    def _enter_resolved(self, classification: MatchResult, confidence: float) -> None:
        handle = self._take_handle()
        status = handle.status if handle is not None else self._status
        prediction_id = handle.prediction_id if handle is not None else ""
        event_type = EVENT_WIN if classification == MatchResult.WIN else EVENT_LOSE

        self._record_history(event_type, confidence, prediction_id, status)
        self._status = PredictionStatus.NONE
        if handle is None:
            return

        index = _WIN_OUTCOME_INDEX if classification == MatchResult.WIN else _LOSE_OUTCOME_INDEX
        try:
            outcome_id = self._outcome_id(handle, index)
            self._predictions.resolve_prediction(handle.prediction_id, outcome_id)
        except _REMOTE_ERRORS as e:
            # No retry; the handle stays cleared
            message = f"Prediction {handle.prediction_id} resolve failed: {e}"
            self._report_error(message, e)
            self._publish(handle.prediction_id, PredictionStatus.FAILED, message)
            return

        self._publish(
            handle.prediction_id,
            PredictionStatus.RESOLVED,
            f"Prediction {handle.prediction_id} resolved as {event_type}",
        )

    def _outcome_id(self, handle: PredictionHandle, index: int) -> str:
        if index < len(handle.outcome_ids):
            return handle.outcome_ids[index]
        info = self._predictions.get_prediction(handle.prediction_id)
        if index >= len(info.outcome_ids):
            raise ValueError(f"Prediction {handle.prediction_id} has no outcome #{index}")
        return info.outcome_ids[index]

    def _lock_live(self) -> None:
        with self._handle_lock:
            handle = self._handle
        if handle is None:
            logger.info("No live prediction to lock")
            return
        try:
            self._predictions.lock_prediction(handle.prediction_id)
        except _REMOTE_ERRORS as e:
            self._report_error(f"Prediction {handle.prediction_id} lock failed: {e}", e)
            return
        self._publish(handle.prediction_id, handle.status, f"Prediction {handle.prediction_id} locked")

    # Commands

    def lock_prediction(self) -> Optional[Future]:
        """Close voting on the live prediction without resolving it."""
        return self._submit(self._lock_live)

    def stop(self) -> None:
        """Cancel the live prediction (best-effort), then stop the state machine.

        The state machine reaches STOPPED even if the cancel call fails.
        """
        with self._handle_lock:
            self._generation += 1
            handle = self._handle
            self._handle = None

        if handle is not None:
            self._cancel_remote(handle, reason="monitoring stopped")
        self._status = PredictionStatus.NONE
        self._state_machine.stop()

    def wait_idle(self, timeout: float = 5.0) -> bool:
        """Wait until every side effect queued so far has run."""
        marker = self._submit(lambda: None)
        if marker is None:
            return True
        try:
            marker.result(timeout=timeout)
            return True
        except FutureTimeoutError:
            return False

    def shutdown(self, wait: bool = True) -> None:
        """Detach from the state machine and drain the worker.

        Already-queued resolve and cancel calls are allowed to finish.
        """
        self._state_machine.unsubscribe(self._on_state_change)
        self._closed = True
        self._executor.shutdown(wait=wait)

    # Helpers

    def _take_handle(self) -> Optional[PredictionHandle]:
        with self._handle_lock:
            handle = self._handle
            self._handle = None
            return handle

    def _cancel_remote(self, handle: PredictionHandle, reason: str) -> None:
        try:
            self._predictions.cancel_prediction(handle.prediction_id)
        except _REMOTE_ERRORS as e:
            message = f"Prediction {handle.prediction_id} cancel failed ({reason}): {e}"
            self._report_error(message, e)
            self._publish(handle.prediction_id, PredictionStatus.FAILED, message)
            return
        self._publish(
            handle.prediction_id,
            PredictionStatus.CANCELED,
            f"Prediction {handle.prediction_id} canceled ({reason})",
        )

    def _record_history(
        self, event_type: str, confidence: float, prediction_id: str, status: PredictionStatus
    ) -> None:
        if self._history is None:
            return
        try:
            self._history.record(make_entry(event_type, confidence, prediction_id, status))
        except Exception as e:
            logger.error(f"History write failed: {e}")
            if self._error_bus is not None:
                self._error_bus.report(
                    ErrorCategory.HISTORY,
                    ErrorSeverity.WARNING,
                    "History entry could not be recorded",
                    source="PredictionOrchestrator",
                    exception=e,
                    event_type=event_type,
                )

    def _report_error(self, message: str, exception: Exception) -> None:
        logger.error(message)
        if self._error_bus is not None:
            self._error_bus.report(
                ErrorCategory.PREDICTION,
                ErrorSeverity.ERROR,
                message,
                source="PredictionOrchestrator",
                exception=exception,
            )

    def _publish(self, prediction_id: str, status: PredictionStatus, message: str) -> None:
        if self._dispatcher is not None:
            self._dispatcher.publish(
                PredictionUpdatedEvent(prediction_id=prediction_id, status=status, message=message)
            )
