"""Fixed-period polling loop that feeds matcher results to the state machine."""

from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Protocol

from app.events.error_bus import ErrorCategory, ErrorEventBus, ErrorSeverity
from app.events.event_bus import EventDispatcher
from app.events.event_types import MatchScoresEvent
from app.pipeline.state_machine import DetectionStateMachine
from contracts import Frame, GameState, MatchResult, Trigger, TriggerName, TriggerScore
from detect.template_matcher import match_all
from detect.triggers import TriggerSet
from log_config.logger import get_logger, log_performance

logger = get_logger(__name__)

_RESULT_BY_TRIGGER = {
    TriggerName.START.value: MatchResult.START,
    TriggerName.WIN.value: MatchResult.WIN,
    TriggerName.LOSE.value: MatchResult.LOSE,
}


class LatestFrameProvider(Protocol):
    def get_latest_frame(self) -> Optional[Frame]:
        ...


class MatchingLoop:
    """Pulls the latest frame on a fixed period and classifies it.

    Only the triggers relevant to the current state are evaluated:
    ``start`` while IDLE (outside always-voting mode), ``win`` and ``lose``
    while VOTING. A matched ``win`` takes priority over ``lose``.
    """

    def __init__(
        self,
        frame_source: LatestFrameProvider,
        state_machine: DetectionStateMachine,
        triggers: Optional[TriggerSet] = None,
        period_s: float = 0.1,
        dispatcher: Optional[EventDispatcher] = None,
        error_bus: Optional[ErrorEventBus] = None,
    ):
        self._frame_source = frame_source
        self._state_machine = state_machine
        self._triggers = triggers or TriggerSet.empty()
        self._period_s = period_s
        self._dispatcher = dispatcher
        self._error_bus = error_bus

        self._last_confidence = 0.0
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lifecycle_lock = threading.Lock()

    @property
    def last_confidence(self) -> float:
        """Best score of the most recent tick."""
        return self._last_confidence

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def update_triggers(self, triggers: TriggerSet) -> None:
        """Swap in a new trigger set; takes effect on the next tick."""
        self._triggers = triggers

    def start(self) -> None:
        with self._lifecycle_lock:
            if self.is_running:
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name="matching-loop",
                daemon=True,
            )
            self._thread.start()
            logger.info(f"Matching loop started ({self._period_s * 1000:.0f} ms period)")

    def stop(self, timeout: float = 2.0) -> None:
        with self._lifecycle_lock:
            thread = self._thread
            if thread is None:
                return
            self._stop_event.set()
            if thread is not threading.current_thread():
                thread.join(timeout=timeout)
                if thread.is_alive():
                    logger.warning(f"Matching loop did not exit within {timeout}s")
            self._thread = None
            logger.info("Matching loop stopped")

    def process_frame(self, frame: Frame) -> MatchResult:
        """Run one matching tick against the given frame."""
        state = self._state_machine.state
        selected = self._select_triggers(state)
        if not selected:
            self._last_confidence = 0.0
            return MatchResult.NONE

        scores = match_all(frame, selected)
        best_score = max((s.score for s in scores.values()), default=0.0)
        result = self._classify(selected, scores)
        self._last_confidence = best_score

        if self._dispatcher is not None:
            self._dispatcher.publish(
                MatchScoresEvent(state=state, scores=scores, best_score=best_score, result=result)
            )

        if result != MatchResult.NONE:
            logger.debug(f"Classified {result.value} in {state.value} (score {best_score:.3f})")
            self._state_machine.feed(result)
        return result

    def _select_triggers(self, state: GameState) -> List[Trigger]:
        triggers = self._triggers
        if state == GameState.IDLE and not self._state_machine.always_voting:
            return [triggers.start]
        if state == GameState.VOTING:
            return [triggers.win, triggers.lose]
        return []

    @staticmethod
    def _classify(selected: List[Trigger], scores: Dict[str, TriggerScore]) -> MatchResult:
        # Selection order encodes priority
        for trigger in selected:
            score = scores.get(trigger.name)
            if score is not None and score.matched:
                return _RESULT_BY_TRIGGER.get(trigger.name, MatchResult.NONE)
        return MatchResult.NONE

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            tick_start = time.perf_counter()
            try:
                frame = self._frame_source.get_latest_frame()
                if frame is not None and not frame.is_empty:
                    self.process_frame(frame)
            except Exception as e:
                logger.error(f"Matching tick failed: {e}")
                if self._error_bus is not None:
                    self._error_bus.report(
                        ErrorCategory.MATCHING,
                        ErrorSeverity.ERROR,
                        "Matching tick failed",
                        source="MatchingLoop",
                        exception=e,
                    )

            elapsed = time.perf_counter() - tick_start
            log_performance("matching tick", elapsed * 1000.0, threshold_ms=self._period_s * 1000.0)
            stop_event.wait(max(0.0, self._period_s - elapsed))
