"""MonitorSession - wires capture, matching, state and predictions for one run."""

from __future__ import annotations

import threading
from typing import Optional

from app.events.error_bus import ErrorEventBus
from app.events.event_bus import EventDispatcher
from app.pipeline.matching_loop import MatchingLoop
from app.pipeline.state_machine import DetectionStateMachine
from capture.frame_source import FrameSource
from contracts import GameState
from detect.triggers import TriggerSet
from log_config.logger import get_logger

from .prediction_orchestrator import PredictionOrchestrator

logger = get_logger(__name__)


class MonitorSession:
    """Owns one monitoring run.

    Start order: capture, state machine, matching loop.
    Stop order: matching loop, capture, then the orchestrator's stop, which
    cancels a live prediction before the state machine reaches STOPPED.
    """

    def __init__(
        self,
        frame_source: FrameSource,
        state_machine: DetectionStateMachine,
        matching_loop: MatchingLoop,
        orchestrator: PredictionOrchestrator,
        dispatcher: Optional[EventDispatcher] = None,
        error_bus: Optional[ErrorEventBus] = None,
    ):
        self._frame_source = frame_source
        self._state_machine = state_machine
        self._matching_loop = matching_loop
        self._orchestrator = orchestrator
        self._dispatcher = dispatcher
        self._error_bus = error_bus
        self._lock = threading.Lock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state(self) -> GameState:
        return self._state_machine.state

    @property
    def last_confidence(self) -> float:
        return self._matching_loop.last_confidence

    def start(self, device_id: str, width: int = 640, height: int = 480) -> None:
        with self._lock:
            if self._running:
                logger.warning("Monitor session already running")
                return
            logger.info(f"Starting monitor session on device {device_id}")
            if self._dispatcher is not None:
                self._dispatcher.start()
            self._frame_source.start(device_id, width, height)
            self._state_machine.start()
            self._matching_loop.start()
            self._running = True

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            logger.info("Stopping monitor session")
            self._matching_loop.stop()
            self._frame_source.stop()
            self._orchestrator.stop()
            self._running = False

    def close(self) -> None:
        """Stop, let dispatched remote calls finish, and release workers."""
        self.stop()
        self._orchestrator.shutdown(wait=True)
        self._state_machine.shutdown()
        if self._dispatcher is not None:
            self._dispatcher.wait_until_idle(timeout=1.0)
            self._dispatcher.stop()

    def set_always_voting(self, enabled: bool) -> None:
        self._state_machine.set_always_voting(enabled)

    def update_triggers(self, triggers: TriggerSet) -> None:
        self._matching_loop.update_triggers(triggers)

    def reset(self) -> None:
        self._state_machine.reset()

    def lock_prediction(self) -> None:
        self._orchestrator.lock_prediction()
