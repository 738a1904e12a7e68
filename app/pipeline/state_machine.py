"""Detection state machine driven by frame classifications.

Normal mode:        IDLE -(start)-> VOTING -(win/lose)-> RESOLVED -(delay)-> IDLE
Always-voting mode: VOTING -(win/lose)-> RESOLVED -(delay)-> VOTING

Transitions are serialized under one lock and subscribers are notified
synchronously before the triggering call returns.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Deque, List, Optional

from contracts import GameState, MatchResult, StateChange

logger = logging.getLogger(__name__)

StateListener = Callable[[StateChange], None]

MIN_RESOLVED_DELAY_S = 1.0


class DetectionStateMachine:
    """Thread-safe state machine over STOPPED, IDLE, VOTING and RESOLVED.

    A listener that calls back into the machine while it is being notified
    does not block: the request is queued and runs right after the current
    notification round, before the outer call returns.
    """

    def __init__(self, resolved_delay_seconds: float = 5.0, always_voting: bool = False):
        self._lock = threading.Lock()
        self._state = GameState.STOPPED
        self._always_voting = always_voting
        self._resolved_delay_s = max(MIN_RESOLVED_DELAY_S, float(resolved_delay_seconds))

        self._listeners: List[StateListener] = []
        self._listeners_lock = threading.Lock()

        self._rearm_timer: Optional[threading.Timer] = None
        self._notifying_thread: Optional[int] = None
        self._deferred: Deque[Callable[[], None]] = deque()

    # Properties

    @property
    def state(self) -> GameState:
        if self._notifying_thread == threading.get_ident():
            return self._state
        with self._lock:
            return self._state

    @property
    def always_voting(self) -> bool:
        return self._always_voting

    @always_voting.setter
    def always_voting(self, value: bool) -> None:
        self.set_always_voting(value)

    @property
    def resolved_delay_seconds(self) -> float:
        return self._resolved_delay_s

    @resolved_delay_seconds.setter
    def resolved_delay_seconds(self, value: float) -> None:
        self._resolved_delay_s = max(MIN_RESOLVED_DELAY_S, float(value))

    # Subscriptions

    def subscribe(self, listener: StateListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: StateListener) -> bool:
        with self._listeners_lock:
            try:
                self._listeners.remove(listener)
                return True
            except ValueError:
                return False

    # Commands

    def start(self) -> None:
        """Begin monitoring from STOPPED or RESOLVED."""

        def _start() -> None:
            if self._state in (GameState.STOPPED, GameState.RESOLVED):
                self._transition_to(self._armed_state(), MatchResult.NONE)

        self._execute(_start)

    def stop(self) -> None:
        """Move to STOPPED from any state and drop a pending re-arm."""

        def _stop() -> None:
            self._cancel_rearm()
            self._transition_to(GameState.STOPPED, MatchResult.NONE)

        self._execute(_stop)

    def feed(self, result: MatchResult) -> None:
        """Apply one classification. Results with no matching rule are discarded."""

        def _feed() -> None:
            if self._state == GameState.IDLE and result == MatchResult.START and not self._always_voting:
                self._transition_to(GameState.VOTING, result)
            elif self._state == GameState.VOTING and result in (MatchResult.WIN, MatchResult.LOSE):
                self._transition_to(GameState.RESOLVED, result)
                self._schedule_rearm()

        self._execute(_feed)

    def reset(self) -> None:
        """Re-arm immediately. No-op while STOPPED."""

        def _reset() -> None:
            if self._state == GameState.STOPPED:
                return
            self._cancel_rearm()
            self._transition_to(self._armed_state(), MatchResult.NONE)

        self._execute(_reset)

    def set_always_voting(self, enabled: bool) -> None:
        """Toggle always-voting mode; enabling it while IDLE enters VOTING."""

        def _set() -> None:
            self._always_voting = bool(enabled)
            if self._always_voting and self._state == GameState.IDLE:
                self._transition_to(GameState.VOTING, MatchResult.NONE)

        self._execute(_set)

    def shutdown(self) -> None:
        """Cancel any pending re-arm timer."""
        with self._lock:
            self._cancel_rearm()

    # Internals

    def _armed_state(self) -> GameState:
        return GameState.VOTING if self._always_voting else GameState.IDLE

    def _execute(self, operation: Callable[[], None]) -> None:
        if self._notifying_thread == threading.get_ident():
            # Called from a listener on the notifying thread
            self._deferred.append(operation)
            return

        with self._lock:
            operation()
            while self._deferred:
                self._deferred.popleft()()

    def _transition_to(self, new_state: GameState, classification: MatchResult) -> None:
        if self._state == new_state:
            return
        previous = self._state
        self._state = new_state
        logger.info(f"State {previous.value} -> {new_state.value} ({classification.value})")
        self._notify(StateChange(state=new_state, previous=previous, classification=classification))

    def _notify(self, change: StateChange) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)

        self._notifying_thread = threading.get_ident()
        try:
            for listener in listeners:
                try:
                    listener(change)
                except Exception as e:
                    logger.error(f"State listener failed on {change.state.value}: {e}", exc_info=True)
        finally:
            self._notifying_thread = None

    def _schedule_rearm(self) -> None:
        self._cancel_rearm()
        timer = threading.Timer(self._resolved_delay_s, self._on_rearm_timer)
        timer.daemon = True
        self._rearm_timer = timer
        timer.start()

    def _cancel_rearm(self) -> None:
        if self._rearm_timer is not None:
            self._rearm_timer.cancel()
            self._rearm_timer = None

    def _on_rearm_timer(self) -> None:
        def _rearm() -> None:
            if self._state != GameState.RESOLVED:
                return
            self._rearm_timer = None
            self._transition_to(self._armed_state(), MatchResult.NONE)

        self._execute(_rearm)
