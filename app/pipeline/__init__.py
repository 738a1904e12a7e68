"""Detection pipeline: state machine and matching loop."""

from .matching_loop import MatchingLoop
from .state_machine import DetectionStateMachine

__all__ = ["DetectionStateMachine", "MatchingLoop"]
