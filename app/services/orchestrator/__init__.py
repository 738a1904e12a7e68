"""Orchestration of monitoring runs and prediction side effects."""

from .monitor_session import MonitorSession
from .prediction_orchestrator import PredictionOrchestrator

__all__ = ["MonitorSession", "PredictionOrchestrator"]
