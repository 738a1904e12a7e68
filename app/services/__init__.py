"""Service layer: orchestration of monitoring runs and prediction side effects."""

from .orchestrator import MonitorSession, PredictionOrchestrator

__all__ = ["MonitorSession", "PredictionOrchestrator"]
