"""Execution domain models and events."""

from .events import ExecutionEvent, ExecutionFinished, ProgressReported, StageChanged, StatusEvent
from .models import TERMINAL_STAGES, ExecutionRecord, ExecutionStage, HistoryEntry

__all__ = [
    "ExecutionEvent",
    "ExecutionFinished",
    "ProgressReported",
    "StageChanged",
    "StatusEvent",
    "ExecutionRecord",
    "ExecutionStage",
    "HistoryEntry",
    "TERMINAL_STAGES",
]
