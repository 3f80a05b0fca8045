"""Execution module - tool call tracking, permits, event streams and history."""

from .history import ExecutionHistoryStore
from .permits import Permit, ServerPermitPool
from .stream import ExecutionEventStream, pump_callbacks
from .table import ExecutionTable
from .tracker import ExecutionOutcome, ExecutionTracker

__all__ = [
    "ExecutionEventStream",
    "ExecutionHistoryStore",
    "ExecutionOutcome",
    "ExecutionTable",
    "ExecutionTracker",
    "Permit",
    "ServerPermitPool",
    "pump_callbacks",
]
