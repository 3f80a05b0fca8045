"""Domain models for tool executions and their history."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ExecutionStage(str, Enum):
    """Execution lifecycle stages."""
    PENDING = "pending"
    VALIDATING = "validating"
    CONNECTING = "connecting"
    EXECUTING = "executing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


TERMINAL_STAGES = frozenset({
    ExecutionStage.COMPLETED,
    ExecutionStage.FAILED,
    ExecutionStage.CANCELLED,
    ExecutionStage.TIMEOUT,
})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExecutionRecord:
    """In-flight execution state. Owned exclusively by ExecutionTracker."""
    tool_call_id: str
    session_id: str
    server_id: str
    tool_name: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    start_time: datetime = field(default_factory=utc_now)
    timeout: float = 30.0
    stage: ExecutionStage = ExecutionStage.PENDING
    progress: float = 0.0
    last_message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "toolCallId": self.tool_call_id,
            "sessionId": self.session_id,
            "serverId": self.server_id,
            "toolName": self.tool_name,
            "parameters": self.parameters,
            "startTime": self.start_time.isoformat(),
            "timeout": self.timeout,
            "stage": self.stage.value,
            "progress": self.progress,
            "lastMessage": self.last_message,
        }


@dataclass(frozen=True)
class HistoryEntry:
    """Immutable record of a finished execution."""
    tool_call_id: str
    session_id: str
    server_id: str
    tool_name: str
    parameters: Dict[str, Any]
    start_time: datetime
    timeout: float
    stage: ExecutionStage
    progress: float
    last_message: str
    end_time: datetime
    execution_time_ms: float
    result: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_record(
        cls,
        record: ExecutionRecord,
        *,
        end_time: datetime,
        result: Optional[str] = None,
        error: Optional[str] = None,
    ) -> "HistoryEntry":
        elapsed_ms = max(0.0, (end_time - record.start_time).total_seconds() * 1000.0)
        return cls(
            tool_call_id=record.tool_call_id,
            session_id=record.session_id,
            server_id=record.server_id,
            tool_name=record.tool_name,
            parameters=dict(record.parameters),
            start_time=record.start_time,
            timeout=record.timeout,
            stage=record.stage,
            progress=record.progress,
            last_message=record.last_message,
            end_time=end_time,
            execution_time_ms=round(elapsed_ms, 3),
            result=result,
            error=error,
        )

    @property
    def succeeded(self) -> bool:
        return self.stage == ExecutionStage.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "toolCallId": self.tool_call_id,
            "sessionId": self.session_id,
            "serverId": self.server_id,
            "toolName": self.tool_name,
            "parameters": self.parameters,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat(),
            "timeout": self.timeout,
            "stage": self.stage.value,
            "progress": self.progress,
            "lastMessage": self.last_message,
            "executionTimeMs": self.execution_time_ms,
        }
        if self.error is not None:
            data["error"] = self.error
        else:
            data["result"] = self.result
        return data
