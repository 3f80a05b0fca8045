"""Typed execution events.

Every update about an execution is one of three frozen event types:

- ``StageChanged``: a move to a non-terminal stage.
- ``ProgressReported``: a progress frame from the server while executing.
- ``ExecutionFinished``: the single terminal event; carries either a result
  or an error, never both.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Literal, Optional, Union

from mcpchat.domain.executions.models import ExecutionStage, utc_now


@dataclass(frozen=True)
class StageChanged:
    tool_call_id: str
    stage: ExecutionStage
    message: str
    timestamp: datetime = field(default_factory=utc_now)
    kind: Literal["stage"] = "stage"

    def __post_init__(self) -> None:
        if self.stage.is_terminal:
            raise ValueError(f"StageChanged cannot carry terminal stage {self.stage.value}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "toolCallId": self.tool_call_id,
            "stage": self.stage.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ProgressReported:
    tool_call_id: str
    progress: float
    message: str = ""
    total: Optional[float] = None
    timestamp: datetime = field(default_factory=utc_now)
    kind: Literal["progress"] = "progress"

    @property
    def stage(self) -> ExecutionStage:
        return ExecutionStage.EXECUTING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "toolCallId": self.tool_call_id,
            "stage": self.stage.value,
            "progress": self.progress,
            "total": self.total,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ExecutionFinished:
    tool_call_id: str
    stage: ExecutionStage
    message: str
    result: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    kind: Literal["finished"] = "finished"

    def __post_init__(self) -> None:
        if not self.stage.is_terminal:
            raise ValueError(f"ExecutionFinished requires a terminal stage, got {self.stage.value}")
        if self.result is not None and self.error is not None:
            raise ValueError("ExecutionFinished carries a result or an error, not both")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.kind,
            "toolCallId": self.tool_call_id,
            "stage": self.stage.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error is not None:
            data["error"] = self.error
        return data


ExecutionEvent = Union[StageChanged, ProgressReported, ExecutionFinished]
StatusEvent = Union[StageChanged, ExecutionFinished]
