"""Capacity-bounded table of in-flight executions."""

from typing import Dict, Generic, Iterator, List, Optional, TypeVar

from mcpchat.domain.errors import ExecutionCapacityError, ValidationError

T = TypeVar("T")


class ExecutionTable(Generic[T]):
    """Arena keyed by tool call id with an explicit capacity.

    Holds at most one entry per id; inserting a duplicate or exceeding the
    capacity raises instead of overwriting.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._slots: Dict[str, T] = {}

    def insert(self, tool_call_id: str, slot: T) -> None:
        if tool_call_id in self._slots:
            raise ValidationError(
                f"Tool call '{tool_call_id}' is already executing",
                code="duplicate_tool_call",
            )
        if len(self._slots) >= self.capacity:
            raise ExecutionCapacityError(
                f"Too many active executions (capacity {self.capacity})",
                code="capacity_exceeded",
            )
        self._slots[tool_call_id] = slot

    def get(self, tool_call_id: str) -> Optional[T]:
        return self._slots.get(tool_call_id)

    def remove(self, tool_call_id: str) -> Optional[T]:
        return self._slots.pop(tool_call_id, None)

    def values(self) -> List[T]:
        return list(self._slots.values())

    def __contains__(self, tool_call_id: object) -> bool:
        return tool_call_id in self._slots

    def __len__(self) -> int:
        return len(self._slots)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._slots))
