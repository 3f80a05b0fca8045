"""Bounded in-memory execution history with an optional JSON-lines audit file."""

import json
import logging
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from mcpchat.core.log_sanitizer import sanitize_for_logging
from mcpchat.domain.executions.models import ExecutionStage, HistoryEntry

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_CAPACITY = 1000


class ExecutionHistoryStore:
    """Ring buffer of finished executions; the oldest entry is evicted first."""

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY, audit_file: Optional[str] = None):
        if capacity < 1:
            raise ValueError("History capacity must be at least 1")
        self.capacity = capacity
        self._entries: Deque[HistoryEntry] = deque(maxlen=capacity)
        self._audit_path = Path(audit_file) if audit_file else None
        if self._audit_path is not None:
            try:
                self._audit_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Cannot create audit directory for {self._audit_path}: {e}")

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: HistoryEntry) -> None:
        self._entries.append(entry)
        if self._audit_path is not None:
            self._write_audit(entry)

    def _write_audit(self, entry: HistoryEntry) -> None:
        try:
            with open(self._audit_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict(), default=str) + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.error(
                "Failed to write audit entry for %s: %s",
                sanitize_for_logging(entry.tool_call_id),
                e,
            )

    def _matching(self, session_id: Optional[str]) -> List[HistoryEntry]:
        if session_id is None:
            return list(self._entries)
        return [e for e in self._entries if e.session_id == session_id]

    def query(self, session_id: Optional[str] = None, limit: Optional[int] = None) -> List[HistoryEntry]:
        """Entries newest first, optionally filtered by session and truncated."""
        entries = self._matching(session_id)
        entries.reverse()
        if limit is not None:
            entries = entries[:max(0, limit)]
        return entries

    def count(self, session_id: Optional[str] = None) -> int:
        if session_id is None:
            return len(self._entries)
        return sum(1 for e in self._entries if e.session_id == session_id)

    def find(self, tool_call_id: str) -> Optional[HistoryEntry]:
        """Most recent entry for a tool call id."""
        for entry in reversed(self._entries):
            if entry.tool_call_id == tool_call_id:
                return entry
        return None

    def stats(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        """Counts per terminal stage, average execution time and per-tool counts.

        The average leaves out cancelled executions, whose duration says
        nothing about the tool.
        """
        entries = self._matching(session_id)
        counts = {stage: 0 for stage in (
            ExecutionStage.COMPLETED,
            ExecutionStage.FAILED,
            ExecutionStage.TIMEOUT,
            ExecutionStage.CANCELLED,
        )}
        tool_breakdown: Dict[str, int] = {}
        total_time = 0.0
        timed = 0
        for entry in entries:
            if entry.stage in counts:
                counts[entry.stage] += 1
            tool_breakdown[entry.tool_name] = tool_breakdown.get(entry.tool_name, 0) + 1
            if entry.stage != ExecutionStage.CANCELLED:
                total_time += entry.execution_time_ms
                timed += 1

        return {
            "total": len(entries),
            "completed": counts[ExecutionStage.COMPLETED],
            "failed": counts[ExecutionStage.FAILED],
            "timeout": counts[ExecutionStage.TIMEOUT],
            "cancelled": counts[ExecutionStage.CANCELLED],
            "averageExecutionTime": round(total_time / timed) if timed else 0,
            "toolBreakdown": tool_breakdown,
        }

    def clear(self, session_id: Optional[str] = None) -> int:
        """Remove entries (all, or one session's) and return how many went."""
        if session_id is None:
            removed = len(self._entries)
            self._entries.clear()
            return removed
        kept = [e for e in self._entries if e.session_id != session_id]
        removed = len(self._entries) - len(kept)
        self._entries = deque(kept, maxlen=self.capacity)
        return removed
