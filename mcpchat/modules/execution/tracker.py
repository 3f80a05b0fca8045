"""Tool execution tracking.

``ExecutionTracker`` runs one tool call through its lifecycle::

    pending -> validating -> [pending] -> [connecting] -> executing -> processing
        -> completed | failed | cancelled | timeout

Each execution is a drive task plus exactly one timer armed at admission.
Cancellation, timeout and normal completion all end in ``_finish``, a
synchronous check-and-set: whichever reaches it first wins, releases the
permit and writes the single history entry.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Union

from mcpchat.core.log_sanitizer import (
    sanitize_for_logging,
    summarize_tool_arguments_for_logging,
    truncate_for_logging,
)
from mcpchat.core.logging_config import get_tracer
from mcpchat.core.metrics_logger import log_metric
from mcpchat.domain.errors import (
    ConfigurationError,
    DomainError,
    ExecutionCancelledError,
    ExecutionNotFoundError,
    ProtocolError,
    ServerDisabledError,
    ServerNotFoundError,
    ToolExecutionError,
    ToolTimeoutError,
    TransportError,
    ValidationError,
)
from mcpchat.domain.executions.events import (
    ExecutionEvent,
    ExecutionFinished,
    ProgressReported,
    StageChanged,
)
from mcpchat.domain.executions.models import (
    ExecutionRecord,
    ExecutionStage,
    HistoryEntry,
    utc_now,
)
from mcpchat.domain.tools.models import (
    ConnectionState,
    ToolCall,
    split_function_name,
    try_split_function_name,
)
from mcpchat.modules.config.config_manager import AppSettings, MCPServerConfig
from mcpchat.modules.execution.history import ExecutionHistoryStore
from mcpchat.modules.execution.permits import Permit, ServerPermitPool
from mcpchat.modules.execution.stream import EventCallback, ExecutionEventStream, pump_callbacks
from mcpchat.modules.execution.table import ExecutionTable
from mcpchat.modules.mcp_tools.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


@dataclass(frozen=True)
class ExecutionOutcome:
    """What ``execute_tool_with_feedback`` hands back to its caller."""
    tool_call_id: str
    stage: ExecutionStage
    status: ExecutionFinished
    history_entry: HistoryEntry
    result: Optional[str] = None
    error: Optional[str] = None
    # True when the call was refused by validation (bad name, unknown or
    # disabled server, malformed arguments) rather than failing at runtime
    rejected: bool = False

    @property
    def execution_time_ms(self) -> float:
        return self.history_entry.execution_time_ms

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "executionTime": self.execution_time_ms,
            "status": {
                "stage": self.status.stage.value,
                "message": self.status.message,
                "timestamp": self.status.timestamp.isoformat(),
            },
            "historyEntry": self.history_entry.to_dict(),
        }
        if self.error is not None:
            data["error"] = self.error
        else:
            data["result"] = self.result
        return data


class _ActiveExecution:
    """Tracker-private slot for one in-flight execution."""

    __slots__ = ("record", "stream", "done", "permit", "timer", "task", "finished", "dispatched")

    def __init__(self, record: ExecutionRecord, done: asyncio.Future):
        self.record = record
        self.stream = ExecutionEventStream(record.tool_call_id)
        self.done = done
        self.permit: Optional[Permit] = None
        self.timer: Optional[asyncio.TimerHandle] = None
        self.task: Optional[asyncio.Task] = None
        self.finished = False
        self.dispatched = False


class ExecutionTracker:
    """Accepts tool calls, bounds per-server concurrency and records outcomes."""

    def __init__(
        self,
        connection_manager: ConnectionManager,
        history: Optional[ExecutionHistoryStore] = None,
        settings: Optional[AppSettings] = None,
        permit_pool: Optional[ServerPermitPool] = None,
    ):
        self._settings = settings or AppSettings()
        self._connections = connection_manager
        if history is None:
            history = ExecutionHistoryStore(self._settings.execution_history_capacity)
        self._history = history
        self._permits = permit_pool if permit_pool is not None else ServerPermitPool()
        self._table: ExecutionTable[_ActiveExecution] = ExecutionTable(self._settings.execution_max_active)
        self._connections.add_teardown_listener(self.cancel_server_executions)

    @property
    def history(self) -> ExecutionHistoryStore:
        return self._history

    @property
    def permits(self) -> ServerPermitPool:
        return self._permits

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def resolve_timeout(self, server_config: Optional[MCPServerConfig], tool_name: str) -> float:
        """Per-tool override, else the server timeout, capped by the global maximum."""
        if server_config is None:
            timeout = self._settings.tool_default_timeout
        else:
            timeout = server_config.tool_timeouts.get(tool_name, server_config.timeout)
        return min(timeout, self._settings.tool_max_timeout)

    def _admit(
        self,
        tool_call: ToolCall,
        session_id: str,
        server_config: Optional[MCPServerConfig],
    ) -> _ActiveExecution:
        server_id, tool_name = try_split_function_name(tool_call.function_name)
        record = ExecutionRecord(
            tool_call_id=tool_call.id,
            session_id=session_id,
            server_id=server_id,
            tool_name=tool_name,
            timeout=self.resolve_timeout(server_config, tool_name),
            stage=ExecutionStage.PENDING,
            last_message="Tool execution queued",
        )
        slot = _ActiveExecution(record, asyncio.get_running_loop().create_future())
        self._table.insert(tool_call.id, slot)
        slot.stream.publish(StageChanged(tool_call.id, ExecutionStage.PENDING, record.last_message))
        return slot

    async def execute_tool_with_feedback(
        self,
        tool_call: Union[ToolCall, Mapping[str, Any]],
        session_id: str,
        server_config: Optional[MCPServerConfig] = None,
        on_progress: Optional[EventCallback] = None,
        on_status: Optional[EventCallback] = None,
    ) -> ExecutionOutcome:
        """Run one tool call to a terminal stage and return its outcome.

        Validation problems do not raise; they produce a ``failed`` outcome
        with ``rejected=True``. Raises only when the call cannot be admitted.

        Raises:
            ValidationError: Malformed tool call, or the id is already in flight.
            ExecutionCapacityError: The active execution table is full.
        """
        call = tool_call if isinstance(tool_call, ToolCall) else ToolCall.from_dict(tool_call)
        slot = self._admit(call, session_id, server_config)
        record = slot.record
        logger.info(
            "Tool execution %s admitted: %s (%s) session=%s timeout=%ss",
            sanitize_for_logging(call.id),
            sanitize_for_logging(call.function_name),
            summarize_tool_arguments_for_logging(_peek_arguments(call.arguments_json)),
            sanitize_for_logging(session_id),
            record.timeout,
        )

        pump: Optional[asyncio.Task] = None
        if on_progress is not None or on_status is not None:
            pump = asyncio.create_task(pump_callbacks(slot.stream.subscribe(), on_progress, on_status))

        loop = asyncio.get_running_loop()
        slot.timer = loop.call_later(record.timeout, self._on_timer, call.id)
        slot.task = asyncio.create_task(self._drive(slot, call, server_config))

        try:
            outcome = await asyncio.shield(slot.done)
        except asyncio.CancelledError:
            self._terminate(slot, ExecutionStage.CANCELLED, "Execution cancelled by caller")
            raise
        if pump is not None:
            await pump
        return outcome

    def _advance(self, slot: _ActiveExecution, stage: ExecutionStage, message: str) -> None:
        if slot.finished:
            return
        slot.record.stage = stage
        slot.record.last_message = message
        slot.stream.publish(StageChanged(slot.record.tool_call_id, stage, message))

    def _validate(self, call: ToolCall, server_config: Optional[MCPServerConfig]) -> Dict[str, Any]:
        """Cheap checks first: name, config, connection, then argument JSON."""
        server_id, _ = split_function_name(call.function_name)
        safe_server = sanitize_for_logging(server_id)
        if server_config is None:
            raise ServerNotFoundError(f"MCP server '{safe_server}' is not configured", code="server_not_found")
        if server_config.disabled:
            raise ServerDisabledError(f"MCP server '{safe_server}' is disabled", code="server_disabled")
        if not self._connections.has_connection(server_id):
            raise ServerNotFoundError(f"No connection for MCP server '{safe_server}'", code="server_not_found")
        try:
            arguments = json.loads(call.arguments_json or "{}")
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid tool arguments JSON: {e}", code="invalid_arguments") from e
        if not isinstance(arguments, dict):
            raise ValidationError("Tool arguments must be a JSON object", code="invalid_arguments")
        return arguments

    async def _drive(self, slot: _ActiveExecution, call: ToolCall, server_config: Optional[MCPServerConfig]) -> None:
        record = slot.record
        try:
            self._advance(slot, ExecutionStage.VALIDATING, "Validating tool call")
            arguments = self._validate(call, server_config)
            record.parameters = arguments

            limit = server_config.max_concurrency
            if self._permits.would_block(record.server_id, limit):
                self._advance(
                    slot,
                    ExecutionStage.PENDING,
                    f"Waiting for an available slot on server '{record.server_id}'",
                )
            permit = await self._permits.acquire(record.server_id, limit)
            if slot.finished:
                permit.release()
                return
            slot.permit = permit

            if self._connections.get_connection_state(record.server_id) != ConnectionState.HEALTHY:
                self._advance(slot, ExecutionStage.CONNECTING, f"Waiting for server '{record.server_id}'")
                await self._connections.wait_until_healthy(record.server_id)

            self._advance(slot, ExecutionStage.EXECUTING, f"Executing {record.tool_name}")
            with tracer.start_as_current_span("mcp.tool_call") as span:
                span.set_attribute("mcp.server_id", record.server_id)
                span.set_attribute("mcp.tool_name", record.tool_name)
                span.set_attribute("mcp.tool_call_id", record.tool_call_id)
                result = await self._call_with_warning(slot, arguments)

            self._advance(slot, ExecutionStage.PROCESSING, "Processing result")
            self._finish(slot, ExecutionStage.COMPLETED, "Tool execution completed", result=result)
        except asyncio.CancelledError:
            self._finish(slot, ExecutionStage.CANCELLED, "Execution cancelled", error="Execution cancelled")
            raise
        except ExecutionCancelledError as e:
            self._finish(slot, ExecutionStage.CANCELLED, e.message, error=e.message)
        except ToolTimeoutError as e:
            self._finish(slot, ExecutionStage.TIMEOUT, e.message, error=e.message)
        except (ConfigurationError, ValidationError) as e:
            self._finish(slot, ExecutionStage.FAILED, e.message, error=e.message, rejected=True)
        except TransportError as e:
            message = f"Server '{record.server_id}' unavailable: {e.message}"
            self._finish(slot, ExecutionStage.FAILED, message, error=message)
        except (ProtocolError, ToolExecutionError) as e:
            self._finish(slot, ExecutionStage.FAILED, e.message, error=e.message)
        except DomainError as e:
            self._finish(slot, ExecutionStage.FAILED, e.message, error=e.message)
        except Exception as e:
            logger.error(
                f"Unexpected error executing {sanitize_for_logging(call.function_name)}: {e}",
                exc_info=True,
            )
            message = f"Unexpected error: {type(e).__name__}: {e}"
            self._finish(slot, ExecutionStage.FAILED, message, error=message)

    async def _call_with_warning(self, slot: _ActiveExecution, arguments: Dict[str, Any]) -> str:
        record = slot.record

        async def progress_handler(progress: float, total: Optional[float], message: Optional[str]) -> None:
            if slot.finished:
                return
            if total:
                percent = progress / total * 100.0
            else:
                percent = progress
            percent = max(0.0, min(100.0, float(percent)))
            record.progress = percent
            record.stage = ExecutionStage.EXECUTING
            if message:
                record.last_message = message
            slot.stream.publish(ProgressReported(record.tool_call_id, percent, message or "", total))

        slot.dispatched = True
        call = asyncio.ensure_future(
            self._connections.call_tool(
                record.server_id,
                record.tool_name,
                arguments,
                progress_handler=progress_handler,
                request_key=record.tool_call_id,
            )
        )
        try:
            threshold = self._settings.tool_warning_threshold
            if 0 < threshold < record.timeout:
                done, _ = await asyncio.wait({call}, timeout=threshold)
                if not done:
                    self._advance(
                        slot,
                        ExecutionStage.EXECUTING,
                        f"Tool is taking longer than expected ({threshold:g}s)",
                    )
            return await call
        finally:
            if not call.done():
                call.cancel()

    def _on_timer(self, tool_call_id: str) -> None:
        slot = self._table.get(tool_call_id)
        if slot is None:
            return
        self._terminate(
            slot,
            ExecutionStage.TIMEOUT,
            f"Tool execution timed out after {slot.record.timeout:g}s",
        )

    def _terminate(self, slot: _ActiveExecution, stage: ExecutionStage, message: str) -> bool:
        """Shared cancel/timeout path: best-effort interrupt, then finish."""
        if slot.finished:
            return False
        if slot.dispatched:
            self._connections.interrupt(slot.record.server_id, slot.record.tool_call_id)
        return self._finish(slot, stage, message, error=message)

    def _finish(
        self,
        slot: _ActiveExecution,
        stage: ExecutionStage,
        message: str,
        result: Optional[str] = None,
        error: Optional[str] = None,
        rejected: bool = False,
    ) -> bool:
        """Move to a terminal stage. Synchronous; the first caller wins."""
        if slot.finished:
            return False
        slot.finished = True
        record = slot.record

        if slot.timer is not None:
            slot.timer.cancel()
        if slot.permit is not None:
            slot.permit.release()
        self._table.remove(record.tool_call_id)

        record.stage = stage
        record.last_message = message
        if stage == ExecutionStage.COMPLETED:
            record.progress = 100.0
            result = result if result is not None else ""
            error = None
        elif error is None:
            error = message

        entry = HistoryEntry.from_record(record, end_time=utc_now(), result=result, error=error)
        self._history.append(entry)
        status = ExecutionFinished(record.tool_call_id, stage, message, result=result, error=error)
        slot.stream.publish(status)

        if not slot.done.done():
            slot.done.set_result(ExecutionOutcome(
                tool_call_id=record.tool_call_id,
                stage=stage,
                status=status,
                history_entry=entry,
                result=result,
                error=error,
                rejected=rejected,
            ))

        task = slot.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        log = logger.info if stage == ExecutionStage.COMPLETED else logger.warning
        log(
            "Tool execution %s %s in %.0fms%s",
            sanitize_for_logging(record.tool_call_id),
            stage.value,
            entry.execution_time_ms,
            f": {truncate_for_logging(error)}" if error else "",
        )
        log_metric(
            "tool_call",
            record.session_id,
            server=record.server_id,
            tool=record.tool_name,
            stage=stage.value,
            duration_ms=round(entry.execution_time_ms),
        )
        return True

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def cancel_execution(self, tool_call_id: str) -> bool:
        """Cancel an in-flight execution; False when not found or already finished."""
        slot = self._table.get(tool_call_id)
        if slot is None:
            return False
        cancelled = self._terminate(slot, ExecutionStage.CANCELLED, "Execution cancelled by user")
        if cancelled:
            logger.info(f"Cancelled tool execution {sanitize_for_logging(tool_call_id)}")
        return cancelled

    def cancel_server_executions(self, server_id: str, reason: str = "Server connection closed") -> int:
        """Cancel every in-flight execution routed to ``server_id``."""
        cancelled = 0
        for slot in self._table.values():
            if slot.record.server_id == server_id and self._terminate(slot, ExecutionStage.CANCELLED, reason):
                cancelled += 1
        if cancelled:
            logger.info(
                "Cancelled %d executions on %s: %s",
                cancelled,
                sanitize_for_logging(server_id),
                sanitize_for_logging(reason),
            )
        return cancelled

    async def shutdown(self) -> None:
        tasks = [slot.task for slot in self._table.values() if slot.task is not None]
        for slot in self._table.values():
            self._terminate(slot, ExecutionStage.CANCELLED, "Shutting down")
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    def get_active_executions(self, session_id: Optional[str] = None) -> List[ExecutionRecord]:
        return [
            replace(slot.record, parameters=dict(slot.record.parameters))
            for slot in self._table.values()
            if session_id is None or slot.record.session_id == session_id
        ]

    def get_execution(self, tool_call_id: str) -> Optional[ExecutionRecord]:
        slot = self._table.get(tool_call_id)
        if slot is None:
            return None
        return replace(slot.record, parameters=dict(slot.record.parameters))

    def events(self, tool_call_id: str) -> AsyncIterator[ExecutionEvent]:
        """Subscribe to an in-flight execution's events.

        The iterator replays what was already published and ends after the
        terminal event.

        Raises:
            ExecutionNotFoundError: No in-flight execution has this id.
        """
        slot = self._table.get(tool_call_id)
        if slot is None:
            raise ExecutionNotFoundError(f"No active execution '{tool_call_id}'")
        return slot.stream.subscribe()

    def get_execution_history(self, session_id: Optional[str] = None, limit: Optional[int] = None) -> List[HistoryEntry]:
        return self._history.query(session_id, limit)

    def get_execution_stats(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        stats = self._history.stats(session_id)
        stats["active"] = len(self.get_active_executions(session_id))
        return stats

    def clear_history(self, session_id: Optional[str] = None) -> int:
        """Remove finished entries only; in-flight executions are untouched."""
        removed = self._history.clear(session_id)
        logger.info(f"Cleared {removed} history entries (session={sanitize_for_logging(session_id) or 'all'})")
        return removed


def _peek_arguments(arguments_json: str) -> Any:
    try:
        return json.loads(arguments_json or "{}")
    except (TypeError, ValueError):
        return None
