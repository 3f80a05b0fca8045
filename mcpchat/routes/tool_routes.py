"""Tool execution routes."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse

from mcpchat.core.log_sanitizer import sanitize_for_logging
from mcpchat.domain.errors import ExecutionNotFoundError, ValidationError
from mcpchat.domain.tools.models import ToolCall
from mcpchat.modules.config import ConfigManager
from mcpchat.modules.execution import ExecutionTracker
from mcpchat.routes.dependencies import get_config_manager, get_execution_tracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tools", tags=["tools"])


@router.post("/execute")
async def execute_tool(
    body: Dict[str, Any] = Body(...),
    tracker: ExecutionTracker = Depends(get_execution_tracker),
    config_manager: ConfigManager = Depends(get_config_manager),
):
    """Run one tool call and return its outcome.

    A call refused by validation answers 400 with the same body shape, so the
    history entry is always visible to the client.
    """
    session_id = body.get("sessionId")
    if not session_id or not isinstance(session_id, str):
        raise ValidationError("Session ID is required")
    if "toolCall" not in body:
        raise ValidationError("Tool call is required")
    tool_call = ToolCall.from_dict(body["toolCall"])

    server_id, sep, _ = tool_call.function_name.partition(".")
    server_config = config_manager.get_server_config(server_id) if sep else None

    outcome = await tracker.execute_tool_with_feedback(tool_call, session_id, server_config)
    payload = outcome.to_dict()
    if outcome.rejected:
        return JSONResponse(status_code=400, content=payload)
    return payload


@router.post("/cancel")
async def cancel_tool(
    body: Dict[str, Any] = Body(...),
    tracker: ExecutionTracker = Depends(get_execution_tracker),
) -> Dict[str, Any]:
    tool_call_id = body.get("toolCallId")
    if not tool_call_id or not isinstance(tool_call_id, str):
        raise ValidationError("Tool call ID is required")
    success = tracker.cancel_execution(tool_call_id)
    if not success:
        logger.info(f"Cancel requested for unknown or finished execution {sanitize_for_logging(tool_call_id)}")
        return {"success": False, "message": "Execution not found or already completed"}
    return {"success": True}


@router.get("/history")
async def get_history(
    session_id: Optional[str] = Query(None, alias="sessionId"),
    limit: Optional[int] = Query(None, ge=0),
    include_stats: bool = Query(False, alias="includeStats"),
    tracker: ExecutionTracker = Depends(get_execution_tracker),
) -> Dict[str, Any]:
    entries = tracker.get_execution_history(session_id, limit)
    response: Dict[str, Any] = {
        "history": [entry.to_dict() for entry in entries],
        "total": tracker.history.count(session_id),
    }
    if include_stats:
        response["stats"] = tracker.get_execution_stats(session_id)
    return response


@router.delete("/history")
async def clear_history(
    session_id: Optional[str] = Query(None, alias="sessionId"),
    tracker: ExecutionTracker = Depends(get_execution_tracker),
) -> Dict[str, Any]:
    cleared = tracker.clear_history(session_id)
    return {"success": True, "cleared": cleared}


@router.get("/active")
async def active_executions(
    session_id: Optional[str] = Query(None, alias="sessionId"),
    tracker: ExecutionTracker = Depends(get_execution_tracker),
) -> Dict[str, Any]:
    records = tracker.get_active_executions(session_id)
    return {"executions": [record.to_dict() for record in records], "total": len(records)}


@router.get("/{tool_call_id}/status")
async def execution_status(
    tool_call_id: str,
    tracker: ExecutionTracker = Depends(get_execution_tracker),
) -> Dict[str, Any]:
    record = tracker.get_execution(tool_call_id)
    if record is not None:
        return {"toolCallId": tool_call_id, "active": True, "execution": record.to_dict()}
    entry = tracker.history.find(tool_call_id)
    if entry is not None:
        return {"toolCallId": tool_call_id, "active": False, "historyEntry": entry.to_dict()}
    raise ExecutionNotFoundError(f"Execution '{sanitize_for_logging(tool_call_id)}' not found")
