"""MCP server routes: tool listing, connection status and lifecycle actions."""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from mcpchat.core.log_sanitizer import sanitize_for_logging
from mcpchat.domain.errors import ServerNotFoundError
from mcpchat.modules.config import ConfigManager
from mcpchat.modules.mcp_tools import ConnectionManager
from mcpchat.routes.dependencies import get_config_manager, get_connection_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mcp", tags=["mcp"])


@router.get("/tools")
async def list_tools(connections: ConnectionManager = Depends(get_connection_manager)) -> Dict[str, Any]:
    """Tools grouped by server id."""
    grouped = connections.get_tools_by_server()
    return {
        "servers": {
            server_id: [tool.to_dict() for tool in tools]
            for server_id, tools in grouped.items()
        },
        "totalTools": sum(len(tools) for tools in grouped.values()),
    }


@router.get("/status")
async def connection_status(connections: ConnectionManager = Depends(get_connection_manager)) -> Dict[str, Any]:
    statuses = connections.get_connection_statuses()
    return {"servers": [status.to_dict() for status in statuses], "total": len(statuses)}


@router.post("/servers/{server_id}/reconnect")
async def reconnect_server(
    server_id: str,
    connections: ConnectionManager = Depends(get_connection_manager),
) -> Dict[str, Any]:
    if not connections.has_connection(server_id):
        raise ServerNotFoundError(f"MCP server '{sanitize_for_logging(server_id)}' is not connected")
    success = await connections.reconnect_server(server_id)
    status = connections.get_connection_status(server_id)
    return {"success": success, "status": status.to_dict() if status else None}


@router.post("/health-check")
async def run_health_check(connections: ConnectionManager = Depends(get_connection_manager)) -> Dict[str, Any]:
    statuses = await connections.perform_health_check()
    return {"servers": [status.to_dict() for status in statuses]}


@router.post("/reload-config")
async def reload_config(config_manager: ConfigManager = Depends(get_config_manager)) -> Dict[str, Any]:
    """Re-read mcp.config.json and converge the live connections onto it."""
    config = await config_manager.refresh_and_notify()
    logger.info(f"MCP configuration reloaded via API: {list(config.servers.keys())}")
    return {
        "success": True,
        "servers": list(config.servers.keys()),
        "enabled": list(config.enabled_servers().keys()),
    }
