"""Health check routes for service monitoring and load balancing."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends

from mcpchat.domain.tools.models import ConnectionState
from mcpchat.modules.mcp_tools import ConnectionManager
from mcpchat.routes.dependencies import get_connection_manager
from mcpchat.version import VERSION

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/heartbeat")
async def heartbeat() -> Dict[str, str]:
    """Lightweight heartbeat endpoint for uptime monitoring."""
    return {"status": "ok"}


@router.get("/health")
async def health_check(
    connections: ConnectionManager = Depends(get_connection_manager),
) -> Dict[str, Any]:
    """Service status plus a per-state count of MCP connections.

    The service reports "degraded" when any configured server is not healthy;
    it stays reachable either way.
    """
    statuses = connections.get_connection_statuses()
    counts: Dict[str, int] = {state.value: 0 for state in ConnectionState}
    for status in statuses:
        counts[status.status.value] += 1
    healthy = all(s.status == ConnectionState.HEALTHY for s in statuses)
    return {
        "status": "healthy" if healthy else "degraded",
        "service": "mcpchat-core",
        "version": VERSION,
        "mcpServers": counts,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
