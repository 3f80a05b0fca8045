"""MCP tools module - connections, tool catalogs and the stdio transport."""

from .catalog import ToolCatalog, categorize_tool, is_dangerous_tool
from .connection_manager import ConnectionManager, ServerConnection
from .transport import FastMCPChannel, create_stdio_channel, normalize_tool_result

__all__ = [
    "ConnectionManager",
    "FastMCPChannel",
    "ServerConnection",
    "ToolCatalog",
    "categorize_tool",
    "create_stdio_channel",
    "is_dangerous_tool",
    "normalize_tool_result",
]
