"""Tool server channel interfaces."""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from mcpchat.modules.config.config_manager import MCPServerConfig

# (progress, total, message) as sent in MCP progress notifications
ProgressHandler = Callable[[float, Optional[float], Optional[str]], Awaitable[None]]


class ServerChannel(Protocol):
    """
    One live connection to one MCP server subprocess.

    Implementations raise TransportError when the subprocess or its pipes are
    gone and ProtocolError for malformed responses. A channel is used by
    exactly one connection generation and is never reopened after close().
    """

    server_id: str

    async def open(self) -> None:
        """Spawn the subprocess and complete the initialize handshake."""
        ...

    async def list_tools(self) -> List[Dict[str, Any]]:
        """Return raw tool definitions: dicts with name, description, inputSchema."""
        ...

    async def ping(self) -> None:
        ...

    async def call_tool(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        progress_handler: Optional[ProgressHandler] = None,
        request_key: Optional[str] = None,
    ) -> Any:
        """Invoke a tool and return its normalised result.

        Raises ToolExecutionError when the server reports a tool error.
        """
        ...

    def interrupt(self, request_key: str) -> bool:
        """Best-effort abort of an in-flight call; True if one was found."""
        ...

    def set_exit_handler(self, handler: Optional[Callable[[str], None]]) -> None:
        """Register ``handler(reason)``, called once if the subprocess dies while open."""
        ...

    async def close(self) -> None:
        ...

    @property
    def is_open(self) -> bool:
        ...


ChannelFactory = Callable[[str, MCPServerConfig], ServerChannel]
