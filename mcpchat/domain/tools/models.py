"""Domain models for MCP servers, tools and tool calls."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from mcpchat.domain.errors import InvalidToolNameError, ValidationError

TOOL_NAME_SEPARATOR = "."


class ConnectionState(str, Enum):
    """Connection health state machine states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ERROR = "error"


def split_function_name(function_name: str) -> Tuple[str, str]:
    """Split ``"<serverId>.<toolName>"`` into its two parts.

    The server id is everything before the first separator; the tool name is
    the remainder, which may itself contain dots.

    Raises:
        InvalidToolNameError: If either part is empty.
    """
    if not isinstance(function_name, str):
        raise InvalidToolNameError(f"Invalid tool name: {function_name!r}")
    server_id, sep, tool_name = function_name.partition(TOOL_NAME_SEPARATOR)
    if not sep or not server_id or not tool_name:
        raise InvalidToolNameError(
            f"Invalid tool name format: {function_name}. Expected format: serverId.toolName",
            code="invalid_tool_name",
        )
    return server_id, tool_name


def try_split_function_name(function_name: str) -> Tuple[str, str]:
    """Like ``split_function_name`` but returns ``("", function_name)`` when malformed."""
    try:
        return split_function_name(function_name)
    except InvalidToolNameError:
        return "", str(function_name)


def qualified_tool_name(server_id: str, tool_name: str) -> str:
    return f"{server_id}{TOOL_NAME_SEPARATOR}{tool_name}"


@dataclass(frozen=True)
class ToolCall:
    """A request from the LLM to invoke one tool on one server."""
    id: str
    function_name: str
    arguments_json: str = "{}"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ToolCall":
        """Create from the ``{id, function: {name, arguments}}`` wire shape."""
        if not isinstance(data, Mapping):
            raise ValidationError("Tool call must be an object")
        call_id = data.get("id")
        function = data.get("function")
        if not call_id or not isinstance(call_id, str):
            raise ValidationError("Tool call ID is required")
        if not isinstance(function, Mapping) or not function.get("name"):
            raise ValidationError("Tool call function name is required")
        arguments = function.get("arguments", "{}")
        if arguments is None:
            arguments = "{}"
        return cls(id=call_id, function_name=str(function["name"]), arguments_json=arguments)

    def split_name(self) -> Tuple[str, str]:
        return split_function_name(self.function_name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "function": {"name": self.function_name, "arguments": self.arguments_json},
        }


@dataclass(frozen=True)
class ToolDescriptor:
    """Description of one tool exposed by a server.

    Immutable per connection generation; catalogs replace descriptors
    wholesale instead of mutating them.
    """
    server_id: str
    name: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=dict)
    category: str = "general"
    dangerous: bool = False
    requires_confirmation: bool = True

    @property
    def qualified_name(self) -> str:
        return qualified_tool_name(self.server_id, self.name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "dangerous": self.dangerous,
            "requiresConfirmation": self.requires_confirmation,
            "inputSchema": dict(self.input_schema),
        }

    def to_function_schema(self) -> Dict[str, Any]:
        """Render as an LLM function-calling descriptor."""
        return {
            "type": "function",
            "function": {
                "name": self.qualified_name,
                "description": self.description,
                "parameters": dict(self.input_schema) or {"type": "object", "properties": {}},
            },
        }


@dataclass(frozen=True)
class ConnectionStatus:
    """Read-only snapshot of one server connection."""
    server_id: str
    status: ConnectionState
    last_check: Optional[datetime]
    response_time_ms: Optional[float]
    error: Optional[str]
    tool_count: int
    uptime_seconds: Optional[float]
    consecutive_failures: int = 0
    reconnect_attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "serverId": self.server_id,
            "status": self.status.value,
            "lastCheck": self.last_check.isoformat() if self.last_check else None,
            "responseTimeMs": self.response_time_ms,
            "toolCount": self.tool_count,
            "uptime": self.uptime_seconds,
            "consecutiveFailures": self.consecutive_failures,
            "reconnectAttempts": self.reconnect_attempts,
        }
        if self.error:
            result["error"] = self.error
        return result
