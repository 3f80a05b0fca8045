"""Domain-level errors and exceptions."""

from typing import Optional


class DomainError(Exception):
    """Base domain error."""
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ValidationError(DomainError):
    """Validation error."""
    pass


class ConfigurationError(DomainError):
    """Configuration error (unknown or disabled server, malformed tool name).

    Surfaced immediately and never retried.
    """
    pass


class ServerNotFoundError(ConfigurationError):
    """Raised when a server id is not configured or has no connection."""
    pass


class ServerDisabledError(ConfigurationError):
    """Raised when a tool call targets a disabled server."""
    pass


class InvalidToolNameError(ConfigurationError):
    """Raised when a function name does not split into serverId.toolName."""
    pass


class TransportError(DomainError):
    """Subprocess spawn failure, closed pipe or unavailable connection."""
    pass


class ProtocolError(DomainError):
    """Malformed response from an MCP server."""
    pass


class ToolExecutionError(DomainError):
    """The MCP server reported an error for a tool call."""
    pass


class ToolTimeoutError(DomainError):
    """Tool execution exceeded its timeout."""
    pass


class ExecutionCancelledError(DomainError):
    """Tool execution was cancelled by the user or by connection teardown."""
    pass


class ExecutionNotFoundError(DomainError):
    """Raised when no in-flight execution matches a tool call id."""
    pass


class ExecutionCapacityError(DomainError):
    """Raised when the active execution table is full."""
    pass
