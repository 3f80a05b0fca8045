"""Domain layer - pure models and errors."""

from .errors import (
    ConfigurationError,
    DomainError,
    ExecutionCancelledError,
    ExecutionCapacityError,
    ExecutionNotFoundError,
    InvalidToolNameError,
    ProtocolError,
    ServerDisabledError,
    ServerNotFoundError,
    ToolExecutionError,
    ToolTimeoutError,
    TransportError,
    ValidationError,
)

__all__ = [
    "DomainError",
    "ValidationError",
    "ConfigurationError",
    "ServerNotFoundError",
    "ServerDisabledError",
    "InvalidToolNameError",
    "TransportError",
    "ProtocolError",
    "ToolExecutionError",
    "ToolTimeoutError",
    "ExecutionCancelledError",
    "ExecutionNotFoundError",
    "ExecutionCapacityError",
]
