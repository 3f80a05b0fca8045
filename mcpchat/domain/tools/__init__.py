"""Tool and connection domain models."""

from .models import (
    ConnectionState,
    ConnectionStatus,
    ToolCall,
    ToolDescriptor,
    qualified_tool_name,
    split_function_name,
    try_split_function_name,
)

__all__ = [
    "ConnectionState",
    "ConnectionStatus",
    "ToolCall",
    "ToolDescriptor",
    "qualified_tool_name",
    "split_function_name",
    "try_split_function_name",
]
