"""Configuration module.

Provides pydantic-based settings and the MCP server configuration loader.
"""

from .config_manager import (
    AppSettings,
    ConfigManager,
    MCPConfig,
    MCPServerConfig,
    resolve_env_var,
)

__all__ = [
    "AppSettings",
    "ConfigManager",
    "MCPConfig",
    "MCPServerConfig",
    "resolve_env_var",
]
