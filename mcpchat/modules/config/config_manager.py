"""
Centralized configuration management using Pydantic models.

This module provides a unified configuration system that:
- Uses Pydantic for type validation and environment variable loading
- Loads MCP server definitions from mcp.config.json with search-path fallback
- Notifies registered watchers when the server set changes
- Supports both .env files and direct environment variables
"""

import asyncio
import inspect
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

ServerConfigWatcher = Callable[[Dict[str, "MCPServerConfig"]], Union[None, Awaitable[None]]]


def resolve_env_var(value: Optional[str], required: bool = True) -> Optional[str]:
    """
    Resolve environment variables in config values.

    Supports patterns like:
    - "${ENV_VAR_NAME}" -> replaced with os.environ.get("ENV_VAR_NAME")
    - "literal-string" -> returned as-is
    - None -> returned as-is

    Note: Only complete env var patterns are resolved. Values like "prefix-${VAR}"
    or "${VAR}-suffix" are treated as literals and returned unchanged.

    Raises:
        ValueError: If env var pattern is found but variable is not set and required=True
    """
    if value is None:
        return None

    pattern = r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}'
    match = re.fullmatch(pattern, value)

    if match:
        env_var_name = match.group(1)
        env_value = os.environ.get(env_var_name)

        if env_value is None:
            if required:
                raise ValueError(
                    f"Environment variable '{env_var_name}' is not set but required in config"
                )
            return None

        return env_value

    return value


class MCPServerConfig(BaseModel):
    """Configuration for a single stdio MCP server.

    Timeouts are in seconds.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    command: str = Field(min_length=1)
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    description: Optional[str] = None
    disabled: bool = False
    timeout: float = Field(default=30.0, gt=0)
    max_concurrency: int = Field(
        default=5,
        ge=1,
        validation_alias=AliasChoices("maxConcurrency", "max_concurrency"),
        serialization_alias="maxConcurrency",
    )
    # Per-tool timeout overrides (tool name without server prefix -> seconds)
    tool_timeouts: Dict[str, float] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("toolTimeouts", "tool_timeouts"),
        serialization_alias="toolTimeouts",
    )

    @field_validator("tool_timeouts")
    @classmethod
    def validate_tool_timeouts(cls, v):
        """Reject non-positive per-tool timeouts."""
        for tool_name, seconds in v.items():
            if seconds <= 0:
                raise ValueError(f"Timeout for tool '{tool_name}' must be positive")
        return v

    @property
    def enabled(self) -> bool:
        return not self.disabled

    def connection_fingerprint(self) -> Dict[str, Any]:
        """Fields whose change requires the subprocess to be restarted."""
        return {
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
            "cwd": self.cwd,
            "disabled": self.disabled,
            "timeout": self.timeout,
            "max_concurrency": self.max_concurrency,
        }


class MCPConfig(BaseModel):
    """Configuration for all MCP servers (``{"mcpServers": {...}}``)."""
    model_config = ConfigDict(populate_by_name=True)

    servers: Dict[str, MCPServerConfig] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("mcpServers", "servers"),
        serialization_alias="mcpServers",
    )

    @field_validator('servers', mode='before')
    @classmethod
    def validate_servers(cls, v):
        """Convert dict values to MCPServerConfig objects."""
        if isinstance(v, dict):
            return {name: MCPServerConfig(**config) if isinstance(config, dict) else config
                   for name, config in v.items()}
        return v

    def enabled_servers(self) -> Dict[str, MCPServerConfig]:
        return {name: cfg for name, cfg in self.servers.items() if not cfg.disabled}


class AppSettings(BaseSettings):
    """Main application settings loaded from environment variables."""

    # Application settings
    app_name: str = "MCP Chat Core"
    port: int = 8000
    debug_mode: bool = False
    # Logging settings
    log_level: str = "INFO"  # Override default logging level (DEBUG, INFO, WARNING, ERROR)
    feature_metrics_logging_enabled: bool = Field(
        False,
        description="Enable metrics logging for tool executions (counts, durations, stages)",
        validation_alias=AliasChoices("FEATURE_METRICS_LOGGING_ENABLED"),
    )

    # Config file locations
    app_config_dir: str = Field(default="config", validation_alias="APP_CONFIG_DIR")
    mcp_config_file: str = Field(default="mcp.config.json", validation_alias="MCP_CONFIG_FILE")
    mcp_config_poll_interval: float = Field(
        default=0,
        description="Seconds between mcp config file change checks (0 disables watching)",
        validation_alias="MCP_CONFIG_POLL_INTERVAL",
    )

    # Connection lifecycle
    mcp_health_check_interval: float = Field(
        default=30.0,
        description="Seconds between health probes (0 disables the monitor loop)",
        validation_alias="MCP_HEALTH_CHECK_INTERVAL",
    )
    mcp_health_probe_timeout: float = Field(default=5.0, validation_alias="MCP_HEALTH_PROBE_TIMEOUT")
    mcp_health_failure_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failed probes that move a connection to error",
        validation_alias="MCP_HEALTH_FAILURE_THRESHOLD",
    )
    mcp_reconnect_interval: float = Field(
        default=2.0,
        description="Base delay in seconds for the first reconnection attempt",
        validation_alias="MCP_RECONNECT_INTERVAL",
    )
    mcp_reconnect_max_interval: float = Field(
        default=60.0,
        description="Upper bound in seconds for the reconnection backoff",
        validation_alias="MCP_RECONNECT_MAX_INTERVAL",
    )
    mcp_reconnect_backoff_multiplier: float = Field(
        default=2.0,
        validation_alias="MCP_RECONNECT_BACKOFF_MULTIPLIER",
    )
    mcp_reconnect_max_attempts: int = Field(
        default=5,
        ge=0,
        description="Scheduled reconnection attempts before a connection stays in error",
        validation_alias="MCP_RECONNECT_MAX_ATTEMPTS",
    )
    mcp_tool_cache_ttl: float = Field(
        default=60.0,
        description="Seconds before a healthy connection's tool catalog is refreshed",
        validation_alias="MCP_TOOL_CACHE_TTL",
    )

    # Tool execution
    tool_default_timeout: float = Field(default=30.0, gt=0, validation_alias="TOOL_DEFAULT_TIMEOUT")
    tool_max_timeout: float = Field(default=300.0, gt=0, validation_alias="TOOL_MAX_TIMEOUT")
    tool_warning_threshold: float = Field(
        default=10.0,
        description="Seconds after which a still-running tool reports a slow-execution status",
        validation_alias="TOOL_WARNING_THRESHOLD",
    )
    execution_max_active: int = Field(default=256, ge=1, validation_alias="EXECUTION_MAX_ACTIVE")
    execution_history_capacity: int = Field(default=1000, ge=1, validation_alias="EXECUTION_HISTORY_CAPACITY")
    execution_history_audit_file: Optional[str] = Field(
        default=None,
        description="Optional JSON-lines file that receives every history entry",
        validation_alias="EXECUTION_HISTORY_AUDIT_FILE",
    )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "env_prefix": "",
    }


class ConfigManager:
    """Centralized configuration manager with proper error handling.

    Also acts as the server config provider for the connection manager:
    ``get_enabled_servers()`` plus watcher registration.
    """

    def __init__(self, package_root: Optional[Path] = None, app_settings: Optional[AppSettings] = None):
        self._package_root = package_root or Path(__file__).parent.parent.parent
        self._app_settings: Optional[AppSettings] = app_settings
        self._mcp_config: Optional[MCPConfig] = None
        self._watchers: List[ServerConfigWatcher] = []
        self._loaded_from: Optional[Path] = None
        self._loaded_mtime: Optional[float] = None

    def _search_paths(self, file_name: str) -> List[Path]:
        """Generate search paths for a configuration file.

        Two-layer lookup:
        1. User config dir (APP_CONFIG_DIR, default "config/")
        2. Package defaults (mcpchat/config/) - always available as fallback
        """
        project_root = self._package_root.parent

        config_dir = Path(self.app_settings.app_config_dir)
        if not config_dir.is_absolute():
            config_dir_project = project_root / config_dir
        else:
            config_dir_project = config_dir

        package_defaults = self._package_root / "config" / file_name

        candidates: List[Path] = [
            config_dir / file_name,
            config_dir_project / file_name,
            package_defaults,
        ]

        seen = set()
        search_paths: List[Path] = []
        for p in candidates:
            if p not in seen:
                seen.add(p)
                search_paths.append(p)

        logger.debug(
            "Config search paths for %s: %s", file_name, [str(p) for p in search_paths]
        )
        return search_paths

    def _load_file_with_error_handling(self, file_paths: List[Path]) -> Optional[Dict[str, Any]]:
        """Load the first readable JSON file, logging and skipping broken ones."""
        for path in file_paths:
            try:
                if not path.exists():
                    continue

                logger.info(f"Found JSON config at: {path.absolute()}")

                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)

                if not isinstance(data, dict):
                    logger.error(
                        f"Invalid JSON format in {path}: expected dict, got {type(data)}",
                        exc_info=True
                    )
                    continue

                self._loaded_from = path
                self._loaded_mtime = path.stat().st_mtime
                logger.info(f"Successfully loaded JSON config from {path}")
                return data

            except json.JSONDecodeError as e:
                logger.error(f"JSON parsing error in {path}: {e}", exc_info=True)
                continue
            except Exception as e:
                logger.error(f"Unexpected error reading {path}: {e}", exc_info=True)
                continue

        logger.warning(f"JSON config not found in any of these locations: {[str(p) for p in file_paths]}")
        return None

    @property
    def app_settings(self) -> AppSettings:
        """Get application settings (cached)."""
        if self._app_settings is None:
            try:
                self._app_settings = AppSettings()
                logger.info("Application settings loaded successfully")
            except Exception as e:
                logger.error(f"Failed to load application settings: {e}", exc_info=True)
                self._app_settings = AppSettings.model_construct()
        return self._app_settings

    @property
    def mcp_config(self) -> MCPConfig:
        """Get MCP configuration (cached)."""
        if self._mcp_config is None:
            try:
                file_paths = self._search_paths(self.app_settings.mcp_config_file)
                data = self._load_file_with_error_handling(file_paths)

                if data:
                    self._mcp_config = MCPConfig(**data)
                    logger.info(
                        f"Loaded MCP config with {len(self._mcp_config.servers)} servers: "
                        f"{list(self._mcp_config.servers.keys())}"
                    )
                else:
                    self._mcp_config = MCPConfig()
                    logger.info("Created empty MCP config (no configuration file found)")

            except Exception as e:
                logger.error(f"Failed to parse MCP configuration: {e}", exc_info=True)
                self._mcp_config = MCPConfig()

        return self._mcp_config

    def set_mcp_config(self, config: MCPConfig) -> None:
        """Replace the in-memory MCP configuration (used by tests and admin tooling)."""
        self._mcp_config = config

    def get_server_config(self, server_id: str) -> Optional[MCPServerConfig]:
        return self.mcp_config.servers.get(server_id)

    def get_enabled_servers(self) -> Dict[str, MCPServerConfig]:
        """Return enabled servers keyed by server id."""
        return self.mcp_config.enabled_servers()

    def add_watcher(self, callback: ServerConfigWatcher) -> None:
        """Register a callback invoked with the full server map after each reload."""
        if callback not in self._watchers:
            self._watchers.append(callback)

    def remove_watcher(self, callback: ServerConfigWatcher) -> None:
        if callback in self._watchers:
            self._watchers.remove(callback)

    def reload_mcp_config(self) -> MCPConfig:
        """Reload MCP configuration from disk.

        This clears the cached MCP config and forces a reload from the config file.
        Watchers are not notified; use ``refresh_and_notify`` for that.
        """
        self._mcp_config = None
        logger.info("MCP configuration cache cleared, reloading from disk")
        return self.mcp_config

    async def refresh_and_notify(self) -> MCPConfig:
        """Reload from disk and notify every watcher with the new server map."""
        config = self.reload_mcp_config()
        await self.notify_watchers()
        return config

    async def notify_watchers(self) -> None:
        servers = dict(self.mcp_config.servers)
        for watcher in list(self._watchers):
            try:
                result = watcher(servers)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"MCP config watcher failed: {e}", exc_info=True)

    def config_file_changed(self) -> bool:
        """True when the loaded config file's mtime differs from the last load."""
        if self._loaded_from is None:
            return False
        try:
            return self._loaded_from.stat().st_mtime != self._loaded_mtime
        except OSError:
            return False

    async def watch_mcp_config(self, interval: Optional[float] = None) -> None:
        """Poll the loaded config file and notify watchers when it changes.

        Runs until cancelled.
        """
        poll = interval if interval is not None else self.app_settings.mcp_config_poll_interval
        if poll <= 0:
            return
        self.mcp_config  # ensure the file location is known
        logger.info(f"Watching MCP configuration file {self._loaded_from} every {poll}s")
        while True:
            try:
                await asyncio.sleep(poll)
                if self.config_file_changed():
                    logger.info("MCP configuration file changed, reloading")
                    await self.refresh_and_notify()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in MCP config watch loop: {e}", exc_info=True)

    def validate_config(self) -> Dict[str, bool]:
        """Validate all configurations and return status."""
        status = {}

        try:
            self.app_settings
            status["app_settings"] = True
        except Exception as e:
            logger.error(f"App settings validation failed: {e}", exc_info=True)
            status["app_settings"] = False

        try:
            mcp_config = self.mcp_config
            status["mcp_config"] = len(mcp_config.servers) > 0
            if not status["mcp_config"]:
                logger.warning("MCP config is valid but contains no servers")
        except Exception as e:
            logger.error(f"MCP config validation failed: {e}", exc_info=True)
            status["mcp_config"] = False

        return status
