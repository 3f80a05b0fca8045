"""Server configuration provider interface."""

from typing import Awaitable, Callable, Dict, Protocol, Union

from mcpchat.modules.config.config_manager import MCPServerConfig

ConfigWatcher = Callable[[Dict[str, MCPServerConfig]], Union[None, Awaitable[None]]]


class ServerConfigProvider(Protocol):
    """
    Source of MCP server definitions.

    The connection manager reads the enabled servers once at startup and then
    relies on watcher callbacks for every later change.
    """

    def get_enabled_servers(self) -> Dict[str, MCPServerConfig]:
        """Return enabled server configs keyed by server id."""
        ...

    def add_watcher(self, callback: ConfigWatcher) -> None:
        """Register a callback invoked with the full server map after a change."""
        ...

    def remove_watcher(self, callback: ConfigWatcher) -> None:
        ...
