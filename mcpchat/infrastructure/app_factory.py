"""Application factory for dependency injection and wiring."""

import asyncio
import logging
from typing import Optional

from mcpchat.core.metrics_logger import configure_metrics
from mcpchat.interfaces.tools import ChannelFactory
from mcpchat.modules.config import ConfigManager
from mcpchat.modules.execution import ExecutionHistoryStore, ExecutionTracker
from mcpchat.modules.mcp_tools import ConnectionManager

logger = logging.getLogger(__name__)


class AppFactory:
    """Application factory that wires dependencies (simple in-memory DI).

    Every manager is built here and handed to its consumers by reference;
    nothing reaches for a module-level instance.
    """

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        channel_factory: Optional[ChannelFactory] = None,
    ) -> None:
        # Configuration
        self.config_manager = config_manager or ConfigManager()
        settings = self.config_manager.app_settings
        configure_metrics(settings.feature_metrics_logging_enabled)

        # MCP connections (the config manager is the server config provider)
        self.connection_manager = ConnectionManager(
            config_provider=self.config_manager,
            settings=settings,
            channel_factory=channel_factory,
        )

        # Execution history & tracker
        self.history_store = ExecutionHistoryStore(
            capacity=settings.execution_history_capacity,
            audit_file=settings.execution_history_audit_file,
        )
        self.execution_tracker = ExecutionTracker(
            connection_manager=self.connection_manager,
            history=self.history_store,
            settings=settings,
        )

        self._config_watch_task: Optional[asyncio.Task] = None
        logger.info("AppFactory initialized")

    async def initialize(self) -> None:
        """Start MCP connections and, when enabled, the config file watcher."""
        await self.connection_manager.initialize()
        if self.config_manager.app_settings.mcp_config_poll_interval > 0:
            self._config_watch_task = asyncio.create_task(self.config_manager.watch_mcp_config())
        logger.info("AppFactory async initialization complete")

    async def shutdown(self) -> None:
        if self._config_watch_task is not None:
            self._config_watch_task.cancel()
            try:
                await self._config_watch_task
            except asyncio.CancelledError:
                pass
            self._config_watch_task = None
        await self.execution_tracker.shutdown()
        await self.connection_manager.shutdown()
        logger.info("AppFactory shut down")

    # Accessors
    def get_config_manager(self) -> ConfigManager:  # noqa: D401
        return self.config_manager

    def get_connection_manager(self) -> ConnectionManager:  # noqa: D401
        return self.connection_manager

    def get_execution_tracker(self) -> ExecutionTracker:  # noqa: D401
        return self.execution_tracker
