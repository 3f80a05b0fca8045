"""Request-scoped accessors for the managers built by AppFactory."""

from fastapi import Request

from mcpchat.infrastructure.app_factory import AppFactory
from mcpchat.modules.config import ConfigManager
from mcpchat.modules.execution import ExecutionTracker
from mcpchat.modules.mcp_tools import ConnectionManager


def get_app_factory(request: Request) -> AppFactory:
    return request.app.state.app_factory


def get_config_manager(request: Request) -> ConfigManager:
    return get_app_factory(request).get_config_manager()


def get_connection_manager(request: Request) -> ConnectionManager:
    return get_app_factory(request).get_connection_manager()


def get_execution_tracker(request: Request) -> ExecutionTracker:
    return get_app_factory(request).get_execution_tracker()
