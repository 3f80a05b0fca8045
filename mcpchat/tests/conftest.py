import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from mcpchat.core.metrics_logger import configure_metrics
from mcpchat.domain.errors import ExecutionCancelledError, TransportError
from mcpchat.domain.tools.models import ConnectionState
from mcpchat.modules.config import AppSettings, ConfigManager, MCPServerConfig
from mcpchat.modules.config.config_manager import MCPConfig
from mcpchat.modules.execution import ExecutionHistoryStore, ExecutionTracker
from mcpchat.modules.mcp_tools import ConnectionManager

DEFAULT_TOOLS = [
    {
        "name": "read_file",
        "description": "Read a file from disk",
        "inputSchema": {"type": "object", "properties": {"path": {"type": "string"}}},
    },
    {
        "name": "delete_file",
        "description": "Delete a file",
        "inputSchema": {"type": "object", "properties": {"path": {"type": "string"}}},
    },
]


@dataclass
class FakeServer:
    """Scripted behaviour shared by every channel opened for one server id."""
    tools: List[Dict[str, Any]] = field(default_factory=lambda: [dict(t) for t in DEFAULT_TOOLS])
    open_error: Optional[Exception] = None
    open_delay: float = 0.0
    ping_error: Optional[Exception] = None
    ping_delay: float = 0.0
    call_result: Any = "ok"
    call_error: Optional[Exception] = None
    call_delay: float = 0.0
    progress: List[Tuple[float, Optional[float], Optional[str]]] = field(default_factory=list)
    open_calls: int = 0
    ping_calls: int = 0
    calls: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
    active_calls: int = 0
    max_active_calls: int = 0
    interrupts: List[str] = field(default_factory=list)


class FakeChannel:
    """In-memory stand-in for a stdio MCP session."""

    def __init__(self, server_id: str, server: FakeServer):
        self.server_id = server_id
        self.server = server
        self.closed = False
        self._open = False
        self._inflight: Dict[str, asyncio.Task] = {}
        self._interrupted: set = set()
        self.exit_handler: Optional[Callable[[str], None]] = None

    @property
    def is_open(self) -> bool:
        return self._open and not self.closed

    def set_exit_handler(self, handler: Optional[Callable[[str], None]]) -> None:
        self.exit_handler = handler

    def simulate_exit(self, reason: str = "process exited") -> None:
        """Behave as if the subprocess died: report it to whoever registered."""
        self._open = False
        if self.exit_handler is not None:
            self.exit_handler(reason)

    async def open(self) -> None:
        self.server.open_calls += 1
        if self.server.open_delay:
            await asyncio.sleep(self.server.open_delay)
        if self.server.open_error is not None:
            raise self.server.open_error
        self._open = True

    async def list_tools(self) -> List[Dict[str, Any]]:
        return [dict(t) for t in self.server.tools]

    async def ping(self) -> None:
        self.server.ping_calls += 1
        error = self.server.ping_error
        if self.server.ping_delay:
            await asyncio.sleep(self.server.ping_delay)
        if error is not None:
            raise error

    async def _run(self, tool_name: str, arguments: Dict[str, Any], progress_handler) -> Any:
        for progress, total, message in self.server.progress:
            if progress_handler is not None:
                await progress_handler(progress, total, message)
            await asyncio.sleep(0)
        if self.server.call_delay:
            await asyncio.sleep(self.server.call_delay)
        if self.server.call_error is not None:
            raise self.server.call_error
        if callable(self.server.call_result):
            return self.server.call_result(tool_name, arguments)
        return self.server.call_result

    async def call_tool(self, tool_name, arguments, progress_handler=None, request_key=None):
        server = self.server
        server.calls.append((tool_name, dict(arguments)))
        server.active_calls += 1
        server.max_active_calls = max(server.max_active_calls, server.active_calls)
        key = request_key or tool_name
        task = asyncio.ensure_future(self._run(tool_name, arguments, progress_handler))
        self._inflight[key] = task
        try:
            return await task
        except asyncio.CancelledError:
            if key in self._interrupted:
                self._interrupted.discard(key)
                raise ExecutionCancelledError(f"Call to '{tool_name}' was interrupted")
            if self.closed:
                raise TransportError("Channel closed during the call", code="connection_closed")
            raise
        finally:
            server.active_calls -= 1
            self._inflight.pop(key, None)

    def interrupt(self, request_key: str) -> bool:
        task = self._inflight.get(request_key)
        if task is None or task.done():
            return False
        self.server.interrupts.append(request_key)
        self._interrupted.add(request_key)
        task.cancel()
        return True

    async def close(self) -> None:
        self.closed = True
        self._open = False
        for task in list(self._inflight.values()):
            if not task.done():
                task.cancel()


class FakeChannelFactory:
    """Channel factory handed to ConnectionManager; records every channel it builds."""

    def __init__(self):
        self.servers: Dict[str, FakeServer] = {}
        self.channels: Dict[str, List[FakeChannel]] = {}

    def server(self, server_id: str) -> FakeServer:
        if server_id not in self.servers:
            self.servers[server_id] = FakeServer()
        return self.servers[server_id]

    def latest(self, server_id: str) -> FakeChannel:
        return self.channels[server_id][-1]

    def __call__(self, server_id: str, config: MCPServerConfig) -> FakeChannel:
        channel = FakeChannel(server_id, self.server(server_id))
        self.channels.setdefault(server_id, []).append(channel)
        return channel


def make_settings(**overrides) -> AppSettings:
    """Fast settings for tests. Keys are the environment variable names."""
    values = {
        "MCP_HEALTH_CHECK_INTERVAL": 0,
        "MCP_HEALTH_PROBE_TIMEOUT": 0.5,
        "MCP_RECONNECT_INTERVAL": 10.0,
        "MCP_RECONNECT_MAX_INTERVAL": 60.0,
        "MCP_RECONNECT_MAX_ATTEMPTS": 5,
        "MCP_TOOL_CACHE_TTL": 0,
        "TOOL_WARNING_THRESHOLD": 0,
        "MCP_CONFIG_POLL_INTERVAL": 0,
    }
    values.update(overrides)
    return AppSettings(**values)


def make_server_config(**kwargs) -> MCPServerConfig:
    kwargs.setdefault("command", "fake-mcp-server")
    return MCPServerConfig(**kwargs)


def make_config_manager(servers: Dict[str, MCPServerConfig], settings: Optional[AppSettings] = None) -> ConfigManager:
    manager = ConfigManager(app_settings=settings or make_settings())
    manager.set_mcp_config(MCPConfig(servers=servers))
    return manager


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


async def wait_for_state(manager: ConnectionManager, server_id: str, state: ConnectionState, timeout: float = 2.0) -> None:
    await wait_until(lambda: manager.get_connection_state(server_id) == state, timeout)


@pytest.fixture(autouse=True)
def _metrics_off():
    configure_metrics(False)
    yield
    configure_metrics(False)


@pytest.fixture
def channel_factory() -> FakeChannelFactory:
    return FakeChannelFactory()


@pytest.fixture
def settings() -> AppSettings:
    return make_settings()


@pytest.fixture
def config_manager(settings) -> ConfigManager:
    return make_config_manager(
        {
            "filesystem": make_server_config(max_concurrency=2, timeout=5),
            "weather": make_server_config(timeout=5, tool_timeouts={"forecast": 1}),
            "legacy": make_server_config(disabled=True),
        },
        settings,
    )


@pytest_asyncio.fixture
async def connection_manager(config_manager, settings, channel_factory):
    manager = ConnectionManager(config_manager, settings=settings, channel_factory=channel_factory)
    await manager.initialize()
    await manager.wait_until_healthy("filesystem", timeout=2)
    await manager.wait_until_healthy("weather", timeout=2)
    yield manager
    await manager.shutdown()


@pytest_asyncio.fixture
async def tracker(connection_manager, settings):
    tracker = ExecutionTracker(connection_manager, history=ExecutionHistoryStore(100), settings=settings)
    yield tracker
    await tracker.shutdown()
