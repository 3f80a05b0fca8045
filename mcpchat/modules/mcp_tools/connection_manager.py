"""MCP server connection lifecycle and health monitoring.

One ``ServerConnection`` per enabled server. Each connection runs a small
state machine (disconnected, connecting, healthy, degraded, error) driven by
connect attempts, health probes and dispatch failures. Lifecycle operations
(connect, reconnect, disconnect) hold the connection's ``asyncio.Lock``;
state transitions themselves are synchronous so a health demotion can never
interleave with a completing tool call.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from mcpchat.core.log_sanitizer import sanitize_for_logging
from mcpchat.core.metrics_logger import log_metric
from mcpchat.domain.errors import (
    DomainError,
    ProtocolError,
    ServerNotFoundError,
    TransportError,
)
from mcpchat.domain.executions.models import utc_now
from mcpchat.domain.tools.models import ConnectionState, ConnectionStatus, ToolDescriptor
from mcpchat.interfaces.config import ServerConfigProvider
from mcpchat.interfaces.tools import ChannelFactory, ProgressHandler, ServerChannel
from mcpchat.modules.config.config_manager import AppSettings, MCPServerConfig
from mcpchat.modules.mcp_tools.catalog import ToolCatalog
from mcpchat.modules.mcp_tools.transport import create_stdio_channel

logger = logging.getLogger(__name__)

# Called with (server_id, reason) before a connection's channel is torn down
TeardownListener = Callable[[str, str], Any]


@dataclass(eq=False)
class ServerConnection:
    """Live state for one configured server. Owned by ConnectionManager."""
    server_id: str
    config: MCPServerConfig
    state: ConnectionState = ConnectionState.DISCONNECTED
    last_health_check: Optional[datetime] = None
    response_time_ms: Optional[float] = None
    consecutive_failures: int = 0
    catalog: Optional[ToolCatalog] = None
    last_error: Optional[str] = None
    connected_since: Optional[float] = None
    reconnect_attempts: int = 0
    generation: int = 0
    catalog_generation: int = 0
    channel: Optional[ServerChannel] = None
    retry_task: Optional[asyncio.Task] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: List[asyncio.Future] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.catalog is None:
            self.catalog = ToolCatalog.empty(self.server_id)

    @property
    def retry_pending(self) -> bool:
        return self.retry_task is not None and not self.retry_task.done()

    @property
    def dispatchable(self) -> bool:
        return self.state == ConnectionState.HEALTHY and self.channel is not None

    def snapshot(self) -> ConnectionStatus:
        uptime = None
        if self.connected_since is not None and self.state in (ConnectionState.HEALTHY, ConnectionState.DEGRADED):
            uptime = round(time.monotonic() - self.connected_since, 3)
        return ConnectionStatus(
            server_id=self.server_id,
            status=self.state,
            last_check=self.last_health_check,
            response_time_ms=self.response_time_ms,
            error=self.last_error if self.state != ConnectionState.HEALTHY else None,
            tool_count=len(self.catalog),
            uptime_seconds=uptime,
            consecutive_failures=self.consecutive_failures,
            reconnect_attempts=self.reconnect_attempts,
        )


class ConnectionManager:
    """Owns one subprocess-backed channel per enabled MCP server."""

    def __init__(
        self,
        config_provider: ServerConfigProvider,
        settings: Optional[AppSettings] = None,
        channel_factory: Optional[ChannelFactory] = None,
    ):
        self._config_provider = config_provider
        self._settings = settings or AppSettings()
        self._channel_factory: ChannelFactory = channel_factory or create_stdio_channel
        self._connections: Dict[str, ServerConnection] = {}
        self._teardown_listeners: List[TeardownListener] = []
        self._background_tasks: Set[asyncio.Task] = set()
        self._health_task: Optional[asyncio.Task] = None
        self._initialized = False
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------
    def add_teardown_listener(self, listener: TeardownListener) -> None:
        if listener not in self._teardown_listeners:
            self._teardown_listeners.append(listener)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ------------------------------------------------------------------
    # State transitions (synchronous, single writer)
    # ------------------------------------------------------------------
    def _set_state(self, conn: ServerConnection, state: ConnectionState, error: Optional[str] = None) -> None:
        previous = conn.state
        conn.state = state
        if error is not None:
            conn.last_error = error
        elif state == ConnectionState.HEALTHY:
            conn.last_error = None
        if previous != state:
            log = logger.warning if state in (ConnectionState.DEGRADED, ConnectionState.ERROR) else logger.info
            log(
                "MCP server %s: %s -> %s%s",
                sanitize_for_logging(conn.server_id),
                previous.value,
                state.value,
                f" ({sanitize_for_logging(error)})" if error else "",
            )
        self._wake_waiters(conn)

    def _wake_waiters(self, conn: ServerConnection) -> None:
        waiters, conn.waiters = conn.waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def _is_current(self, conn: ServerConnection, generation: int) -> bool:
        return (
            not self._shutting_down
            and self._connections.get(conn.server_id) is conn
            and conn.generation == generation
        )

    def _calculate_backoff_delay(self, attempt_count: int) -> float:
        """Exponential backoff delay for the given (1-based) reconnection attempt."""
        base_interval = self._settings.mcp_reconnect_interval
        max_interval = self._settings.mcp_reconnect_max_interval
        multiplier = self._settings.mcp_reconnect_backoff_multiplier

        delay = base_interval * (multiplier ** (attempt_count - 1))
        return min(delay, max_interval)

    def _schedule_retry(self, conn: ServerConnection) -> None:
        if self._shutting_down or self._connections.get(conn.server_id) is not conn:
            return
        if conn.retry_pending:
            return
        max_attempts = self._settings.mcp_reconnect_max_attempts
        if conn.reconnect_attempts >= max_attempts:
            logger.error(
                "MCP server %s: giving up after %d reconnection attempts; manual reconnect required",
                sanitize_for_logging(conn.server_id),
                conn.reconnect_attempts,
            )
            return
        conn.reconnect_attempts += 1
        delay = self._calculate_backoff_delay(conn.reconnect_attempts)
        logger.info(
            "MCP server %s: reconnection attempt %d/%d in %.1fs",
            sanitize_for_logging(conn.server_id),
            conn.reconnect_attempts,
            max_attempts,
            delay,
        )
        conn.retry_task = self._spawn(self._retry_after(conn, delay))
        self._wake_waiters(conn)

    def _cancel_retry(self, conn: ServerConnection) -> None:
        task = conn.retry_task
        conn.retry_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _retry_after(self, conn: ServerConnection, delay: float) -> None:
        await asyncio.sleep(delay)
        async with conn.lock:
            if self._shutting_down or self._connections.get(conn.server_id) is not conn:
                return
            if conn.retry_task is asyncio.current_task():
                conn.retry_task = None
            if conn.dispatchable:
                return
            await self._connect_locked(conn)

    def _detach_channel(self, conn: ServerConnection) -> Optional[ServerChannel]:
        channel, conn.channel = conn.channel, None
        conn.generation += 1
        conn.connected_since = None
        return channel

    async def _close_channel(self, server_id: str, channel: Optional[ServerChannel]) -> None:
        if channel is None:
            return
        try:
            await channel.close()
        except Exception as e:
            logger.warning(f"Error closing channel for {sanitize_for_logging(server_id)}: {e}")

    def _handle_transport_failure(self, conn: ServerConnection, generation: int, message: str) -> None:
        """Pipe closed or subprocess gone: discard the channel and enter backoff."""
        if not self._is_current(conn, generation):
            return
        channel = self._detach_channel(conn)
        conn.catalog = ToolCatalog.empty(conn.server_id, conn.catalog_generation)
        conn.consecutive_failures += 1
        self._set_state(conn, ConnectionState.ERROR, message)
        self._spawn(self._close_channel(conn.server_id, channel))
        self._schedule_retry(conn)

    def _record_failure(self, conn: ServerConnection, message: str) -> None:
        """Count a failed health probe toward the error threshold."""
        conn.consecutive_failures += 1
        conn.last_error = message
        threshold = self._settings.mcp_health_failure_threshold
        if conn.consecutive_failures >= threshold:
            if conn.state != ConnectionState.ERROR:
                self._set_state(conn, ConnectionState.ERROR, message)
            self._schedule_retry(conn)
        elif conn.state == ConnectionState.HEALTHY:
            self._set_state(conn, ConnectionState.DEGRADED, message)

    def _record_call_failure(self, conn: ServerConnection, message: str) -> None:
        """Count a malformed call response without taking the connection out of service.

        Only a run of failures reaching the threshold moves the connection to
        error; a single bad response fails just the call that received it.
        """
        conn.consecutive_failures += 1
        conn.last_error = message
        if conn.consecutive_failures >= self._settings.mcp_health_failure_threshold:
            if conn.state != ConnectionState.ERROR:
                self._set_state(conn, ConnectionState.ERROR, message)
            self._schedule_retry(conn)

    def _on_channel_exit(self, conn: ServerConnection, generation: int, channel: ServerChannel, reason: str) -> None:
        if conn.channel is not channel:
            return
        self._handle_transport_failure(conn, generation, reason)

    def _record_success(self, conn: ServerConnection, response_time_ms: Optional[float] = None) -> None:
        conn.consecutive_failures = 0
        if response_time_ms is not None:
            conn.response_time_ms = response_time_ms
        if conn.state in (ConnectionState.DEGRADED, ConnectionState.ERROR):
            self._cancel_retry(conn)
            conn.reconnect_attempts = 0
            self._set_state(conn, ConnectionState.HEALTHY)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self) -> None:
        """Dispatch a connect per enabled server and start health monitoring.

        Returns once the attempts are dispatched, not once servers are healthy.
        """
        if self._initialized:
            logger.warning("ConnectionManager.initialize() called twice; ignoring")
            return
        self._initialized = True
        self._shutting_down = False

        servers = self._config_provider.get_enabled_servers()
        self._config_provider.add_watcher(self.update_server_configs)
        logger.info(f"Initializing MCP connections for {len(servers)} servers: {list(servers.keys())}")

        for server_id, config in servers.items():
            if config.disabled:
                continue
            conn = ServerConnection(server_id=server_id, config=config)
            self._connections[server_id] = conn
            self._dispatch_connect(conn)

        interval = self._settings.mcp_health_check_interval
        if interval > 0:
            self._health_task = asyncio.create_task(self._health_monitor_loop(interval))
            logger.info(f"Started MCP health monitor (interval {interval}s)")

    def _dispatch_connect(self, conn: ServerConnection) -> asyncio.Task:
        if conn.state == ConnectionState.DISCONNECTED:
            self._set_state(conn, ConnectionState.CONNECTING)
        return self._spawn(self.connect(conn.server_id))

    async def connect(self, server_id: str) -> bool:
        """Connect to a configured server; True once it is healthy."""
        conn = self._connections.get(server_id)
        if conn is None:
            raise ServerNotFoundError(f"Server '{sanitize_for_logging(server_id)}' is not configured")
        async with conn.lock:
            if conn.dispatchable:
                return True
            return await self._connect_locked(conn)

    async def _handshake(self, channel: ServerChannel) -> List[Dict[str, Any]]:
        await channel.open()
        return await channel.list_tools()

    async def _connect_locked(self, conn: ServerConnection) -> bool:
        server_id = conn.server_id
        safe_server = sanitize_for_logging(server_id)
        self._cancel_retry(conn)

        if conn.channel is not None:
            await self._notify_teardown(server_id, "Server connection is being replaced")
            await self._close_channel(server_id, self._detach_channel(conn))

        conn.generation += 1
        generation = conn.generation
        self._set_state(conn, ConnectionState.CONNECTING)
        start = time.monotonic()
        channel: Optional[ServerChannel] = None

        try:
            channel = self._channel_factory(server_id, conn.config)
            raw_tools = await asyncio.wait_for(self._handshake(channel), timeout=conn.config.timeout)
            conn.catalog_generation += 1
            catalog = ToolCatalog.from_raw(server_id, conn.catalog_generation, raw_tools)
        except asyncio.CancelledError:
            await self._close_channel(server_id, channel)
            if self._connections.get(server_id) is conn and conn.generation == generation:
                self._set_state(conn, ConnectionState.DISCONNECTED)
            raise
        except Exception as e:
            await self._close_channel(server_id, channel)
            if isinstance(e, asyncio.TimeoutError):
                message = f"Handshake with server '{safe_server}' timed out after {conn.config.timeout}s"
            elif isinstance(e, DomainError):
                message = e.message
            else:
                message = f"Failed to connect to server '{safe_server}': {type(e).__name__}: {e}"
            duration_ms = (time.monotonic() - start) * 1000
            logger.error(f"MCP server {safe_server} connect failed: {sanitize_for_logging(message)}")
            log_metric("server_connect", server=server_id, success=False, duration_ms=round(duration_ms))
            if self._is_current(conn, generation):
                self._set_state(conn, ConnectionState.ERROR, message)
                self._schedule_retry(conn)
            return False

        if not self._is_current(conn, generation):
            await self._close_channel(server_id, channel)
            return False

        duration_ms = (time.monotonic() - start) * 1000
        conn.channel = channel
        channel.set_exit_handler(
            lambda reason: self._on_channel_exit(conn, generation, channel, reason)
        )
        conn.catalog = catalog
        conn.connected_since = time.monotonic()
        conn.consecutive_failures = 0
        conn.reconnect_attempts = 0
        conn.last_health_check = utc_now()
        conn.response_time_ms = round(duration_ms, 3)
        self._set_state(conn, ConnectionState.HEALTHY)
        logger.info(f"Connected to MCP server {safe_server} with {len(catalog)} tools in {duration_ms:.0f}ms")
        log_metric("server_connect", server=server_id, success=True, duration_ms=round(duration_ms), tools=len(catalog))
        return True

    async def _notify_teardown(self, server_id: str, reason: str) -> None:
        for listener in list(self._teardown_listeners):
            try:
                result = listener(server_id, reason)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Teardown listener failed for {sanitize_for_logging(server_id)}: {e}", exc_info=True)

    async def _teardown_locked(self, conn: ServerConnection, reason: str) -> None:
        self._cancel_retry(conn)
        await self._notify_teardown(conn.server_id, reason)
        channel = self._detach_channel(conn)
        conn.catalog = ToolCatalog.empty(conn.server_id, conn.catalog_generation)
        self._set_state(conn, ConnectionState.DISCONNECTED)
        await self._close_channel(conn.server_id, channel)

    async def reconnect_server(self, server_id: str) -> bool:
        """Tear down the server's channel, cancelling its in-flight work, then connect again.

        Resets the retry counter; this is the way out of an exhausted error state.
        """
        conn = self._connections.get(server_id)
        if conn is None:
            raise ServerNotFoundError(f"Server '{sanitize_for_logging(server_id)}' is not configured")
        logger.info(f"Manual reconnect requested for MCP server {sanitize_for_logging(server_id)}")
        async with conn.lock:
            await self._teardown_locked(conn, "Server reconnecting")
            conn.reconnect_attempts = 0
            conn.consecutive_failures = 0
            return await self._connect_locked(conn)

    async def disconnect_server(self, server_id: str) -> bool:
        """Terminate the server's subprocess and drop it from the active set."""
        conn = self._connections.get(server_id)
        if conn is None:
            return False
        async with conn.lock:
            await self._teardown_locked(conn, "Server disconnected")
            if self._connections.get(server_id) is conn:
                del self._connections[server_id]
            self._wake_waiters(conn)
        logger.info(f"Disconnected MCP server {sanitize_for_logging(server_id)}")
        return True

    async def update_server_configs(self, configs: Dict[str, MCPServerConfig]) -> Dict[str, List[str]]:
        """Diff the new config map against the live set and converge.

        Removed or disabled servers are disconnected, new enabled servers are
        connected and servers whose connection settings changed are reconnected.
        """
        enabled = {sid: cfg for sid, cfg in configs.items() if not cfg.disabled}
        removed = [sid for sid in self._connections if sid not in enabled]
        added = [sid for sid in enabled if sid not in self._connections]
        changed: List[str] = []
        updated: List[str] = []
        for sid, cfg in enabled.items():
            conn = self._connections.get(sid)
            if conn is None or conn.config == cfg:
                continue
            if conn.config.connection_fingerprint() != cfg.connection_fingerprint():
                changed.append(sid)
            else:
                updated.append(sid)
            conn.config = cfg

        if removed or added or changed:
            logger.info(
                f"Applying MCP config changes: added={added} removed={removed} changed={changed}"
            )

        await asyncio.gather(*(self.disconnect_server(sid) for sid in removed))
        for sid in added:
            self._connections[sid] = ServerConnection(server_id=sid, config=enabled[sid])
        results = await asyncio.gather(
            *(self.connect(sid) for sid in added),
            *(self.reconnect_server(sid) for sid in changed),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            if isinstance(result, Exception):
                logger.error(f"Error applying MCP config change: {result}")
        return {"added": added, "removed": removed, "changed": changed, "updated": updated}

    async def shutdown(self) -> None:
        """Stop monitoring and retries and tear down every connection."""
        if self._shutting_down:
            return
        self._shutting_down = True
        self._config_provider.remove_watcher(self.update_server_configs)

        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        for conn in self._connections.values():
            self._cancel_retry(conn)

        for conn in list(self._connections.values()):
            async with conn.lock:
                await self._teardown_locked(conn, "Shutting down")
            self._wake_waiters(conn)

        pending = [t for t in self._background_tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._connections.clear()
        self._initialized = False
        logger.info("MCP connection manager shut down")

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    async def _health_monitor_loop(self, interval: float) -> None:
        while not self._shutting_down:
            try:
                await asyncio.sleep(interval)
                await self.perform_health_check()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in MCP health monitor loop: {e}", exc_info=True)

    async def perform_health_check(self) -> List[ConnectionStatus]:
        """Probe every connection with a live channel and return fresh statuses."""
        targets = [conn for conn in self._connections.values() if conn.channel is not None]
        if targets:
            await asyncio.gather(*(self._probe(conn) for conn in targets))
        return self.get_connection_statuses()

    async def _probe(self, conn: ServerConnection) -> None:
        channel = conn.channel
        generation = conn.generation
        if channel is None:
            return
        timeout = self._settings.mcp_health_probe_timeout
        start = time.monotonic()
        error: Optional[Exception] = None
        try:
            await asyncio.wait_for(channel.ping(), timeout=timeout)
        except asyncio.TimeoutError:
            error = TransportError(f"Health probe timed out after {timeout}s", code="probe_timeout")
        except DomainError as e:
            error = e
        except Exception as e:
            error = ProtocolError(f"Health probe failed: {type(e).__name__}: {e}")

        if not self._is_current(conn, generation) or conn.channel is not channel:
            logger.debug("Ignoring stale health probe result for %s", sanitize_for_logging(conn.server_id))
            return

        elapsed_ms = round((time.monotonic() - start) * 1000, 3)
        conn.last_health_check = utc_now()

        if error is None:
            self._record_success(conn, elapsed_ms)
            log_metric("health_check", server=conn.server_id, success=True, duration_ms=round(elapsed_ms))
            await self._refresh_catalog_if_stale(conn, generation)
            return

        log_metric("health_check", server=conn.server_id, success=False)
        if isinstance(error, TransportError) and error.code != "probe_timeout":
            self._handle_transport_failure(conn, generation, error.message)
        else:
            self._record_failure(conn, error.message)

    async def _refresh_catalog_if_stale(self, conn: ServerConnection, generation: int) -> None:
        if not conn.catalog.is_stale(self._settings.mcp_tool_cache_ttl):
            return
        channel = conn.channel
        if channel is None:
            return
        try:
            raw_tools = await asyncio.wait_for(channel.list_tools(), timeout=conn.config.timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool catalog refresh timed out for %s", sanitize_for_logging(conn.server_id))
            return
        except DomainError as e:
            logger.warning(
                "Tool catalog refresh failed for %s: %s",
                sanitize_for_logging(conn.server_id),
                sanitize_for_logging(e.message),
            )
            return
        if not self._is_current(conn, generation):
            return
        try:
            catalog = ToolCatalog.from_raw(conn.server_id, conn.catalog_generation + 1, raw_tools)
        except ProtocolError as e:
            logger.warning("Ignoring malformed tool list from %s: %s", sanitize_for_logging(conn.server_id), e)
            return
        conn.catalog_generation = catalog.generation
        conn.catalog = catalog
        logger.debug("Refreshed tool catalog for %s (%d tools)", sanitize_for_logging(conn.server_id), len(catalog))

    # ------------------------------------------------------------------
    # Dispatch (the only path to a channel)
    # ------------------------------------------------------------------
    async def call_tool(
        self,
        server_id: str,
        tool_name: str,
        arguments: Dict[str, Any],
        progress_handler: Optional[ProgressHandler] = None,
        request_key: Optional[str] = None,
    ) -> str:
        """Invoke a tool on a healthy connection.

        Raises:
            ServerNotFoundError: No connection exists for ``server_id``.
            TransportError: The connection is not healthy or the pipe failed.
            ProtocolError: The server sent a malformed response.
            ToolExecutionError: The tool reported an error or the server
                rejected the request.
        """
        conn = self._connections.get(server_id)
        if conn is None:
            raise ServerNotFoundError(f"No connection for server '{sanitize_for_logging(server_id)}'")
        if not conn.dispatchable:
            raise TransportError(
                f"Server '{sanitize_for_logging(server_id)}' is unavailable (status: {conn.state.value})",
                code="server_unavailable",
            )
        channel = conn.channel
        generation = conn.generation
        try:
            result = await channel.call_tool(tool_name, arguments, progress_handler, request_key)
        except TransportError as e:
            self._handle_transport_failure(conn, generation, e.message)
            raise
        except ProtocolError as e:
            if self._is_current(conn, generation):
                self._record_call_failure(conn, e.message)
            raise
        if self._is_current(conn, generation):
            conn.consecutive_failures = 0
        return result

    def interrupt(self, server_id: str, request_key: str) -> bool:
        """Best-effort abort of an in-flight call; the server may keep running it."""
        conn = self._connections.get(server_id)
        if conn is None or conn.channel is None:
            return False
        try:
            return bool(conn.channel.interrupt(request_key))
        except Exception as e:
            logger.warning(f"Interrupt failed on {sanitize_for_logging(server_id)}: {e}")
            return False

    async def wait_until_healthy(self, server_id: str, timeout: Optional[float] = None) -> None:
        """Wait until the connection can take calls.

        Raises:
            ServerNotFoundError: The server has no connection (or it was removed).
            TransportError: The connection is in error with no retry pending,
                is disconnected, or did not recover within ``timeout``.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            conn = self._connections.get(server_id)
            if conn is None:
                raise ServerNotFoundError(f"No connection for server '{sanitize_for_logging(server_id)}'")
            if conn.dispatchable:
                return
            # A locked disconnected connection is mid-reconnect
            if (conn.state == ConnectionState.ERROR and not conn.retry_pending) or (
                conn.state == ConnectionState.DISCONNECTED and not conn.lock.locked()
            ):
                raise TransportError(
                    f"Server '{sanitize_for_logging(server_id)}' is unavailable: "
                    f"{conn.last_error or conn.state.value}",
                    code="server_unavailable",
                )
            waiter = loop.create_future()
            conn.waiters.append(waiter)
            try:
                if deadline is None:
                    await waiter
                else:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise asyncio.TimeoutError()
                    await asyncio.wait_for(waiter, timeout=remaining)
            except asyncio.TimeoutError:
                raise TransportError(
                    f"Server '{sanitize_for_logging(server_id)}' did not become healthy within {timeout}s",
                    code="server_unavailable",
                )
            finally:
                if waiter in conn.waiters:
                    conn.waiters.remove(waiter)

    # ------------------------------------------------------------------
    # Read-only accessors (never block on I/O)
    # ------------------------------------------------------------------
    def has_connection(self, server_id: str) -> bool:
        return server_id in self._connections

    def get_connection_state(self, server_id: str) -> Optional[ConnectionState]:
        conn = self._connections.get(server_id)
        return conn.state if conn else None

    def get_connection_status(self, server_id: str) -> Optional[ConnectionStatus]:
        conn = self._connections.get(server_id)
        return conn.snapshot() if conn else None

    def get_connection_statuses(self) -> List[ConnectionStatus]:
        return [conn.snapshot() for conn in self._connections.values()]

    def get_all_tools(self) -> List[ToolDescriptor]:
        tools: List[ToolDescriptor] = []
        for conn in self._connections.values():
            tools.extend(conn.catalog.tools)
        return tools

    def get_server_tools(self, server_id: str) -> List[ToolDescriptor]:
        conn = self._connections.get(server_id)
        return list(conn.catalog.tools) if conn else []

    def get_server_catalog(self, server_id: str) -> Optional[ToolCatalog]:
        conn = self._connections.get(server_id)
        return conn.catalog if conn else None

    def get_tools_by_server(self) -> Dict[str, List[ToolDescriptor]]:
        return {sid: list(conn.catalog.tools) for sid, conn in self._connections.items()}

    def get_function_tools(self) -> List[Dict[str, Any]]:
        """LLM function-calling descriptors for every healthy server."""
        functions: List[Dict[str, Any]] = []
        for conn in self._connections.values():
            if conn.state == ConnectionState.HEALTHY:
                functions.extend(conn.catalog.to_function_schemas())
        return functions
