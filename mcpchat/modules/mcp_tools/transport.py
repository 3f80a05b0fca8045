"""Persistent stdio channel to one MCP server, built on fastmcp.

A ``FastMCPChannel`` owns exactly one subprocess for the lifetime of one
connection generation. The fastmcp ``Client`` context is entered once in
``open()`` and exited in ``close()``; every call in between reuses the same
session instead of reconnecting per request.
"""

import asyncio
import contextlib
import itertools
import json
import logging
import os
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import anyio
from fastmcp import Client
from fastmcp.client.transports import StdioTransport
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

from mcpchat.core.log_sanitizer import sanitize_for_logging
from mcpchat.domain.errors import (
    ExecutionCancelledError,
    ProtocolError,
    ToolExecutionError,
    TransportError,
)
from mcpchat.interfaces.tools import ProgressHandler
from mcpchat.modules.config.config_manager import MCPServerConfig, resolve_env_var

logger = logging.getLogger(__name__)

_ABORT_INTERRUPTED = "interrupted"
_ABORT_CLOSED = "closed"

# Mapping from MCP log levels to Python logging levels
MCP_TO_PYTHON_LOG_LEVEL = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}

# Failures that mean the pipe or the subprocess is gone
_TRANSPORT_EXCEPTIONS = (
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    BrokenPipeError,
    ConnectionError,
    EOFError,
    OSError,
)


def _is_connection_closed(error: McpError) -> bool:
    data = getattr(error, "error", None)
    message = str(getattr(data, "message", None) or error).lower()
    return "connection closed" in message


def translate_channel_error(server_id: str, error: BaseException) -> Exception:
    """Map an exception raised by fastmcp/mcp onto the domain error taxonomy."""
    if isinstance(error, (TransportError, ProtocolError, ToolExecutionError, ExecutionCancelledError)):
        return error
    safe_server = sanitize_for_logging(server_id)
    if isinstance(error, McpError):
        if _is_connection_closed(error):
            return TransportError(f"Connection to server '{safe_server}' closed", code="connection_closed")
        return ProtocolError(f"Server '{safe_server}' returned an error response: {error}", code="protocol_error")
    if isinstance(error, _TRANSPORT_EXCEPTIONS):
        return TransportError(
            f"Transport failure on server '{safe_server}': {type(error).__name__}: {error}",
            code="transport_error",
        )
    if isinstance(error, RuntimeError) and "not connected" in str(error).lower():
        return TransportError(f"Server '{safe_server}' is not connected", code="not_connected")
    if isinstance(error, (ValueError, TypeError, KeyError, json.JSONDecodeError)):
        return ProtocolError(f"Malformed response from server '{safe_server}': {error}", code="malformed_response")
    return TransportError(f"Unexpected channel failure on '{safe_server}': {type(error).__name__}: {error}")


def translate_call_error(server_id: str, tool_name: str, error: BaseException) -> Exception:
    """Like ``translate_channel_error``, for failures of a single tools/call.

    A JSON-RPC error reply (unknown tool, invalid params) is the server
    refusing this one request, so it becomes a ToolExecutionError.
    """
    if isinstance(error, McpError) and not _is_connection_closed(error):
        return ToolExecutionError(
            f"Server '{sanitize_for_logging(server_id)}' rejected call to "
            f"'{sanitize_for_logging(tool_name)}': {error}",
            code="tool_call_rejected",
        )
    return translate_channel_error(server_id, error)


def _content_text(contents: Any) -> str:
    """Flatten an MCP content array into display text."""
    parts: List[str] = []
    for item in contents or []:
        item_type = getattr(item, "type", None)
        if item_type == "text":
            text = getattr(item, "text", None)
            if text:
                parts.append(text)
        elif item_type == "image":
            parts.append(f"[image: {getattr(item, 'mimeType', 'unknown')}]")
        elif item_type == "audio":
            parts.append(f"[audio: {getattr(item, 'mimeType', 'unknown')}]")
        elif item_type == "resource":
            resource = getattr(item, "resource", None)
            text = getattr(resource, "text", None)
            parts.append(text if text else f"[resource: {getattr(resource, 'uri', '')}]")
        elif item_type == "resource_link":
            parts.append(f"[resource: {getattr(item, 'uri', '')}]")
    return "\n".join(parts)


def normalize_tool_result(raw_result: Any) -> str:
    """Normalize a fastmcp CallToolResult into the string stored in history.

    Structured content wins over the content array; text content is joined
    with newlines; non-text items are summarised instead of inlined.

    Raises:
        ProtocolError: If the object does not look like a tool result at all.
    """
    if raw_result is None or not hasattr(raw_result, "content"):
        raise ProtocolError(f"Malformed tool result: {type(raw_result).__name__}", code="malformed_response")

    structured = getattr(raw_result, "structured_content", None)
    if structured:
        # fastmcp wraps non-object return values as {"result": value}
        if isinstance(structured, dict) and set(structured.keys()) == {"result"}:
            structured = structured["result"]
        if isinstance(structured, str):
            return structured
        try:
            return json.dumps(structured, default=str)
        except (TypeError, ValueError) as e:
            logger.debug(f"Non-fatal issue serializing structured tool result: {e}")

    text = _content_text(raw_result.content)
    if text:
        return text

    data = getattr(raw_result, "data", None)
    if data is not None:
        return data if isinstance(data, str) else json.dumps(data, default=str)
    return ""


class EndOfStreamWatcher:
    """Wraps the session's read stream and reports when it runs dry.

    The stdio reader closes the stream once the subprocess's stdout hits EOF,
    which is how a crashed or exited server shows up on the client side.
    """

    def __init__(self, stream: Any, on_end: Callable[[], None]):
        self._stream = stream
        self._on_end = on_end

    async def __aenter__(self) -> "EndOfStreamWatcher":
        await self._stream.__aenter__()
        return self

    async def __aexit__(self, *exc_info) -> Any:
        return await self._stream.__aexit__(*exc_info)

    def __aiter__(self) -> "EndOfStreamWatcher":
        return self

    async def __anext__(self) -> Any:
        try:
            return await self._stream.receive()
        except anyio.EndOfStream:
            self._on_end()
            raise StopAsyncIteration

    async def aclose(self) -> None:
        await self._stream.aclose()


class MonitoredStdioTransport(StdioTransport):
    """StdioTransport that calls ``on_exit`` when the server process goes away.

    The session lives in the fastmcp client's session task, so the stdio
    streams are opened and closed there rather than in a separate task.
    """

    def __init__(
        self,
        command: str,
        args: List[str],
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        on_exit: Optional[Callable[[], None]] = None,
    ):
        super().__init__(command=command, args=args, env=env, cwd=cwd)
        self._on_exit = on_exit

    def _notify_exit(self) -> None:
        if self._on_exit is not None:
            self._on_exit()

    @contextlib.asynccontextmanager
    async def connect_session(self, **session_kwargs) -> AsyncIterator[ClientSession]:
        server_params = StdioServerParameters(
            command=self.command,
            args=self.args,
            env=self.env,
            cwd=self.cwd,
        )
        async with stdio_client(server_params) as (read_stream, write_stream):
            watched = EndOfStreamWatcher(read_stream, self._notify_exit)
            async with ClientSession(watched, write_stream, **session_kwargs) as session:
                yield session


class FastMCPChannel:
    """One persistent stdio session to an MCP server subprocess."""

    def __init__(self, server_id: str, config: MCPServerConfig, project_root: Optional[Path] = None):
        self.server_id = server_id
        self.config = config
        self._project_root = project_root or Path.cwd()
        self._client: Optional[Client] = None
        self._stack: Optional[AsyncExitStack] = None
        self._open = False
        self._closed = False
        self._inflight: Dict[str, asyncio.Task] = {}
        self._aborted: Dict[str, str] = {}
        self._call_ids = itertools.count(1)
        self._exit_handler: Optional[Callable[[str], None]] = None

    @property
    def is_open(self) -> bool:
        return self._open and not self._closed

    def set_exit_handler(self, handler: Optional[Callable[[str], None]]) -> None:
        """Register ``handler(reason)``, called once if the subprocess goes away."""
        self._exit_handler = handler

    def _on_process_exit(self) -> None:
        if self._closed or not self._open:
            return
        self._open = False
        reason = f"Server '{sanitize_for_logging(self.server_id)}' process exited"
        logger.warning(reason)
        handler, self._exit_handler = self._exit_handler, None
        if handler is not None:
            handler(reason)

    def _resolve_env(self) -> Dict[str, str]:
        resolved_env: Dict[str, str] = {}
        for key, value in self.config.env.items():
            try:
                resolved = resolve_env_var(value)
            except ValueError as e:
                raise TransportError(
                    f"Cannot start server '{sanitize_for_logging(self.server_id)}': {e}",
                    code="spawn_failed",
                ) from e
            if resolved is not None:
                resolved_env[key] = resolved
        return resolved_env

    def _resolve_cwd(self) -> Optional[str]:
        if not self.config.cwd:
            return None
        cwd = self.config.cwd
        if not os.path.isabs(cwd):
            cwd = str(self._project_root / cwd)
        if not os.path.isdir(cwd):
            raise TransportError(
                f"Working directory does not exist for server '{sanitize_for_logging(self.server_id)}': {cwd}",
                code="spawn_failed",
            )
        return cwd

    def _create_log_handler(self):
        """Forward MCP server log notifications to our logger."""
        server_name = sanitize_for_logging(self.server_id)

        async def log_handler(message) -> None:
            try:
                if hasattr(message, "level"):
                    log_level_str = str(message.level).lower()
                    log_data = getattr(message, "data", {})
                else:
                    log_level_str = message.get("level", "info").lower()
                    log_data = message.get("data", {})

                msg = log_data.get("msg", "") if isinstance(log_data, dict) else str(log_data)
                python_log_level = MCP_TO_PYTHON_LOG_LEVEL.get(log_level_str, logging.INFO)
                # Tool servers are chatty at INFO; keep that at DEBUG here
                backend_log_level = python_log_level if python_log_level >= logging.WARNING else logging.DEBUG
                logger.log(
                    backend_log_level,
                    f"[MCP:{server_name}] {sanitize_for_logging(msg)}",
                    extra={"mcp_server": self.server_id},
                )
            except Exception as e:
                logger.warning(f"Error handling log from MCP server {server_name}: {e}")

        return log_handler

    async def open(self) -> None:
        """Spawn the subprocess and run the MCP initialize handshake."""
        if self._closed:
            raise TransportError(f"Channel for '{sanitize_for_logging(self.server_id)}' was closed")
        if self._open:
            return

        env = self._resolve_env()
        cwd = self._resolve_cwd()
        logger.debug(
            "Creating STDIO client for %s with command=%s args=%s cwd=%s",
            sanitize_for_logging(self.server_id),
            sanitize_for_logging(self.config.command),
            sanitize_for_logging(self.config.args),
            sanitize_for_logging(cwd),
        )
        transport = MonitoredStdioTransport(
            command=self.config.command,
            args=list(self.config.args),
            env=env or None,
            cwd=cwd,
            on_exit=self._on_process_exit,
        )
        client = Client(transport, log_handler=self._create_log_handler())
        stack = AsyncExitStack()
        try:
            await stack.enter_async_context(client)
        except asyncio.CancelledError:
            await self._safe_aclose(stack)
            raise
        except Exception as e:
            await self._safe_aclose(stack)
            raise TransportError(
                f"Failed to start server '{sanitize_for_logging(self.server_id)}': {type(e).__name__}: {e}",
                code="spawn_failed",
            ) from e
        self._client = client
        self._stack = stack
        self._open = True
        logger.info(f"Opened STDIO MCP session for {sanitize_for_logging(self.server_id)}")

    def _require_client(self) -> Client:
        if not self.is_open or self._client is None:
            raise TransportError(
                f"Channel for server '{sanitize_for_logging(self.server_id)}' is not open",
                code="not_connected",
            )
        return self._client

    async def list_tools(self) -> List[Dict[str, Any]]:
        client = self._require_client()
        try:
            tools = await client.list_tools()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise translate_channel_error(self.server_id, e) from e

        raw: List[Dict[str, Any]] = []
        for tool in tools or []:
            name = getattr(tool, "name", None)
            if not name:
                raise ProtocolError(
                    f"Server '{sanitize_for_logging(self.server_id)}' listed a tool without a name",
                    code="malformed_response",
                )
            raw.append({
                "name": name,
                "description": getattr(tool, "description", None) or "",
                "inputSchema": getattr(tool, "inputSchema", None) or {},
            })
        return raw

    async def ping(self) -> None:
        client = self._require_client()
        try:
            ok = await client.ping()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise translate_channel_error(self.server_id, e) from e
        if ok is False:
            raise ProtocolError(f"Ping to '{sanitize_for_logging(self.server_id)}' was not acknowledged")

    async def call_tool(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        progress_handler: Optional[ProgressHandler] = None,
        request_key: Optional[str] = None,
    ) -> str:
        client = self._require_client()
        kwargs: Dict[str, Any] = {"raise_on_error": False}
        if progress_handler is not None:
            kwargs["progress_handler"] = progress_handler

        key = request_key or f"call-{next(self._call_ids)}"
        task = asyncio.ensure_future(client.call_tool(tool_name, arguments, **kwargs))
        self._inflight[key] = task
        try:
            raw_result = await task
        except asyncio.CancelledError:
            reason = self._aborted.pop(key, None)
            if reason == _ABORT_INTERRUPTED:
                raise ExecutionCancelledError(f"Call to '{sanitize_for_logging(tool_name)}' was interrupted")
            if reason == _ABORT_CLOSED:
                raise TransportError(
                    f"Channel to server '{sanitize_for_logging(self.server_id)}' closed during the call",
                    code="connection_closed",
                )
            raise
        except Exception as e:
            raise translate_call_error(self.server_id, tool_name, e) from e
        finally:
            self._inflight.pop(key, None)
            self._aborted.pop(key, None)

        if getattr(raw_result, "is_error", False):
            message = _content_text(getattr(raw_result, "content", None)) or "Tool reported an error"
            raise ToolExecutionError(message, code="tool_error")
        return normalize_tool_result(raw_result)

    def interrupt(self, request_key: str) -> bool:
        """Abort the local wait for an in-flight call.

        The server may keep working on the request; only our side stops
        waiting for the response.
        """
        task = self._inflight.get(request_key)
        if task is None or task.done():
            return False
        self._aborted[request_key] = _ABORT_INTERRUPTED
        task.cancel()
        return True

    async def _safe_aclose(self, stack: AsyncExitStack) -> None:
        try:
            await stack.aclose()
        except Exception as e:
            logger.warning(f"Error closing MCP session for {sanitize_for_logging(self.server_id)}: {e}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._open = False
        for key, task in list(self._inflight.items()):
            if not task.done():
                self._aborted[key] = _ABORT_CLOSED
                task.cancel()
        stack, self._stack = self._stack, None
        self._client = None
        if stack is not None:
            await self._safe_aclose(stack)
            logger.info(f"Closed MCP session for {sanitize_for_logging(self.server_id)}")


def create_stdio_channel(server_id: str, config: MCPServerConfig) -> FastMCPChannel:
    """Default channel factory used by the connection manager."""
    return FastMCPChannel(server_id, config)
