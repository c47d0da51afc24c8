"""Client for remote tool servers.

Frames are newline-delimited JSON. Every request carries a fresh
`correlation_id`; a background reader matches responses to waiting calls by
that id, so several calls can be in flight on one connection.
"""

import asyncio
import contextlib
import json
import shlex
import uuid
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from switchboard.exceptions import (
    ConfigurationError,
    McpConnectError,
    McpDisconnectedError,
    McpError,
    McpInvalidParamsError,
    McpProtocolError,
    McpTimeoutError,
    McpToolNotFoundError,
)
from switchboard.logging import get_logger
from switchboard.tools.registry import ToolDescriptor, ToolKind

log = get_logger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024
_CLOSE_GRACE_SECONDS = 2.0


class ToolServerRequest(BaseModel):
    correlation_id: str
    method: Literal["list_tools", "call_tool"]
    params: dict[str, Any] = Field(default_factory=dict)


class ToolServerErrorBody(BaseModel):
    code: str
    message: str = ""


class ToolServerResponse(BaseModel):
    correlation_id: str
    result: dict[str, Any] | None = None
    error: ToolServerErrorBody | None = None


class RemoteToolInfo(BaseModel):
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class ListToolsResult(BaseModel):
    tools: list[RemoteToolInfo] = Field(default_factory=list)


class CallToolResult(BaseModel):
    content: str | list[Any] = ""
    is_error: bool = False

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        parts: list[str] = []
        for item in self.content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            elif isinstance(item, str):
                parts.append(item)
        return "\n".join(parts)


@dataclass(frozen=True)
class ToolOutcome:
    """Result of a remote tool invocation."""

    content: str
    is_error: bool = False


@dataclass(frozen=True)
class ToolServerAddress:
    """Parsed `tcp://host:port`, `host:port` or `stdio:<command> [args...]`."""

    transport: Literal["tcp", "stdio"]
    host: str = ""
    port: int = 0
    argv: tuple[str, ...] = ()

    def __str__(self) -> str:
        if self.transport == "stdio":
            return "stdio:" + shlex.join(self.argv)
        return f"tcp://{self.host}:{self.port}"


def parse_address(address: str) -> ToolServerAddress:
    """Parse a tool server address.

    Raises:
        ConfigurationError if the address is malformed
    """
    raw = str(address or "").strip()
    if not raw:
        raise ConfigurationError("Tool server address is empty")

    if raw.startswith("stdio:"):
        try:
            argv = tuple(shlex.split(raw[len("stdio:"):]))
        except ValueError as e:
            raise ConfigurationError(f"Invalid stdio tool server command: {raw!r}") from e
        if not argv:
            raise ConfigurationError(f"Tool server address has no command: {raw!r}")
        return ToolServerAddress(transport="stdio", argv=argv)

    target = raw[len("tcp://"):] if raw.startswith("tcp://") else raw
    host, sep, port_text = target.rpartition(":")
    host = host.strip("[]")
    if not sep or not host or not port_text.isdigit():
        raise ConfigurationError(f"Invalid tool server address (expected host:port): {raw!r}")
    port = int(port_text)
    if not 0 < port < 65536:
        raise ConfigurationError(f"Invalid tool server port in {raw!r}")
    return ToolServerAddress(transport="tcp", host=host, port=port)


_ERROR_CODES: dict[str, type[McpError]] = {
    "tool_not_found": McpToolNotFoundError,
    "invalid_params": McpInvalidParamsError,
}


class ToolServerSession:
    """One live connection to a tool server.

    The tool list is cached for the lifetime of the session; reconnecting
    creates a new session with an empty cache.
    """

    def __init__(
        self,
        server_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        process: asyncio.subprocess.Process | None = None,
        call_timeout: float = 30.0,
    ):
        self.server_id = server_id
        self.call_timeout = call_timeout
        self._reader = reader
        self._writer = writer
        self._process = process
        self._pending: dict[str, asyncio.Future[ToolServerResponse]] = {}
        self._tools: list[ToolDescriptor] | None = None
        self._closed = False
        self._reader_task = asyncio.create_task(self._read_loop())

    @property
    def connected(self) -> bool:
        return not self._closed

    @property
    def pending_calls(self) -> int:
        return len(self._pending)

    async def _read_loop(self) -> None:
        reason = "connection closed by server"
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                self._dispatch(line)
        except asyncio.CancelledError:
            reason = "session closed"
            raise
        except (ConnectionError, asyncio.IncompleteReadError, asyncio.LimitOverrunError, ValueError) as e:
            reason = f"read failed: {e}"
            log.warning("Tool server read failed", server=self.server_id, error=str(e))
        finally:
            self._closed = True
            self._fail_pending(McpDisconnectedError(f"Tool server '{self.server_id}' disconnected ({reason})"))

    def _fail_pending(self, error: McpError) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    def _dispatch(self, line: bytes) -> None:
        text = line.strip()
        if not text:
            return
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            log.warning("Dropping malformed tool server frame", server=self.server_id, error=str(e))
            return

        correlation_id = data.get("correlation_id") if isinstance(data, dict) else None
        try:
            response = ToolServerResponse.model_validate(data)
        except ValidationError as e:
            future = self._pending.pop(correlation_id, None) if isinstance(correlation_id, str) else None
            if future is not None and not future.done():
                future.set_exception(McpProtocolError(f"Malformed response frame: {e.error_count()} error(s)"))
            else:
                log.warning("Dropping invalid tool server frame", server=self.server_id)
            return

        future = self._pending.pop(response.correlation_id, None)
        if future is None:
            log.warning("Dropping response with unknown correlation id", server=self.server_id, correlation_id=response.correlation_id)
            return
        if not future.done():
            future.set_result(response)

    async def _request(self, method: str, params: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        if self._closed:
            raise McpDisconnectedError(f"Tool server '{self.server_id}' is not connected")

        correlation_id = uuid.uuid4().hex
        future: asyncio.Future[ToolServerResponse] = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = future
        frame = ToolServerRequest(correlation_id=correlation_id, method=method, params=params)
        wait_seconds = timeout if timeout is not None else self.call_timeout
        try:
            try:
                self._writer.write(frame.model_dump_json().encode("utf-8") + b"\n")
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                raise McpDisconnectedError(f"Failed to send to tool server '{self.server_id}': {e}") from e

            try:
                response = await asyncio.wait_for(future, timeout=wait_seconds)
            except asyncio.TimeoutError as e:
                raise McpTimeoutError(
                    f"Tool server '{self.server_id}' did not answer {method} within {wait_seconds}s"
                ) from e
        finally:
            self._pending.pop(correlation_id, None)

        if response.error is not None:
            error_cls = _ERROR_CODES.get(response.error.code, McpProtocolError)
            raise error_cls(f"{response.error.code}: {response.error.message}")
        if response.result is None:
            raise McpProtocolError("Response carries neither result nor error")
        return response.result

    async def list_tools(self, refresh: bool = False) -> list[ToolDescriptor]:
        """Discover the server's tools (cached after the first call)."""
        if self._tools is not None and not refresh:
            return list(self._tools)
        result = await self._request("list_tools", {})
        try:
            parsed = ListToolsResult.model_validate(result)
        except ValidationError as e:
            raise McpProtocolError(f"Malformed list_tools result: {e.error_count()} error(s)") from e
        self._tools = [
            ToolDescriptor(
                name=info.name,
                description=info.description,
                parameters=info.input_schema,
                kind=ToolKind.REMOTE,
                server_id=self.server_id,
            )
            for info in parsed.tools
        ]
        log.info("Discovered remote tools", server=self.server_id, count=len(self._tools))
        return list(self._tools)

    async def call_tool(self, name: str, arguments: dict[str, Any], timeout: float | None = None) -> ToolOutcome:
        """Invoke a remote tool; arguments are forwarded verbatim."""
        result = await self._request("call_tool", {"tool_name": name, "arguments": arguments}, timeout=timeout)
        try:
            parsed = CallToolResult.model_validate(result)
        except ValidationError as e:
            raise McpProtocolError(f"Malformed call_tool result: {e.error_count()} error(s)") from e
        return ToolOutcome(content=parsed.text(), is_error=parsed.is_error)

    async def close(self) -> None:
        """Close the connection (and stop the server process for stdio)."""
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        self._closed = True
        self._fail_pending(McpDisconnectedError(f"Tool server '{self.server_id}' session closed"))

        with contextlib.suppress(ConnectionError, OSError):
            self._writer.close()
            await self._writer.wait_closed()

        if self._process is not None and self._process.returncode is None:
            self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=_CLOSE_GRACE_SECONDS)
            except asyncio.TimeoutError:
                self._process.kill()
                await self._process.wait()
        log.debug("Tool server session closed", server=self.server_id)


class ToolServerClient:
    """Opens sessions to tool servers over TCP or a stdio subprocess."""

    def __init__(self, connect_timeout: float = 5.0, call_timeout: float = 30.0):
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout

    async def connect(self, address: str | ToolServerAddress, server_id: str | None = None) -> ToolServerSession:
        """Open a session.

        Raises:
            McpConnectError if the server cannot be reached or started
        """
        parsed = address if isinstance(address, ToolServerAddress) else parse_address(address)
        name = server_id or str(parsed)

        if parsed.transport == "tcp":
            try:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(parsed.host, parsed.port, limit=STREAM_LIMIT),
                    timeout=self.connect_timeout,
                )
            except asyncio.TimeoutError as e:
                raise McpConnectError(f"Timed out connecting to tool server '{name}' at {parsed}") from e
            except OSError as e:
                raise McpConnectError(f"Failed to connect to tool server '{name}' at {parsed}: {e}") from e
            log.info("Connected to tool server", server=name, address=str(parsed))
            return ToolServerSession(name, reader, writer, call_timeout=self.call_timeout)

        try:
            process = await asyncio.create_subprocess_exec(
                *parsed.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise McpConnectError(f"Failed to start tool server '{name}': {e}") from e
        log.info("Started tool server process", server=name, pid=process.pid)
        return ToolServerSession(name, process.stdout, process.stdin, process=process, call_timeout=self.call_timeout)

    async def list_tools(self, session: ToolServerSession) -> list[ToolDescriptor]:
        return await session.list_tools()

    async def call_tool(
        self,
        session: ToolServerSession,
        name: str,
        arguments: dict[str, Any],
        timeout: float | None = None,
    ) -> ToolOutcome:
        return await session.call_tool(name, arguments, timeout=timeout)
