import asyncio
import json

import pytest
import pytest_asyncio

from switchboard.exceptions import (
    ConfigurationError,
    McpConnectError,
    McpDisconnectedError,
    McpInvalidParamsError,
    McpProtocolError,
    McpTimeoutError,
    McpToolNotFoundError,
)
from switchboard.tool_server import ToolServerClient, parse_address
from switchboard.tools.registry import ToolKind, ToolRegistry
from switchboard.tools.remote import register_remote_tools
from switchboard.tools.security import SecurityContext

TOOLS = [
    {
        "name": "lookup",
        "description": "Look something up",
        "input_schema": {"type": "object", "properties": {"key": {"type": "string"}}, "required": ["key"]},
    },
    {"name": "sleepy", "description": "Answers slowly"},
]


class _ToolServer:
    """In-process tool server speaking newline-delimited JSON."""

    def __init__(self):
        self.requests: list[dict] = []
        self.delays: dict[str, float] = {"sleepy": 0.2}
        self.silent_tools: set[str] = set()
        self.hang_up_on: set[str] = set()
        self.send_stray_frame = False
        self._server: asyncio.AbstractServer | None = None
        self.port = 0

    async def start(self) -> "_ToolServer":
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    @property
    def address(self) -> str:
        return f"tcp://127.0.0.1:{self.port}"

    async def stop(self) -> None:
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        tasks = []
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                frame = json.loads(line)
                self.requests.append(frame)
                tool = frame["params"].get("tool_name", "")
                if tool in self.hang_up_on:
                    break
                tasks.append(asyncio.create_task(self._respond(frame, writer)))
        finally:
            for task in tasks:
                task.cancel()
            writer.close()

    async def _respond(self, frame: dict, writer: asyncio.StreamWriter) -> None:
        method = frame["method"]
        params = frame["params"]
        correlation_id = frame["correlation_id"]
        if method == "list_tools":
            response = {"correlation_id": correlation_id, "result": {"tools": TOOLS}}
        else:
            tool = params["tool_name"]
            if tool in self.silent_tools:
                return
            await asyncio.sleep(self.delays.get(tool, 0))
            if tool == "lookup":
                key = params["arguments"].get("key")
                if key == "bad":
                    response = {"correlation_id": correlation_id, "error": {"code": "invalid_params", "message": "bad key"}}
                elif key == "weird":
                    response = {"correlation_id": correlation_id, "error": {"code": "exploded", "message": "?"}}
                elif key == "missing":
                    response = {"correlation_id": correlation_id, "result": {"content": "no such key", "is_error": True}}
                else:
                    response = {
                        "correlation_id": correlation_id,
                        "result": {"content": [{"type": "text", "text": f"value-of-{key}"}], "is_error": False},
                    }
            elif tool == "sleepy":
                response = {"correlation_id": correlation_id, "result": {"content": "yawn"}}
            else:
                response = {"correlation_id": correlation_id, "error": {"code": "tool_not_found", "message": tool}}
        if self.send_stray_frame:
            writer.write(json.dumps({"correlation_id": "not-a-real-id", "result": {}}).encode() + b"\n")
        writer.write(json.dumps(response).encode() + b"\n")
        await writer.drain()


@pytest_asyncio.fixture
async def tool_server():
    server = await _ToolServer().start()
    yield server
    await server.stop()


def test_parse_address_forms():
    assert parse_address("tcp://localhost:9000").port == 9000
    assert parse_address("127.0.0.1:9001").host == "127.0.0.1"
    stdio = parse_address("stdio:python -m my_server --flag")
    assert stdio.transport == "stdio"
    assert stdio.argv == ("python", "-m", "my_server", "--flag")
    for bad in ("", "localhost", "tcp://host:notaport", "host:70000", "stdio:"):
        with pytest.raises(ConfigurationError):
            parse_address(bad)


@pytest.mark.asyncio
async def test_list_tools_is_cached_per_session(tool_server):
    session = await ToolServerClient().connect(tool_server.address, server_id="kb")
    try:
        first = await session.list_tools()
        second = await session.list_tools()
    finally:
        await session.close()

    assert [d.name for d in first] == ["lookup", "sleepy"]
    assert first == second
    assert all(d.kind == ToolKind.REMOTE and d.server_id == "kb" for d in first)
    assert first[1].parameters == {"type": "object", "properties": {}}
    assert [r["method"] for r in tool_server.requests] == ["list_tools"]


@pytest.mark.asyncio
async def test_pipelined_calls_are_matched_by_correlation_id(tool_server):
    session = await ToolServerClient().connect(tool_server.address)
    try:
        slow, fast = await asyncio.gather(
            session.call_tool("sleepy", {}),
            session.call_tool("lookup", {"key": "a"}),
        )
    finally:
        await session.close()

    assert slow.content == "yawn"
    assert fast.content == "value-of-a"
    ids = [r["correlation_id"] for r in tool_server.requests]
    assert len(set(ids)) == 2


@pytest.mark.asyncio
async def test_unknown_correlation_ids_are_dropped(tool_server):
    tool_server.send_stray_frame = True
    session = await ToolServerClient().connect(tool_server.address)
    try:
        outcome = await session.call_tool("lookup", {"key": "b"})
    finally:
        await session.close()

    assert outcome.content == "value-of-b"


@pytest.mark.asyncio
async def test_call_without_response_times_out(tool_server):
    tool_server.silent_tools.add("lookup")
    session = await ToolServerClient(call_timeout=0.2).connect(tool_server.address)
    try:
        with pytest.raises(McpTimeoutError):
            await session.call_tool("lookup", {"key": "x"})
        assert session.pending_calls == 0
        assert session.connected is True
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_error_codes_map_to_errors(tool_server):
    session = await ToolServerClient().connect(tool_server.address)
    try:
        with pytest.raises(McpToolNotFoundError):
            await session.call_tool("nope", {})
        with pytest.raises(McpInvalidParamsError):
            await session.call_tool("lookup", {"key": "bad"})
        with pytest.raises(McpProtocolError):
            await session.call_tool("lookup", {"key": "weird"})
        outcome = await session.call_tool("lookup", {"key": "missing"})
    finally:
        await session.close()

    assert outcome.is_error is True
    assert outcome.content == "no such key"


@pytest.mark.asyncio
async def test_server_hang_up_fails_pending_calls(tool_server):
    tool_server.hang_up_on.add("lookup")
    session = await ToolServerClient().connect(tool_server.address)
    try:
        with pytest.raises(McpDisconnectedError):
            await session.call_tool("lookup", {"key": "x"})
        await asyncio.sleep(0)
        assert session.connected is False
        with pytest.raises(McpDisconnectedError):
            await session.call_tool("lookup", {"key": "y"})
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_unreachable_server_raises_connect_error():
    server = await _ToolServer().start()
    address = server.address
    await server.stop()

    with pytest.raises(McpConnectError):
        await ToolServerClient(connect_timeout=1.0).connect(address)


@pytest.mark.asyncio
async def test_remote_tools_run_through_registry(tool_server, tmp_path):
    registry = ToolRegistry(SecurityContext.build([tmp_path], base_dir=tmp_path))
    session = await ToolServerClient().connect(tool_server.address, server_id="kb")
    try:
        names = await register_remote_tools(registry, session)
        ok = await registry.execute("lookup", {"key": "c"})
        reported = await registry.execute("lookup", {"key": "missing"})
        invalid = await registry.execute("lookup", {"key": "bad"})
    finally:
        await session.close()

    assert names == ["lookup", "sleepy"]
    assert registry.schema_for_model()[0].source == "remote:kb"
    assert ok.success is True
    assert ok.content == "value-of-c"
    assert reported.success is False
    assert reported.error == "no such key"
    assert invalid.error_kind.value == "invalid_arguments"
