"""Proxy tools backed by a connected tool server."""

from typing import Any

from switchboard.exceptions import (
    InvalidArgumentsError,
    McpError,
    McpInvalidParamsError,
    McpTimeoutError,
    McpToolNotFoundError,
    ToolError,
    ToolErrorKind,
    ToolIOError,
    ToolNotFoundError,
    ToolTimeoutError,
)
from switchboard.logging import get_logger
from switchboard.tool_server import ToolServerSession
from switchboard.tools.registry import Tool, ToolDescriptor, ToolKind, ToolRegistry, ToolResult

log = get_logger(__name__)


def tool_error_from_mcp(tool_name: str, error: McpError) -> ToolError:
    """Per-call tool server failures surface like local tool errors."""
    if isinstance(error, McpToolNotFoundError):
        return ToolNotFoundError(tool_name)
    if isinstance(error, McpInvalidParamsError):
        return InvalidArgumentsError(tool_name, str(error))
    if isinstance(error, McpTimeoutError):
        return ToolTimeoutError(tool_name, str(error))
    return ToolIOError(tool_name, str(error))


class RemoteTool(Tool):
    """A tool discovered on a tool server, invoked by name with verbatim arguments."""

    kind = ToolKind.REMOTE

    def __init__(self, session: ToolServerSession, descriptor: ToolDescriptor):
        self.session = session
        self.name = descriptor.name
        self.description = descriptor.description
        self.parameters = dict(descriptor.parameters)
        # The session enforces its own per-call deadline first.
        self.timeout_seconds = session.call_timeout + 5.0

    @property
    def server_id(self) -> str | None:
        return self.session.server_id

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        if not isinstance(arguments, dict):
            raise InvalidArgumentsError(self.name, "Arguments must be an object")

    async def execute(self, **kwargs: Any) -> ToolResult:
        arguments = {key: value for key, value in kwargs.items() if key != "_abort_event"}
        try:
            outcome = await self.session.call_tool(self.name, arguments)
        except McpError as e:
            log.warning("Remote tool call failed", tool=self.name, server=self.server_id, kind=e.kind.value)
            raise tool_error_from_mcp(self.name, e) from e
        if outcome.is_error:
            return ToolResult(success=False, error=outcome.content or "Remote tool reported an error", error_kind=ToolErrorKind.IO)
        return ToolResult(success=True, content=outcome.content)


async def register_remote_tools(registry: ToolRegistry, session: ToolServerSession) -> list[str]:
    """Discover a session's tools and register those that do not clash."""
    registered: list[str] = []
    for descriptor in await session.list_tools():
        if registry.register(RemoteTool(session, descriptor)) is not None:
            registered.append(descriptor.name)
    return registered
