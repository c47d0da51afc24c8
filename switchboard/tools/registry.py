"""Tool registry and base tool class."""

import asyncio
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, model_validator

from switchboard.conversation.models import ToolCallRequest, ToolCallResult
from switchboard.exceptions import (
    InvalidArgumentsError,
    PermissionDeniedError,
    ToolError,
    ToolErrorKind,
    ToolIOError,
    ToolNotFoundError,
    ToolTimeoutError,
    TurnCancelledError,
)
from switchboard.llm import ToolDefinition
from switchboard.logging import get_logger
from switchboard.tools.security import SecurityContext

log = get_logger(__name__)

MAX_SEARCH_QUERY_CHARS = 500

ConfirmCallback = Callable[[str, str, float], Awaitable[bool] | bool]

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


class ToolKind(str, Enum):
    """Closed set of tool variants the registry knows how to authorize."""

    READ_FILE = "read_file"
    WRITE_FILE = "write_file"
    LIST_DIRECTORY = "list_directory"
    SEARCH_WEB = "search_web"
    EXECUTE_COMMAND = "execute_command"
    REMOTE = "remote"


@dataclass(frozen=True)
class ToolDescriptor:
    """What the model is told about a tool, plus where it runs."""

    name: str
    description: str
    parameters: dict[str, Any]
    kind: ToolKind
    server_id: str | None = None

    @property
    def source(self) -> str:
        return f"remote:{self.server_id}" if self.kind == ToolKind.REMOTE else "local"

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(name=self.name, description=self.description, parameters=dict(self.parameters))


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None
    error_kind: ToolErrorKind | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message and kind."""
        if not self.success:
            if not (self.error or "").strip():
                fallback = (self.content or "").strip()
                self.error = fallback or "Tool execution failed"
            if self.error_kind is None:
                self.error_kind = ToolErrorKind.IO
        return self

    @classmethod
    def failure(cls, error: ToolError) -> "ToolResult":
        return cls(success=False, error=error.reason, error_kind=error.kind)

    def to_message_content(self) -> str:
        if self.success:
            return self.content
        return f"Error ({self.error_kind.value}): {self.error}"


def _type_matches(value: Any, expected: str) -> bool:
    allowed = _JSON_TYPES.get(expected)
    if allowed is None:
        return True
    if isinstance(value, bool) and expected != "boolean":
        return False
    return isinstance(value, allowed)


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    kind: ToolKind = ToolKind.REMOTE
    timeout_seconds: float | None = None

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments, plus `_abort_event`

        Returns:
            ToolResult with the tool output

        Raises:
            ToolError subclasses on failure
        """
        pass

    async def close(self) -> None:
        """Release resources held by the tool."""
        return None

    @property
    def server_id(self) -> str | None:
        return None

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            parameters=dict(self.parameters),
            kind=self.kind,
            server_id=self.server_id,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate arguments against the schema's `required` and primitive `type`s.

        Raises:
            InvalidArgumentsError if invalid
        """
        if not isinstance(arguments, dict):
            raise InvalidArgumentsError(self.name, "Arguments must be an object")
        for field_name in self.parameters.get("required", []):
            if field_name not in arguments or arguments[field_name] is None:
                raise InvalidArgumentsError(self.name, f"Missing required argument: {field_name}")
        properties = self.parameters.get("properties", {}) or {}
        for field_name, value in arguments.items():
            field_schema = properties.get(field_name)
            if not isinstance(field_schema, dict) or value is None:
                continue
            expected = field_schema.get("type")
            if isinstance(expected, str) and not _type_matches(value, expected):
                raise InvalidArgumentsError(
                    self.name,
                    f"Argument '{field_name}' must be of type {expected}",
                )


class ToolRegistry:
    """Registry for the tools of one orchestration run.

    Local tools are authorized against the SecurityContext before they run;
    remote tools are forwarded verbatim to their server.
    """

    def __init__(
        self,
        security: SecurityContext,
        call_timeout: float = 60.0,
        confirm: ConfirmCallback | None = None,
    ):
        self.security = security
        self.call_timeout = call_timeout
        self._confirm = confirm
        self._tools: dict[str, Tool] = {}

    def set_confirm_callback(self, callback: ConfirmCallback | None) -> None:
        """Set the yes/no collaborator used when commands need confirmation."""
        self._confirm = callback

    def register(self, tool: Tool) -> ToolDescriptor | None:
        """Register a tool.

        A remote tool whose name clashes with a registered tool is skipped.

        Returns:
            The registered descriptor, or None when skipped
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        existing = self._tools.get(tool.name)
        if existing is not None and tool.kind == ToolKind.REMOTE:
            log.warning(
                "Remote tool name clashes with a registered tool; keeping the existing one",
                tool=tool.name,
                server=tool.server_id,
                existing=existing.descriptor().source,
            )
            return None

        log.debug("Registering tool", tool=tool.name, kind=tool.kind.value)
        self._tools[tool.name] = tool
        return tool.descriptor()

    async def close(self) -> None:
        """Close every registered tool; a failing close does not stop the rest."""
        for tool in self._tools.values():
            try:
                await tool.close()
            except Exception as e:
                log.warning("Failed to close tool", tool=tool.name, error=str(e))

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def schema_for_model(self) -> list[ToolDescriptor]:
        """Descriptors of every registered tool, in registration order."""
        return [tool.descriptor() for tool in self._tools.values()]

    def get_definitions(self) -> list[ToolDefinition]:
        return [descriptor.to_definition() for descriptor in self.schema_for_model()]

    async def _ask_confirmation(self, command: str, working_dir: str) -> bool:
        if self._confirm is None:
            return False
        answer = self._confirm(command, working_dir, self.security.command_timeout)
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)

    async def _authorize(self, tool: Tool, arguments: dict[str, Any]) -> None:
        """Apply the security checks for the tool's kind before its body runs."""
        kind = tool.kind
        security = self.security
        if kind == ToolKind.READ_FILE:
            path = security.check_path(tool.name, arguments["filepath"])
            if path.is_file():
                security.check_size(tool.name, path.stat().st_size, label="File")
        elif kind == ToolKind.WRITE_FILE:
            security.check_path(tool.name, arguments["filepath"])
            security.check_size(tool.name, len(str(arguments.get("content", "")).encode("utf-8")), label="Content")
        elif kind == ToolKind.LIST_DIRECTORY:
            security.check_path(tool.name, arguments.get("path") or ".")
        elif kind == ToolKind.SEARCH_WEB:
            query = str(arguments.get("query", "")).strip()
            if not query:
                raise InvalidArgumentsError(tool.name, "Query is empty")
            if len(query) > MAX_SEARCH_QUERY_CHARS:
                raise InvalidArgumentsError(
                    tool.name,
                    f"Query too long ({len(query)} characters, max {MAX_SEARCH_QUERY_CHARS})",
                )
        elif kind == ToolKind.EXECUTE_COMMAND:
            command = str(arguments.get("command", ""))
            security.check_command(tool.name, command)
            working_dir = security.check_path(tool.name, arguments.get("working_directory") or security.base_dir)
            if security.confirm_commands:
                if not await self._ask_confirmation(command, str(working_dir)):
                    log.info("Command declined", tool=tool.name)
                    raise PermissionDeniedError(tool.name, "Command execution declined by user")
        elif kind == ToolKind.REMOTE:
            pass
        else:
            raise PermissionDeniedError(tool.name, f"Unsupported tool kind: {kind}")

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror external abort event to local tool abort event."""
        await source.wait()
        target.set()

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        Tool failures come back as `ToolResult(success=False)`; only an abort
        (TurnCancelledError) or task cancellation propagates.
        """
        try:
            tool = self.get(name)
            tool.validate_arguments(arguments)
            await self._authorize(tool, arguments)
        except ToolError as e:
            log.warning("Tool rejected", tool=name, kind=e.kind.value, reason=e.reason)
            return ToolResult.failure(e)

        if abort_event is not None and abort_event.is_set():
            raise TurnCancelledError(f"Tool '{name}' aborted before start")

        timeout_seconds = float(tool.timeout_seconds or self.call_timeout)
        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        try:
            log.info("Executing tool", tool=name, kind=tool.kind.value)
            if abort_event is not None:
                bridge_task = asyncio.create_task(self._bridge_abort_event(abort_event, tool_abort_event))

            execute_task = asyncio.create_task(tool.execute(**arguments, _abort_event=tool_abort_event))
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                try:
                    result = execute_task.result()
                except ToolError as e:
                    log.warning("Tool failed", tool=name, kind=e.kind.value, reason=e.reason)
                    return ToolResult.failure(e)
                if not isinstance(result, ToolResult):
                    return ToolResult.failure(ToolIOError(name, "Tool returned invalid result payload"))
                log.info("Tool executed", tool=name, success=result.success)
                return result

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise TurnCancelledError(f"Tool '{name}' aborted")

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            log.warning("Tool timed out", tool=name, timeout=timeout_seconds)
            return ToolResult.failure(ToolTimeoutError(name, f"Execution timed out after {timeout_label}s"))
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except TurnCancelledError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            return ToolResult.failure(ToolIOError(name, str(e)))
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)

    async def execute_call(
        self,
        request: ToolCallRequest,
        abort_event: asyncio.Event | None = None,
    ) -> ToolCallResult:
        """Run one requested call and wrap the outcome as a history message."""
        result = await self.execute(request.tool_name, dict(request.arguments), abort_event=abort_event)
        return ToolCallResult(
            call_id=request.call_id,
            tool_name=request.tool_name,
            content=result.to_message_content(),
            is_error=not result.success,
        )

    async def execute_all(
        self,
        requests: list[ToolCallRequest],
        abort_event: asyncio.Event | None = None,
    ) -> list[ToolCallResult]:
        """Run calls concurrently; results come back in request order."""
        outcomes = await asyncio.gather(
            *(self.execute_call(request, abort_event=abort_event) for request in requests),
            return_exceptions=True,
        )
        results: list[ToolCallResult] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
            results.append(outcome)
        return results
