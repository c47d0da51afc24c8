"""Custom exceptions for Switchboard."""

from enum import Enum


class SwitchboardError(Exception):
    """Base exception for Switchboard."""

    pass


class ConfigurationError(SwitchboardError):
    """Configuration-related errors."""

    pass


class ProviderErrorKind(str, Enum):
    """Classification of a failed provider attempt."""

    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"
    TRANSIENT = "transient"
    FATAL = "fatal"


class ProviderError(SwitchboardError):
    """A single provider attempt failed."""

    kind: ProviderErrorKind = ProviderErrorKind.FATAL

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(ProviderError):
    """Provider rejected the credential with a rate limit (HTTP 429)."""

    kind = ProviderErrorKind.RATE_LIMITED


class AuthFailedError(ProviderError):
    """Provider rejected the credential (HTTP 401/403)."""

    kind = ProviderErrorKind.AUTH_FAILED


class TransientProviderError(ProviderError):
    """Network failure or 5xx; worth retrying."""

    kind = ProviderErrorKind.TRANSIENT


class FatalProviderError(ProviderError):
    """Malformed request, unsupported model or unusable reply."""

    kind = ProviderErrorKind.FATAL


class AllCredentialsExhaustedError(SwitchboardError):
    """Every credential in the pool was rate limited."""

    def __init__(self, attempts: int, pool_size: int):
        super().__init__(
            f"All {pool_size} API key(s) exhausted after {attempts} attempt(s)"
        )
        self.attempts = attempts
        self.pool_size = pool_size


class ToolErrorKind(str, Enum):
    """Classification of a failed tool execution."""

    NOT_FOUND = "not_found"
    INVALID_ARGUMENTS = "invalid_arguments"
    PERMISSION_DENIED = "permission_denied"
    TIMEOUT = "timeout"
    IO = "io"


class ToolError(SwitchboardError):
    """Tool execution errors."""

    kind: ToolErrorKind = ToolErrorKind.IO

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name
        self.reason = message


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    kind = ToolErrorKind.NOT_FOUND

    def __init__(self, tool_name: str):
        super().__init__(tool_name, "unknown tool")


class InvalidArgumentsError(ToolError):
    """Tool arguments do not match the tool schema."""

    kind = ToolErrorKind.INVALID_ARGUMENTS


class PermissionDeniedError(ToolError):
    """Tool execution blocked by the security context."""

    kind = ToolErrorKind.PERMISSION_DENIED


class ToolTimeoutError(ToolError):
    """Tool exceeded its wall-clock budget."""

    kind = ToolErrorKind.TIMEOUT


class ToolIOError(ToolError):
    """Filesystem, process or network failure inside a tool."""

    kind = ToolErrorKind.IO


class McpErrorKind(str, Enum):
    """Classification of tool server failures."""

    CONNECT_FAILED = "connect_failed"
    TOOL_NOT_FOUND = "tool_not_found"
    INVALID_PARAMS = "invalid_params"
    TIMEOUT = "timeout"
    PROTOCOL_ERROR = "protocol_error"
    DISCONNECTED = "disconnected"


class McpError(SwitchboardError):
    """Tool server errors."""

    kind: McpErrorKind = McpErrorKind.PROTOCOL_ERROR


class McpConnectError(McpError):
    kind = McpErrorKind.CONNECT_FAILED


class McpToolNotFoundError(McpError):
    kind = McpErrorKind.TOOL_NOT_FOUND


class McpInvalidParamsError(McpError):
    kind = McpErrorKind.INVALID_PARAMS


class McpTimeoutError(McpError):
    kind = McpErrorKind.TIMEOUT


class McpProtocolError(McpError):
    kind = McpErrorKind.PROTOCOL_ERROR


class McpDisconnectedError(McpError):
    kind = McpErrorKind.DISCONNECTED


class StoreError(SwitchboardError):
    """Conversation persistence errors."""

    pass


class ConversationNotFoundError(StoreError):
    """Conversation not found."""

    def __init__(self, identifier: str):
        super().__init__(f"Conversation not found: {identifier}")
        self.identifier = identifier


class AmbiguousIdentifierError(StoreError):
    """A short identifier matched more than one conversation."""

    def __init__(self, identifier: str, matches: list[str]):
        super().__init__(
            f"Identifier '{identifier}' is ambiguous: matches {', '.join(sorted(matches))}"
        )
        self.identifier = identifier
        self.matches = list(matches)


class IterationLimitExceededError(SwitchboardError):
    """The tool loop re-entered the model too many times."""

    def __init__(self, iterations: int):
        super().__init__(f"Tool loop exceeded maximum iterations ({iterations})")
        self.iterations = iterations


class TurnCancelledError(SwitchboardError):
    """The turn was interrupted before it completed."""

    pass
