"""Turn orchestration: credential fallback, the bounded tool loop and persistence."""

import asyncio
import os
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

import structlog

from switchboard.config import Config, get_config
from switchboard.conversation.models import (
    Conversation,
    Message,
    ModelText,
    ToolCallRequest,
    ToolCallResult,
    UserText,
)
from switchboard.conversation.store import ConversationStore
from switchboard.conversation.window import truncate_for_budget
from switchboard.credentials import CredentialHandle, CredentialPool, read_api_keys_from_env
from switchboard.exceptions import (
    AllCredentialsExhaustedError,
    AuthFailedError,
    ConfigurationError,
    IterationLimitExceededError,
    McpError,
    ProviderError,
    RateLimitedError,
    SwitchboardError,
    TransientProviderError,
    TurnCancelledError,
)
from switchboard.llm import ChatRequest, FinalText, LLMProvider, ProviderReply, create_provider
from switchboard.logging import get_logger
from switchboard.tool_server import ToolServerAddress, ToolServerClient, ToolServerSession, parse_address
from switchboard.tools.list_directory import ListDirectoryTool
from switchboard.tools.read import ReadFileTool
from switchboard.tools.registry import ConfirmCallback, ToolRegistry
from switchboard.tools.remote import register_remote_tools
from switchboard.tools.security import SecurityContext
from switchboard.tools.shell import ExecuteCommandTool
from switchboard.tools.web_search import WebSearchTool
from switchboard.tools.write import WriteFileTool

log = get_logger(__name__)

T = TypeVar("T")

CONTEXT_LIMIT_ENV = "CONTEXT_WINDOW_LIMIT"
OLLAMA_BASE_URL_ENV = "OLLAMA_BASE_URL"


@dataclass(frozen=True)
class RuntimeConfig:
    """Plain-value snapshot of everything one run needs.

    Built once at startup; the environment is not consulted again.
    """

    config: Config
    model: str
    context_budget: int
    credentials: tuple[str, ...]
    security: SecurityContext
    tools_enabled: bool = True
    disabled_tools: tuple[str, ...] = ()
    call_timeout: float = 60.0
    tool_servers: tuple[tuple[str, ToolServerAddress], ...] = ()
    tool_server_timeout: float = 30.0
    tool_server_connect_timeout: float = 5.0
    max_iterations: int = 10
    transient_retries: int = 2
    transient_backoff: float = 0.5
    conversations_path: Path = field(default_factory=lambda: Path("~/.switchboard/conversations").expanduser())
    save_markdown: bool = True

    @classmethod
    def from_config(
        cls,
        config: Config | None = None,
        environ: Mapping[str, str] | None = None,
        base_dir: Path | str | None = None,
    ) -> "RuntimeConfig":
        """Validate configuration and capture credentials from the environment.

        Raises:
            ConfigurationError for a non-positive budget or iteration bound,
            or a malformed tool server address
        """
        env = os.environ if environ is None else environ
        cfg = (config or get_config()).model_copy(deep=True)

        budget = cfg.context.budget
        raw_limit = str(env.get(CONTEXT_LIMIT_ENV, "") or "").strip()
        if raw_limit:
            try:
                budget = int(raw_limit)
            except ValueError as e:
                raise ConfigurationError(f"{CONTEXT_LIMIT_ENV} must be an integer, got {raw_limit!r}") from e
        if budget <= 0:
            raise ConfigurationError(f"Context window budget must be positive, got {budget}")

        if cfg.loop.max_iterations < 1:
            raise ConfigurationError("loop.max_iterations must be at least 1")

        ollama_url = str(env.get(OLLAMA_BASE_URL_ENV, "") or "").strip()
        if ollama_url:
            cfg.model.ollama_base_url = ollama_url

        credentials = read_api_keys_from_env(env)
        for key in cfg.model.api_keys:
            if key and key not in credentials:
                credentials.append(key)

        servers = tuple((server.name, parse_address(server.address)) for server in cfg.tool_servers)

        return cls(
            config=cfg,
            model=cfg.model.default,
            context_budget=budget,
            credentials=tuple(credentials),
            security=SecurityContext.from_config(cfg, base_dir=base_dir),
            tools_enabled=cfg.tools.enabled,
            disabled_tools=tuple(cfg.tools.disabled),
            call_timeout=cfg.tools.call_timeout,
            tool_servers=servers,
            tool_server_timeout=cfg.tool_server_timeout,
            tool_server_connect_timeout=cfg.tool_server_connect_timeout,
            max_iterations=cfg.loop.max_iterations,
            transient_retries=cfg.loop.transient_retries,
            transient_backoff=cfg.loop.transient_backoff,
            conversations_path=Path(cfg.conversations.path).expanduser(),
            save_markdown=cfg.conversations.save_markdown,
        )


class TurnStatus(str, Enum):
    DONE = "done"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


class LoopState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING = "executing"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class TurnOutcome:
    """What the caller reports (or resumes from) after one turn."""

    status: TurnStatus
    text: str = ""
    abort_reason: str | None = None
    error: SwitchboardError | None = None
    conversation_id: str | None = None
    iterations: int = 0
    usage: dict[str, int] = field(default_factory=dict)
    tool_calls: int = 0
    all_tools_failed: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == TurnStatus.DONE


def _abort_label(error: SwitchboardError) -> str:
    if isinstance(error, IterationLimitExceededError):
        return "Tool loop limit reached"
    if isinstance(error, AllCredentialsExhaustedError):
        return "All API keys are rate limited"
    if isinstance(error, AuthFailedError):
        return "Authentication failed"
    if isinstance(error, TransientProviderError):
        return "Provider unavailable"
    return "Provider error"


def _add_usage(total: dict[str, int], usage: dict[str, int]) -> None:
    for key, value in (usage or {}).items():
        total[key] = total.get(key, 0) + int(value or 0)


class Orchestrator:
    """Drives one turn: AwaitingModel -> (FinalAnswer | ToolsRequested) -> Executing -> ... -> Done | Aborted."""

    def __init__(
        self,
        runtime: RuntimeConfig,
        provider: LLMProvider,
        store: ConversationStore,
        registry: ToolRegistry | None = None,
        credentials: CredentialPool | None = None,
        abort_event: asyncio.Event | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if provider.requires_credentials and credentials is None:
            raise ConfigurationError(f"Provider '{provider.name}' requires API keys but none were supplied")
        self.runtime = runtime
        self.provider = provider
        self.store = store
        self.registry = registry
        self.credentials = credentials
        self.abort_event = abort_event
        self._sleep = sleep
        self._credential_index: int | None = None
        self._usage: dict[str, int] = {}

    def _check_abort(self) -> None:
        if self.abort_event is not None and self.abort_event.is_set():
            raise TurnCancelledError("Turn aborted")

    async def _guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless the abort event fires first."""
        if self.abort_event is None:
            return await awaitable
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.abort_event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if work in done:
                return work.result()
            raise TurnCancelledError("Turn aborted")
        finally:
            for task in (work, waiter):
                if not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass
                    except Exception as e:
                        log.debug("Abandoned task raised", error=str(e))

    async def _open_conversation(self, user_input: str, conversation_ref: str | None) -> Conversation:
        if conversation_ref is None:
            return Conversation.new(user_input, model=self.runtime.model)
        if not conversation_ref.strip():
            latest = await self.store.load("")
            return latest or Conversation.new(user_input, model=self.runtime.model)
        return await self.store.resolve(conversation_ref)

    def _rotate(self, current: CredentialHandle | None, attempts: int, cause: ProviderError) -> CredentialHandle:
        """Next credential after a rate limit, or AllCredentialsExhaustedError."""
        pool = self.credentials
        following = pool.next(current) if pool is not None and current is not None else None
        if following is None:
            log.error("All credentials exhausted", attempts=attempts, pool_size=len(pool) if pool else 0)
            raise AllCredentialsExhaustedError(attempts, len(pool) if pool else 0) from cause
        log.info("Rotating credential", key=f"{following.index + 1}/{len(pool)}")
        return following

    async def send_with_fallback(self, request: ChatRequest, preferred_index: int | None = None) -> ProviderReply:
        """One model step with credential rotation and bounded transient retries.

        RateLimited rotates to the next key; Transient retries the same key
        `transient_retries` times (linear backoff) and then rotates; AuthFailed
        and Fatal propagate immediately.
        """
        current: CredentialHandle | None = None
        if self.provider.requires_credentials and self.credentials is not None:
            current = self.credentials.start(preferred_index)

        attempts = 0
        transient_failures = 0
        while True:
            self._check_abort()
            attempts += 1
            key_label = f"{current.index + 1}/{len(self.credentials)}" if current is not None else "-"
            try:
                reply = await self._guard(self.provider.send(request, current))
            except RateLimitedError as e:
                log.warning("Provider rate limited", key=key_label, status=e.status_code)
                if current is None:
                    raise AllCredentialsExhaustedError(attempts, 0) from e
                current = self._rotate(current, attempts, e)
                transient_failures = 0
                continue
            except TransientProviderError as e:
                transient_failures += 1
                if transient_failures <= self.runtime.transient_retries:
                    delay = self.runtime.transient_backoff * transient_failures
                    log.warning(
                        "Transient provider error; retrying",
                        key=key_label,
                        attempt=transient_failures,
                        delay=delay,
                        error=str(e),
                    )
                    await self._guard(self._sleep(delay))
                    continue
                if current is None:
                    raise
                log.warning("Transient retries exhausted; rotating credential", key=key_label)
                current = self._rotate(current, attempts, e)
                transient_failures = 0
                continue

            if current is not None:
                self._credential_index = current.index
            _add_usage(self._usage, reply.usage)
            return reply

    async def _execute_tools(self, requests: list[ToolCallRequest]) -> list[ToolCallResult]:
        if self.registry is None:
            return [
                ToolCallResult(
                    call_id=request.call_id,
                    tool_name=request.tool_name,
                    content=f"Error (not_found): Tool '{request.tool_name}' is not available",
                    is_error=True,
                )
                for request in requests
            ]
        return await self.registry.execute_all(requests, abort_event=self.abort_event)

    async def _persist(self, conversation: Conversation, turn: list[Message]) -> None:
        conversation.model = self.runtime.model
        if self._credential_index is not None:
            conversation.credential_index = self._credential_index
        if self._usage:
            conversation.usage = [*conversation.usage, dict(self._usage)]
        await self.store.append(conversation, turn)

    async def run(self, user_input: str, conversation_ref: str | None = None) -> TurnOutcome:
        """Run one user turn to completion, abort or cancellation."""
        conversation = await self._open_conversation(user_input, conversation_ref)
        outcome = TurnOutcome(status=TurnStatus.DONE, conversation_id=conversation.id)
        if self.credentials is not None:
            outcome.warnings.extend(self.credentials.warnings)

        with structlog.contextvars.bound_contextvars(conversation_id=conversation.id):
            turn: list[Message] = [UserText(text=user_input)]
            tool_definitions = self.registry.get_definitions() if self.registry is not None else []
            state = LoopState.AWAITING_MODEL
            reply: ProviderReply | None = None
            failure: SwitchboardError | None = None

            try:
                while state not in (LoopState.DONE, LoopState.ABORTED):
                    self._check_abort()
                    if state == LoopState.AWAITING_MODEL:
                        if outcome.iterations >= self.runtime.max_iterations:
                            raise IterationLimitExceededError(outcome.iterations)
                        outcome.iterations += 1
                        window = truncate_for_budget([*conversation.messages, *turn], self.runtime.context_budget)
                        request = ChatRequest(
                            model=self.provider.model,
                            messages=window,
                            tools=tool_definitions,
                            temperature=self.runtime.config.model.temperature,
                            max_tokens=self.runtime.config.model.max_tokens,
                        )
                        log.info(
                            "Awaiting model",
                            iteration=outcome.iterations,
                            window_messages=len(window),
                            tools=len(tool_definitions),
                        )
                        preferred = self._credential_index if self._credential_index is not None else conversation.credential_index
                        reply = await self.send_with_fallback(request, preferred_index=preferred)
                        if isinstance(reply, FinalText):
                            turn.append(ModelText(text=reply.text))
                            outcome.text = reply.text
                            state = LoopState.DONE
                        else:
                            state = LoopState.EXECUTING

                    elif state == LoopState.EXECUTING:
                        if reply.text.strip():
                            turn.append(ModelText(text=reply.text))
                        requests = [call.to_request() for call in reply.calls]
                        log.info("Executing tool calls", count=len(requests), tools=[r.tool_name for r in requests])
                        results = await self._execute_tools(requests)
                        for request, result in zip(requests, results):
                            turn.extend((request, result))
                        outcome.tool_calls += len(results)
                        if results and all(result.is_error for result in results):
                            outcome.all_tools_failed = True
                            log.warning("Every tool call in this round failed", count=len(results))
                        state = LoopState.AWAITING_MODEL

            except (IterationLimitExceededError, AllCredentialsExhaustedError, ProviderError) as e:
                failure = e
                state = LoopState.ABORTED
            except TurnCancelledError as e:
                log.warning("Turn cancelled; nothing persisted", reason=str(e))
                outcome.status = TurnStatus.CANCELLED
                outcome.abort_reason = str(e)
                outcome.error = e
                outcome.usage = dict(self._usage)
                return outcome
            except asyncio.CancelledError:
                log.warning("Turn task cancelled; nothing persisted")
                raise

            await self._persist(conversation, turn)
            outcome.conversation_id = conversation.id
            outcome.usage = dict(self._usage)

            if failure is not None:
                outcome.status = TurnStatus.ABORTED
                outcome.error = failure
                outcome.abort_reason = f"{_abort_label(failure)}: {failure}"
                log.warning("Turn aborted", reason=outcome.abort_reason, iterations=outcome.iterations)
            else:
                log.info("Turn complete", iterations=outcome.iterations, tool_calls=outcome.tool_calls)
            return outcome


def build_registry(
    runtime: RuntimeConfig,
    confirm: ConfirmCallback | None = None,
    environ: Mapping[str, str] | None = None,
) -> ToolRegistry:
    """Registry with the enabled local tools."""
    security = runtime.security
    if confirm is None and security.confirm_commands:
        from switchboard.console import confirm_command

        confirm = confirm_command

    registry = ToolRegistry(security, call_timeout=runtime.call_timeout, confirm=confirm)
    disabled = {name.strip().lower() for name in runtime.disabled_tools}
    local_tools = [
        ReadFileTool(security),
        WriteFileTool(security),
        ListDirectoryTool(security),
        WebSearchTool(runtime.config.tools.web_search),
    ]
    if security.allow_command_execution:
        local_tools.append(ExecuteCommandTool(security, environ=dict(environ) if environ is not None else None))
    for tool in local_tools:
        if tool.name.lower() in disabled:
            log.debug("Local tool disabled by config", tool=tool.name)
            continue
        registry.register(tool)
    return registry


async def connect_tool_servers(
    runtime: RuntimeConfig,
    registry: ToolRegistry,
    client: ToolServerClient | None = None,
) -> tuple[list[ToolServerSession], list[str]]:
    """Connect every configured tool server concurrently and register its tools.

    Failures never abort the run: they come back as warnings.
    """
    if not runtime.tool_servers:
        return [], []
    tool_client = client or ToolServerClient(
        connect_timeout=runtime.tool_server_connect_timeout,
        call_timeout=runtime.tool_server_timeout,
    )

    async def _open(name: str, address: ToolServerAddress) -> ToolServerSession:
        session = await tool_client.connect(address, server_id=name)
        try:
            await register_remote_tools(registry, session)
        except McpError:
            await session.close()
            raise
        return session

    outcomes = await asyncio.gather(
        *(_open(name, address) for name, address in runtime.tool_servers),
        return_exceptions=True,
    )
    sessions: list[ToolServerSession] = []
    warnings: list[str] = []
    for (name, address), outcome in zip(runtime.tool_servers, outcomes):
        if isinstance(outcome, McpError):
            message = f"Tool server '{name}' unavailable ({address}): {outcome}; continuing with local tools"
            log.warning("Tool server unavailable", server=name, address=str(address), error=str(outcome))
            warnings.append(message)
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            sessions.append(outcome)
    return sessions, warnings


async def run_turn(
    user_input: str,
    conversation_ref: str | None,
    runtime_config: RuntimeConfig,
    *,
    provider: LLMProvider | None = None,
    store: ConversationStore | None = None,
    registry: ToolRegistry | None = None,
    tool_servers: ToolServerClient | None = None,
    abort_event: asyncio.Event | None = None,
    credentials: CredentialPool | None = None,
) -> TurnOutcome:
    """Run one turn end to end.

    Args:
        user_input: The user's prompt
        conversation_ref: None for a new conversation, "" for the latest,
            otherwise an index, id or short hash
        runtime_config: Startup snapshot from RuntimeConfig.from_config
        provider, store, registry, tool_servers, credentials: Optional
            collaborators (built from runtime_config when omitted)
        abort_event: Set to cancel the turn; nothing from it is persisted

    Returns:
        TurnOutcome with the final text or the abort reason
    """
    runtime = runtime_config
    owns_provider = provider is None
    llm = provider or create_provider(runtime.model, runtime.config)
    sessions: list[ToolServerSession] = []
    owned_registry: ToolRegistry | None = None
    try:
        if credentials is None and llm.requires_credentials:
            credentials = CredentialPool(list(runtime.credentials))

        conversation_store = store or ConversationStore(runtime.conversations_path, save_markdown=runtime.save_markdown)

        tool_registry = registry
        warnings: list[str] = []
        if runtime.tools_enabled:
            if tool_registry is None:
                tool_registry = owned_registry = build_registry(runtime)
            sessions, warnings = await connect_tool_servers(runtime, tool_registry, tool_servers)
        else:
            tool_registry = None

        orchestrator = Orchestrator(
            runtime,
            llm,
            conversation_store,
            registry=tool_registry,
            credentials=credentials,
            abort_event=abort_event,
        )
        outcome = await orchestrator.run(user_input, conversation_ref)
        outcome.warnings.extend(warnings)
        return outcome
    finally:
        for session in sessions:
            await session.close()
        if owned_registry is not None:
            await owned_registry.close()
        if owns_provider:
            await llm.close()
