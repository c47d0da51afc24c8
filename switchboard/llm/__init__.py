"""LLM provider layer: request/reply types, provider base class and factory."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Union

import httpx

from switchboard.config import Config, get_config
from switchboard.conversation.models import Message, ToolCallRequest, ToolCallResult
from switchboard.credentials import CredentialHandle
from switchboard.exceptions import (
    AuthFailedError,
    ConfigurationError,
    FatalProviderError,
    ProviderError,
    ProviderErrorKind,
    RateLimitedError,
    TransientProviderError,
)
from switchboard.logging import get_logger

log = get_logger(__name__)

DEFAULT_PROVIDER = "gemini"
MODEL_SEPARATOR = "::"
_QUOTA_MARKERS = ("resource_exhausted", "quota")
_ERROR_BODY_MAX_CHARS = 500


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


@dataclass
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]

    def to_request(self) -> ToolCallRequest:
        return ToolCallRequest(call_id=self.id, tool_name=self.name, arguments=dict(self.arguments))


@dataclass
class ChatRequest:
    """One provider attempt: model, windowed history and available tools."""

    model: str
    messages: list[Message]
    tools: list[ToolDefinition] = field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass
class FinalText:
    """The model answered with text and no tool calls."""

    text: str
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ToolCallsRequested:
    """The model asked for tools to run before it answers."""

    calls: list[ToolCall]
    text: str = ""
    usage: dict[str, int] = field(default_factory=dict)


ProviderReply = Union[FinalText, ToolCallsRequested]


@dataclass
class ToolExchange:
    """A contiguous run of tool requests and their results, regrouped."""

    requests: list[ToolCallRequest]
    results: list[ToolCallResult]


def group_tool_exchanges(messages: list[Message]) -> list[Message | ToolExchange]:
    """Collapse each contiguous run of tool messages into one ToolExchange.

    History stores request/result pairs interleaved; provider wire formats
    want all calls of a round first, then all results. Back-to-back rounds
    with no text between them collapse into a single exchange.
    """
    grouped: list[Message | ToolExchange] = []
    for message in messages:
        if isinstance(message, (ToolCallRequest, ToolCallResult)):
            if not grouped or not isinstance(grouped[-1], ToolExchange):
                grouped.append(ToolExchange(requests=[], results=[]))
            exchange = grouped[-1]
            if isinstance(message, ToolCallRequest):
                exchange.requests.append(message)
            else:
                exchange.results.append(message)
            continue
        grouped.append(message)
    return grouped


def classify_status(status_code: int | None, body: str = "") -> ProviderErrorKind:
    """Map an HTTP status (None for network failures) to a provider error kind."""
    if status_code is None:
        return ProviderErrorKind.TRANSIENT
    lowered = str(body or "").lower()
    if status_code == 429:
        return ProviderErrorKind.RATE_LIMITED
    if 400 <= status_code < 500 and any(marker in lowered for marker in _QUOTA_MARKERS):
        return ProviderErrorKind.RATE_LIMITED
    if status_code in (401, 403):
        return ProviderErrorKind.AUTH_FAILED
    if status_code == 408 or status_code >= 500:
        return ProviderErrorKind.TRANSIENT
    return ProviderErrorKind.FATAL


_ERROR_CLASSES: dict[ProviderErrorKind, type[ProviderError]] = {
    ProviderErrorKind.RATE_LIMITED: RateLimitedError,
    ProviderErrorKind.AUTH_FAILED: AuthFailedError,
    ProviderErrorKind.TRANSIENT: TransientProviderError,
    ProviderErrorKind.FATAL: FatalProviderError,
}


def error_for_status(provider: str, status_code: int, body: str = "") -> ProviderError:
    """Build the classified ProviderError for a non-success HTTP response."""
    kind = classify_status(status_code, body)
    snippet = str(body or "").strip()[:_ERROR_BODY_MAX_CHARS]
    return _ERROR_CLASSES[kind](f"{provider} API error {status_code}: {snippet}", status_code=status_code)


def parse_model_string(model_string: str) -> tuple[str, str]:
    """Split `provider::model`; a bare model name means Gemini."""
    cleaned = str(model_string or "").strip()
    if not cleaned:
        raise ConfigurationError("Model name is empty")
    if MODEL_SEPARATOR in cleaned:
        provider, model = cleaned.split(MODEL_SEPARATOR, 1)
        provider = provider.strip().lower()
        model = model.strip()
        if not provider or not model:
            raise ConfigurationError(f"Invalid model string: {model_string!r}")
        return provider, model
    return DEFAULT_PROVIDER, cleaned


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    `send` is a single attempt; retries and credential rotation belong to the
    orchestrator.
    """

    name: str = ""
    requires_credentials: bool = True

    def __init__(self, model: str, client: httpx.AsyncClient | None = None, timeout: float = 120.0):
        self.model = model
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    @abstractmethod
    async def send(self, request: ChatRequest, credential: CredentialHandle | None) -> ProviderReply:
        pass

    async def _post_json(self, url: str, body: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        """POST a JSON body and decode the JSON reply, classifying every failure."""
        try:
            response = await self.client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise TransientProviderError(f"{self.name} network error: {e}") from e

        log.debug("Provider response status", provider=self.name, status=response.status_code)
        if not response.is_success:
            raise error_for_status(self.name, response.status_code, response.text)

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise FatalProviderError(f"{self.name} response decode error: {e}", status_code=response.status_code) from e
        if not isinstance(data, dict):
            raise FatalProviderError(f"{self.name} returned an unexpected payload", status_code=response.status_code)
        return data

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    model_string: str | None = None,
    config: Config | None = None,
    client: httpx.AsyncClient | None = None,
) -> LLMProvider:
    """Create an LLM provider from a `provider::model` string.

    Args:
        model_string: Model identifier; defaults to `model.default`
        config: Configuration to read endpoints and limits from
        client: Optional pre-built HTTP client (tests)

    Returns:
        Configured LLMProvider instance
    """
    cfg = config or get_config()
    provider, model = parse_model_string(model_string or cfg.model.default)

    if provider == "gemini":
        from switchboard.llm.gemini import GeminiProvider

        return GeminiProvider(
            model=model,
            base_url=cfg.model.gemini_base_url,
            client=client,
            timeout=cfg.model.request_timeout,
        )
    if provider == "ollama":
        from switchboard.llm.ollama import OllamaProvider

        return OllamaProvider(
            model=model,
            base_url=cfg.model.ollama_base_url,
            client=client,
            timeout=cfg.model.request_timeout,
        )
    raise ConfigurationError(f"Provider '{provider}' not supported. Use 'gemini' or 'ollama'.")
