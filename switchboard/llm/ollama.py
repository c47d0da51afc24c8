"""Ollama provider - direct HTTP calls to Ollama API."""

import json
import uuid
from typing import Any

import httpx

from switchboard.conversation.models import Message, ModelText, UserMedia, UserText
from switchboard.credentials import CredentialHandle
from switchboard.exceptions import FatalProviderError
from switchboard.llm import (
    ChatRequest,
    FinalText,
    LLMProvider,
    ProviderReply,
    ToolCall,
    ToolCallsRequested,
    ToolDefinition,
    ToolExchange,
    group_tool_exchanges,
)
from switchboard.logging import get_logger

log = get_logger(__name__)

OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    name = "ollama"
    requires_credentials = False

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            client: Optional HTTP client
            timeout: Request timeout in seconds
        """
        super().__init__(model=model, client=client, timeout=timeout)
        self.base_url = base_url.rstrip("/")

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result: list[dict[str, Any]] = []
        for item in group_tool_exchanges(messages):
            if isinstance(item, ToolExchange):
                result.append({
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [
                        {"function": {"name": req.tool_name, "arguments": req.arguments}}
                        for req in item.requests
                    ],
                })
                for res in item.results:
                    entry: dict[str, Any] = {"role": "tool", "content": res.content or ""}
                    if res.tool_name:
                        entry["tool_name"] = res.tool_name
                    result.append(entry)
            elif isinstance(item, UserText):
                result.append({"role": "user", "content": item.text})
            elif isinstance(item, UserMedia):
                entry = {"role": "user", "content": item.caption or ""}
                images = [part.data for part in item.parts if part.mime_type.startswith("image/")]
                if images:
                    entry["images"] = images
                result.append(entry)
            elif isinstance(item, ModelText):
                result.append({"role": "assistant", "content": item.text})
        return result

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to Ollama format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
            if tool.name
        ]

    @staticmethod
    def _parse_arguments(name: str, raw: Any) -> dict[str, Any]:
        if raw is None or raw == "":
            return {}
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise FatalProviderError(f"Ollama returned invalid arguments for {name}: {e}") from e
        if not isinstance(raw, dict):
            raise FatalProviderError(f"Ollama returned non-object arguments for {name}")
        return raw

    def _parse_reply(self, data: dict[str, Any]) -> ProviderReply:
        message = data.get("message") or {}
        content = str(message.get("content") or "")

        tool_calls: list[ToolCall] = []
        for tc in message.get("tool_calls") or []:
            function = (tc or {}).get("function") or {}
            name = str(function.get("name", "")).strip()
            if not name:
                raise FatalProviderError("Ollama returned a tool call without a name")
            # Ollama usually omits call ids.
            call_id = str(tc.get("id") or f"ollama_call_{uuid.uuid4().hex[:12]}")
            tool_calls.append(ToolCall(id=call_id, name=name, arguments=self._parse_arguments(name, function.get("arguments"))))

        prompt_tokens = int(data.get("prompt_eval_count", 0) or 0)
        completion_tokens = int(data.get("eval_count", 0) or 0)
        usage = {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        }

        if tool_calls:
            return ToolCallsRequested(calls=tool_calls, text=content, usage=usage)
        if not content.strip():
            raise FatalProviderError("Ollama returned an empty response")
        return FinalText(text=content, usage=usage)

    async def send(self, request: ChatRequest, credential: CredentialHandle | None = None) -> ProviderReply:
        """Generate a completion (non-streaming)."""
        url = f"{self.base_url}/api/chat"

        options: dict[str, Any] = {"num_ctx": 65536}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.max_tokens:
            options["num_predict"] = request.max_tokens

        body: dict[str, Any] = {
            "model": request.model or self.model,
            "messages": self._convert_messages(request.messages),
            "stream": False,
            "options": options,
        }
        ollama_tools = self._convert_tools(request.tools)
        if ollama_tools:
            body["tools"] = ollama_tools

        headers = {"Content-Type": "application/json"}
        if credential is not None:
            headers["Authorization"] = f"Bearer {credential.secret}"

        log.debug("Calling Ollama", model=body["model"], url=url, msg_count=len(body["messages"]))
        data = await self._post_json(url, body, headers)
        return self._parse_reply(data)
