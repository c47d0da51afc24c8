"""Gemini provider - direct REST calls to the generateContent endpoint."""

import uuid
from typing import Any

import httpx

from switchboard.conversation.models import Message, ModelText, UserMedia, UserText
from switchboard.credentials import CredentialHandle
from switchboard.exceptions import ConfigurationError, FatalProviderError
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

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"

# JSON Schema keywords the functionDeclarations schema rejects.
_UNSUPPORTED_SCHEMA_KEYS = frozenset({"$schema", "additionalProperties", "default", "examples", "title"})


def _sanitize_schema(schema: Any) -> Any:
    if isinstance(schema, dict):
        return {
            key: _sanitize_schema(value)
            for key, value in schema.items()
            if key not in _UNSUPPORTED_SCHEMA_KEYS
        }
    if isinstance(schema, list):
        return [_sanitize_schema(item) for item in schema]
    return schema


class GeminiProvider(LLMProvider):
    """Google Gemini REST provider."""

    name = "gemini"
    requires_credentials = True

    def __init__(
        self,
        model: str = "gemini-2.5-flash",
        base_url: str = GEMINI_BASE_URL,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ):
        super().__init__(model=model, client=client, timeout=timeout)
        self.base_url = base_url.rstrip("/")

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert history to Gemini `contents`, merging same-role neighbours."""
        contents: list[dict[str, Any]] = []

        def add(role: str, parts: list[dict[str, Any]]) -> None:
            if not parts:
                return
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].extend(parts)
            else:
                contents.append({"role": role, "parts": parts})

        for item in group_tool_exchanges(messages):
            if isinstance(item, ToolExchange):
                add("model", [
                    {"functionCall": {"name": req.tool_name, "args": req.arguments}}
                    for req in item.requests
                ])
                add("user", [
                    {
                        "functionResponse": {
                            "name": res.tool_name,
                            "response": {"error": res.content} if res.is_error else {"result": res.content},
                        }
                    }
                    for res in item.results
                ])
            elif isinstance(item, UserText):
                add("user", [{"text": item.text}])
            elif isinstance(item, UserMedia):
                parts: list[dict[str, Any]] = [
                    {"inlineData": {"mimeType": part.mime_type, "data": part.data}}
                    for part in item.parts
                ]
                if item.caption:
                    parts.append({"text": item.caption})
                add("user", parts)
            elif isinstance(item, ModelText):
                add("model", [{"text": item.text}])
        return contents

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        declarations = [
            {
                "name": tool.name,
                "description": tool.description or "",
                "parameters": _sanitize_schema(tool.parameters or {"type": "object", "properties": {}}),
            }
            for tool in tools
            if tool.name
        ]
        return [{"functionDeclarations": declarations}] if declarations else []

    def _build_body(self, request: ChatRequest) -> dict[str, Any]:
        generation_config: dict[str, Any] = {}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.max_tokens:
            generation_config["maxOutputTokens"] = request.max_tokens

        body: dict[str, Any] = {"contents": self._convert_messages(request.messages)}
        if generation_config:
            body["generationConfig"] = generation_config
        tools = self._convert_tools(request.tools)
        if tools:
            body["tools"] = tools
        return body

    @staticmethod
    def _parse_usage(data: dict[str, Any]) -> dict[str, int]:
        meta = data.get("usageMetadata") or {}
        prompt = int(meta.get("promptTokenCount", 0) or 0)
        completion = int(meta.get("candidatesTokenCount", 0) or 0)
        return {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": int(meta.get("totalTokenCount", prompt + completion) or 0),
        }

    def _parse_reply(self, data: dict[str, Any]) -> ProviderReply:
        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason", "no candidates")
            raise FatalProviderError(f"Gemini returned no candidates ({reason})")

        candidate = candidates[0] or {}
        parts = (candidate.get("content") or {}).get("parts") or []
        texts: list[str] = []
        calls: list[ToolCall] = []
        for part in parts:
            if not isinstance(part, dict):
                continue
            if "functionCall" in part:
                fc = part.get("functionCall") or {}
                name = str(fc.get("name", "")).strip()
                if not name:
                    raise FatalProviderError("Gemini returned a function call without a name")
                args = fc.get("args") or {}
                if not isinstance(args, dict):
                    raise FatalProviderError(f"Gemini returned non-object arguments for {name}")
                calls.append(ToolCall(id=str(fc.get("id") or f"call_{uuid.uuid4().hex[:12]}"), name=name, arguments=args))
            elif part.get("text"):
                texts.append(str(part["text"]))

        text = "".join(texts)
        usage = self._parse_usage(data)
        if calls:
            return ToolCallsRequested(calls=calls, text=text, usage=usage)
        if not text.strip():
            finish = candidate.get("finishReason", "unknown")
            raise FatalProviderError(f"Gemini returned an empty response (finishReason={finish})")
        return FinalText(text=text, usage=usage)

    async def send(self, request: ChatRequest, credential: CredentialHandle | None) -> ProviderReply:
        """Run one generateContent call with the given credential."""
        if credential is None:
            raise ConfigurationError("Gemini requires an API key")

        model = request.model or self.model
        url = f"{self.base_url}/v1beta/models/{model}:generateContent"
        body = self._build_body(request)
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": credential.secret,
        }
        log.debug(
            "Calling Gemini",
            model=model,
            contents=len(body["contents"]),
            tools=len(request.tools),
            key=credential.index + 1,
        )
        data = await self._post_json(url, body, headers)
        return self._parse_reply(data)
