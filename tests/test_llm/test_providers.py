import json

import httpx
import pytest

from switchboard.config import Config
from switchboard.conversation.models import (
    MediaPart,
    ModelText,
    ToolCallRequest,
    ToolCallResult,
    UserMedia,
    UserText,
)
from switchboard.credentials import CredentialHandle
from switchboard.exceptions import (
    AuthFailedError,
    ConfigurationError,
    FatalProviderError,
    ProviderErrorKind,
    RateLimitedError,
    TransientProviderError,
)
from switchboard.llm import (
    ChatRequest,
    FinalText,
    ToolCallsRequested,
    ToolDefinition,
    ToolExchange,
    classify_status,
    create_provider,
    group_tool_exchanges,
    parse_model_string,
)
from switchboard.llm.gemini import GeminiProvider
from switchboard.llm.ollama import OllamaProvider

CREDENTIAL = CredentialHandle(index=0, secret="AIza" + "k" * 35)


class _FakeResponse:
    def __init__(self, payload, status_code: int = 200, text: str | None = None):
        self._payload = payload
        self.status_code = status_code
        self.text = text if text is not None else json.dumps(payload)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _FakeClient:
    def __init__(self, response: _FakeResponse | Exception):
        self._response = response
        self.calls: list[dict] = []
        self.closed = False

    async def post(self, url: str, **kwargs):
        self.calls.append({"url": url, **kwargs})
        if isinstance(self._response, Exception):
            raise self._response
        return self._response

    async def aclose(self) -> None:
        self.closed = True


@pytest.mark.parametrize(
    ("status", "body", "expected"),
    [
        (None, "", ProviderErrorKind.TRANSIENT),
        (429, "", ProviderErrorKind.RATE_LIMITED),
        (400, '{"error": {"status": "RESOURCE_EXHAUSTED"}}', ProviderErrorKind.RATE_LIMITED),
        (403, "Quota exceeded for project", ProviderErrorKind.RATE_LIMITED),
        (401, "bad key", ProviderErrorKind.AUTH_FAILED),
        (403, "forbidden", ProviderErrorKind.AUTH_FAILED),
        (408, "", ProviderErrorKind.TRANSIENT),
        (500, "", ProviderErrorKind.TRANSIENT),
        (503, "", ProviderErrorKind.TRANSIENT),
        (400, "bad request", ProviderErrorKind.FATAL),
        (404, "", ProviderErrorKind.FATAL),
    ],
)
def test_classify_status(status, body, expected):
    assert classify_status(status, body) == expected


def test_parse_model_string():
    assert parse_model_string("gemini-2.5-flash") == ("gemini", "gemini-2.5-flash")
    assert parse_model_string("ollama::qwen3:32b") == ("ollama", "qwen3:32b")
    assert parse_model_string(" Gemini :: gemini-2.5-pro ") == ("gemini", "gemini-2.5-pro")
    with pytest.raises(ConfigurationError):
        parse_model_string("")
    with pytest.raises(ConfigurationError):
        parse_model_string("ollama::")


def test_create_provider_selects_backend_from_model_string():
    cfg = Config()
    cfg.model.ollama_base_url = "http://gpu-box:11434/"
    client = _FakeClient(_FakeResponse({}))

    gemini = create_provider("gemini-2.5-flash", cfg, client=client)
    ollama = create_provider("ollama::llama3.2", cfg, client=client)

    assert isinstance(gemini, GeminiProvider)
    assert gemini.model == "gemini-2.5-flash"
    assert isinstance(ollama, OllamaProvider)
    assert ollama.requires_credentials is False
    assert ollama.base_url == "http://gpu-box:11434"


def test_create_provider_rejects_unknown_provider():
    with pytest.raises(ConfigurationError):
        create_provider("openai::gpt-4o", Config(), client=_FakeClient(_FakeResponse({})))


def test_group_tool_exchanges_regroups_interleaved_pairs():
    history = [
        UserText(text="hi"),
        ToolCallRequest(call_id="a", tool_name="read_file", arguments={"filepath": "x"}),
        ToolCallResult(call_id="a", tool_name="read_file", content="X"),
        ToolCallRequest(call_id="b", tool_name="read_file", arguments={"filepath": "y"}),
        ToolCallResult(call_id="b", tool_name="read_file", content="Y"),
        ModelText(text="done"),
    ]

    grouped = group_tool_exchanges(history)

    assert len(grouped) == 3
    exchange = grouped[1]
    assert isinstance(exchange, ToolExchange)
    assert [r.call_id for r in exchange.requests] == ["a", "b"]
    assert [r.call_id for r in exchange.results] == ["a", "b"]


def test_gemini_converts_history_and_tools():
    provider = GeminiProvider(client=_FakeClient(_FakeResponse({})))
    history = [
        UserText(text="read both"),
        ToolCallRequest(call_id="a", tool_name="read_file", arguments={"filepath": "x"}),
        ToolCallResult(call_id="a", tool_name="read_file", content="X"),
        ToolCallRequest(call_id="b", tool_name="read_file", arguments={"filepath": "y"}),
        ToolCallResult(call_id="b", tool_name="read_file", content="denied", is_error=True),
        ModelText(text="Here they are."),
        UserMedia(parts=[MediaPart(mime_type="image/png", data="aGVsbG8=")], caption="and this"),
    ]

    contents = provider._convert_messages(history)

    assert [c["role"] for c in contents] == ["user", "model", "user", "model", "user"]
    assert contents[1]["parts"] == [
        {"functionCall": {"name": "read_file", "args": {"filepath": "x"}}},
        {"functionCall": {"name": "read_file", "args": {"filepath": "y"}}},
    ]
    assert contents[2]["parts"][0]["functionResponse"]["response"] == {"result": "X"}
    assert contents[2]["parts"][1]["functionResponse"]["response"] == {"error": "denied"}
    assert contents[4]["parts"][0] == {"inlineData": {"mimeType": "image/png", "data": "aGVsbG8="}}
    assert contents[4]["parts"][1] == {"text": "and this"}

    tools = provider._convert_tools([
        ToolDefinition(
            name="read_file",
            description="Read",
            parameters={"type": "object", "additionalProperties": False, "properties": {}},
        )
    ])
    assert tools == [{"functionDeclarations": [
        {"name": "read_file", "description": "Read", "parameters": {"type": "object", "properties": {}}}
    ]}]


@pytest.mark.asyncio
async def test_gemini_send_posts_generate_content_with_key_header():
    client = _FakeClient(_FakeResponse({
        "candidates": [{"content": {"parts": [{"text": "Hello "}, {"text": "there"}]}}],
        "usageMetadata": {"promptTokenCount": 7, "candidatesTokenCount": 3, "totalTokenCount": 10},
    }))
    provider = GeminiProvider(model="gemini-2.5-flash", base_url="https://example.test/", client=client)

    reply = await provider.send(
        ChatRequest(model="gemini-2.5-flash", messages=[UserText(text="hi")], temperature=0.2, max_tokens=100),
        CREDENTIAL,
    )

    assert isinstance(reply, FinalText)
    assert reply.text == "Hello there"
    assert reply.usage == {"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10}
    call = client.calls[0]
    assert call["url"] == "https://example.test/v1beta/models/gemini-2.5-flash:generateContent"
    assert call["headers"]["x-goog-api-key"] == CREDENTIAL.secret
    assert call["json"]["generationConfig"] == {"temperature": 0.2, "maxOutputTokens": 100}


@pytest.mark.asyncio
async def test_gemini_function_calls_get_synthetic_ids():
    client = _FakeClient(_FakeResponse({
        "candidates": [{"content": {"parts": [
            {"text": "Let me look."},
            {"functionCall": {"name": "list_directory", "args": {"path": "."}}},
        ]}}],
    }))
    provider = GeminiProvider(client=client)

    reply = await provider.send(ChatRequest(model="gemini-2.5-flash", messages=[UserText(text="ls")]), CREDENTIAL)

    assert isinstance(reply, ToolCallsRequested)
    assert reply.text == "Let me look."
    assert reply.calls[0].name == "list_directory"
    assert reply.calls[0].arguments == {"path": "."}
    assert reply.calls[0].id.startswith("call_")


@pytest.mark.asyncio
async def test_gemini_empty_reply_is_fatal():
    client = _FakeClient(_FakeResponse({"candidates": [{"content": {"parts": []}, "finishReason": "SAFETY"}]}))
    provider = GeminiProvider(client=client)

    with pytest.raises(FatalProviderError):
        await provider.send(ChatRequest(model="gemini-2.5-flash", messages=[UserText(text="hi")]), CREDENTIAL)


@pytest.mark.asyncio
async def test_gemini_requires_a_credential():
    provider = GeminiProvider(client=_FakeClient(_FakeResponse({})))

    with pytest.raises(ConfigurationError):
        await provider.send(ChatRequest(model="gemini-2.5-flash", messages=[UserText(text="hi")]), None)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "error_cls"),
    [(429, RateLimitedError), (401, AuthFailedError), (503, TransientProviderError), (400, FatalProviderError)],
)
async def test_http_errors_map_to_provider_errors(status, error_cls):
    provider = GeminiProvider(client=_FakeClient(_FakeResponse({}, status_code=status, text="nope")))

    with pytest.raises(error_cls) as excinfo:
        await provider.send(ChatRequest(model="gemini-2.5-flash", messages=[UserText(text="hi")]), CREDENTIAL)

    assert excinfo.value.status_code == status


@pytest.mark.asyncio
async def test_network_error_is_transient():
    request = httpx.Request("POST", "https://example.test")
    provider = GeminiProvider(client=_FakeClient(httpx.ConnectError("refused", request=request)))

    with pytest.raises(TransientProviderError):
        await provider.send(ChatRequest(model="gemini-2.5-flash", messages=[UserText(text="hi")]), CREDENTIAL)


@pytest.mark.asyncio
async def test_undecodable_body_is_fatal():
    response = _FakeResponse(ValueError("not json"), text="<html>")
    provider = GeminiProvider(client=_FakeClient(response))

    with pytest.raises(FatalProviderError):
        await provider.send(ChatRequest(model="gemini-2.5-flash", messages=[UserText(text="hi")]), CREDENTIAL)


@pytest.mark.asyncio
async def test_ollama_send_without_credential_and_parses_tool_calls():
    client = _FakeClient(_FakeResponse({
        "message": {
            "role": "assistant",
            "content": "",
            "tool_calls": [{"function": {"name": "read_file", "arguments": '{"filepath": "notes.txt"}'}}],
        },
        "prompt_eval_count": 12,
        "eval_count": 4,
    }))
    provider = OllamaProvider(model="llama3.2", base_url="http://localhost:11434", client=client)

    reply = await provider.send(ChatRequest(model="llama3.2", messages=[UserText(text="read notes")]), None)

    assert isinstance(reply, ToolCallsRequested)
    assert reply.calls[0].arguments == {"filepath": "notes.txt"}
    assert reply.calls[0].id.startswith("ollama_call_")
    assert reply.usage["total_tokens"] == 16
    call = client.calls[0]
    assert call["url"] == "http://localhost:11434/api/chat"
    assert call["json"]["stream"] is False
    assert "Authorization" not in call["headers"]


def test_ollama_converts_tool_exchange_to_assistant_and_tool_messages():
    provider = OllamaProvider(client=_FakeClient(_FakeResponse({})))
    history = [
        UserText(text="read"),
        ToolCallRequest(call_id="a", tool_name="read_file", arguments={"filepath": "x"}),
        ToolCallResult(call_id="a", tool_name="read_file", content="X"),
    ]

    messages = provider._convert_messages(history)

    assert messages[1]["role"] == "assistant"
    assert messages[1]["tool_calls"][0]["function"]["name"] == "read_file"
    assert messages[2] == {"role": "tool", "content": "X", "tool_name": "read_file"}


@pytest.mark.asyncio
async def test_close_closes_http_client():
    client = _FakeClient(_FakeResponse({}))
    provider = OllamaProvider(client=client)

    await provider.close()

    assert client.closed is True
