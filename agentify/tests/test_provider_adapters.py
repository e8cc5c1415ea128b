import json

import httpx
import pytest

from agentify.config.settings import OrchestratorConfig
from agentify.domain.exceptions import ApiError, ModelResponseError, NetworkError, RateLimitError
from agentify.domain.models import Message
from agentify.providers.anthropic_adapter import AnthropicAdapter
from agentify.providers.custom_adapter import CustomAdapter
from agentify.providers.gemini_adapter import GeminiAdapter
from agentify.providers.openai_adapter import OpenAIAdapter
from agentify.tools.definitions import ToolCall


TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "calculator",
            "description": "add numbers",
            "parameters": {"type": "object", "properties": {"expr": {"type": "string"}}},
        },
    }
]


def make_client(response=None, stream_lines=None, raises=None, captured=None):
    """构造替换 httpx.Client 的假客户端。"""

    class StreamContext:
        def __init__(self, resp):
            self._resp = resp

        def __enter__(self):
            return self._resp

        def __exit__(self, *args):
            return False

    class StreamResponse:
        status_code = 200
        headers = {}

        def iter_lines(self):
            for line in stream_lines or []:
                yield line

        def read(self):
            return b""

    class Client:
        def __init__(self, *a, **kw):
            if captured is not None:
                captured["client_kwargs"] = kw

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None, **_):
            if captured is not None:
                captured.update(url=url, payload=json, headers=headers)
            if raises is not None:
                raise raises
            return response

        def stream(self, method, url, json=None, headers=None, **_):
            if captured is not None:
                captured.update(url=url, payload=json, headers=headers)
            if raises is not None:
                raise raises
            return StreamContext(response or StreamResponse())

    return Client


class JsonResp:
    def __init__(self, data, status_code=200, headers=None):
        self._data = data
        self.status_code = status_code
        self.headers = headers or {}
        self.text = json.dumps(data) if not isinstance(data, str) else data

    def json(self):
        if isinstance(self._data, str):
            raise ValueError("not json")
        return self._data

    def read(self):
        return self.text.encode("utf-8")


def config(**kw):
    base = dict(api_url="https://api.openai.com/v1/chat/completions", api_key="k", model="gpt", stream=False)
    base.update(kw)
    return OrchestratorConfig(**base)


def test_openai_request_and_tool_call_parsing(monkeypatch):
    adapter = OpenAIAdapter("https://api.openai.com/v1/chat/completions", api_key="k", timeout=3)
    messages = [
        Message(role="system", content="sys"),
        Message(role="user", content="2+2?"),
        Message(role="assistant", content=None, tool_calls=[ToolCall(id="c1", name="calculator", arguments={"expr": "2+2"})]),
        Message(role="tool", content='{"result":4}', tool_call_id="c1"),
    ]
    wire = adapter.format_request(messages, TOOLS, config())
    assert wire.body["tool_choice"] == "auto"
    assert wire.body["messages"][2]["tool_calls"][0]["function"]["arguments"] == '{"expr": "2+2"}'
    assert wire.body["messages"][3]["tool_call_id"] == "c1"
    assert wire.headers["Authorization"] == "Bearer k"

    captured = {}
    data = {
        "choices": [
            {
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [{"id": "tool123", "function": {"name": "calculator", "arguments": '{"expr": "1+1"}'}}],
                },
                "finish_reason": "tool_calls",
            }
        ],
        "usage": {"total_tokens": 3},
    }
    monkeypatch.setattr("httpx.Client", make_client(JsonResp(data), captured=captured))
    parsed = adapter.parse_response(adapter.make_request(wire, stream=False))
    assert captured["client_kwargs"] == {"timeout": 3, "trust_env": False}
    assert parsed.content == ""
    assert parsed.finish_reason == "tool_calls"
    assert parsed.tool_calls[0].id == "tool123"
    assert parsed.tool_calls[0].arguments == '{"expr": "1+1"}'


def test_openai_stream_accumulates_tool_call_fragments(monkeypatch):
    lines = [
        'data: {"choices": [{"index": 0, "delta": {"content": "Let me "}}]}',
        'data: {"choices": [{"index": 0, "delta": {"content": "check."}}]}',
        'data: {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "calculator", "arguments": "{\\"ex"}}]}}]}',
        'data: {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": "pr\\": \\"2+2\\"}"}}]}}]}',
        'data: {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]}',
        "data: [DONE]",
    ]
    monkeypatch.setattr("httpx.Client", make_client(stream_lines=lines))
    adapter = OpenAIAdapter("https://api.openai.com/v1/chat/completions", api_key="k")
    wire = adapter.format_request([Message(role="user", content="hi")], [], config(stream=True))
    chunks = list(adapter.decode_stream(adapter.make_request(wire, stream=True)))
    assert [c.kind for c in chunks] == ["token", "token", "tool_call", "finish"]
    assert chunks[2].tool_call.arguments == '{"expr": "2+2"}'
    assert chunks[3].finish_reason == "tool_calls"


def test_anthropic_format_and_stream():
    adapter = AnthropicAdapter("https://api.anthropic.com/v1/messages", api_key="k")
    messages = [
        Message(role="system", content="be brief"),
        Message(role="user", content="2+2?"),
        Message(role="assistant", content=None, tool_calls=[ToolCall(id="t1", name="calculator", arguments='{"expr": "2+2"}')]),
        Message(role="tool", content='{"result":4}', tool_call_id="t1"),
    ]
    wire = adapter.format_request(messages, TOOLS, config(model="claude"))
    assert wire.body["system"] == "be brief"
    assert wire.body["max_tokens"] == 4096
    assert wire.body["messages"][1]["content"][0] == {
        "type": "tool_use",
        "id": "t1",
        "name": "calculator",
        "input": {"expr": "2+2"},
    }
    assert wire.body["messages"][2]["content"][0]["type"] == "tool_result"
    assert wire.body["tools"][0]["input_schema"]["type"] == "object"

    lines = [
        "event: content_block_start",
        'data: {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}}',
        'data: {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}}',
        'data: {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "t2", "name": "calculator", "input": {}}}',
        'data: {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": "{\\"expr\\": "}}',
        'data: {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": "\\"3+3\\"}"}}',
        'data: {"type": "content_block_stop", "index": 1}',
        'data: {"type": "message_delta", "delta": {"stop_reason": "tool_use"}}',
        'data: {"type": "message_stop"}',
    ]
    chunks = list(adapter.decode_stream(lines))
    assert [c.kind for c in chunks] == ["token", "tool_call", "finish"]
    assert json.loads(chunks[1].tool_call.arguments) == {"expr": "3+3"}
    assert chunks[2].finish_reason == "tool_calls"


def test_gemini_format_and_parse():
    adapter = GeminiAdapter(
        "https://generativelanguage.googleapis.com/v1beta/models/gemini-pro:generateContent", api_key="g"
    )
    assert adapter.endpoint(stream=True).endswith(":streamGenerateContent?alt=sse")
    messages = [
        Message(role="system", content="sys"),
        Message(role="user", content="2+2?"),
        Message(role="assistant", content=None, tool_calls=[ToolCall(id="g1", name="calculator", arguments={"expr": "2+2"})]),
        Message(role="tool", content='{"result":4}', tool_call_id="g1"),
    ]
    wire = adapter.format_request(messages, TOOLS, config())
    assert wire.headers["x-goog-api-key"] == "g"
    assert wire.body["systemInstruction"] == {"parts": [{"text": "sys"}]}
    assert wire.body["contents"][2] == {
        "role": "function",
        "parts": [{"functionResponse": {"name": "calculator", "response": {"result": 4}}}],
    }

    parsed = adapter.parse_response(
        {"candidates": [{"content": {"parts": [{"functionCall": {"name": "calculator", "args": {"expr": "1+1"}}}]}, "finishReason": "STOP"}]}
    )
    assert parsed.finish_reason == "tool_calls"
    assert parsed.tool_calls[0].id.startswith("call_")
    assert parsed.tool_calls[0].arguments == {"expr": "1+1"}


def test_custom_adapter_merges_params_and_parses_plain_text():
    adapter = CustomAdapter("http://localhost:9000/chat")
    wire = adapter.format_request([Message(role="user", content="hi")], TOOLS, config(custom_params={"top_p": 0.5}))
    assert wire.body["top_p"] == 0.5
    assert "tool_choice" not in wire.body
    assert adapter.parse_response({"response": "plain"}).content == "plain"
    assert adapter.parse_response({"content": [{"type": "text", "text": "anthropic-like"}]}).content == "anthropic-like"
    with pytest.raises(ModelResponseError):
        adapter.parse_response({"unexpected": True})


@pytest.mark.parametrize(
    "status, code, exc_type",
    [
        (401, "NET_UNAUTHORIZED", ApiError),
        (404, "NET_NOT_FOUND", ApiError),
        (429, "NET_RATE_LIMIT", RateLimitError),
        (503, "NET_SERVER_ERROR", ApiError),
        (418, "NET_INVALID_RESPONSE", ApiError),
    ],
)
def test_http_status_mapping(monkeypatch, status, code, exc_type):
    body = {"error": {"message": "nope"}}
    monkeypatch.setattr("httpx.Client", make_client(JsonResp(body, status_code=status, headers={"retry-after": "7"})))
    adapter = OpenAIAdapter("https://api.openai.com/v1/chat/completions", api_key="k")
    with pytest.raises(exc_type) as exc:
        adapter.make_request(adapter.format_request([Message(role="user", content="hi")], [], config()))
    assert exc.value.code == code
    assert exc.value.message == "nope"
    if status == 429:
        assert exc.value.extra["retry_after"] == "7"


@pytest.mark.parametrize(
    "error, code",
    [
        (httpx.ConnectError("[Errno -2] Name or service not known"), "NET_DNS_FAILURE"),
        (httpx.ConnectError("[Errno 111] Connection refused"), "NET_CONNECTION_REFUSED"),
        (httpx.ReadTimeout("timed out"), "NET_TIMEOUT"),
        (httpx.RemoteProtocolError("peer closed"), "NET_CONNECTION_FAILED"),
    ],
)
def test_request_error_mapping(monkeypatch, error, code):
    monkeypatch.setattr("httpx.Client", make_client(raises=error))
    adapter = OpenAIAdapter("https://api.openai.com/v1/chat/completions", api_key="k")
    wire = adapter.format_request([Message(role="user", content="hi")], [], config())
    with pytest.raises(NetworkError) as exc:
        adapter.make_request(wire)
    assert exc.value.code == code

    # 流式请求的错误在第一次迭代时抛出
    stream = adapter.make_request(wire, stream=True)
    with pytest.raises(NetworkError):
        next(iter(stream))


def test_invalid_json_body_is_model_error(monkeypatch):
    monkeypatch.setattr("httpx.Client", make_client(JsonResp("<html>")))
    adapter = OpenAIAdapter("https://api.openai.com/v1/chat/completions", api_key="k")
    with pytest.raises(ModelResponseError) as exc:
        adapter.make_request(adapter.format_request([Message(role="user", content="hi")], [], config()))
    assert exc.value.code == "MDL_INVALID_RESPONSE"
