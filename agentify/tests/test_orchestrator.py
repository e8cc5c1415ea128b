"""ConversationOrchestrator 的端到端场景测试（Provider 与存储均为进程内替身）。"""

import json

import httpx
import pytest

from agentify.agents.orchestrator import ConversationOrchestrator
from agentify.api import service
from agentify.config.settings import OrchestratorConfig
from agentify.domain.exceptions import NetworkError, ToolRoundLimitError
from agentify.domain.models import TurnOptions
from agentify.infrastructure.storage.backends import MemoryBlobBackend
from agentify.providers.openai_adapter import OpenAIAdapter
from agentify.tools.definitions import ToolDef, ToolParam
from agentify.tools.registry import ToolRegistry


API_URL = "https://api.openai.com/v1/chat/completions"


def tool_call_response(name="calculator", arguments='{"expr": "2+2"}', call_id="call_1"):
    return {
        "choices": [
            {
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [{"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}],
                },
                "finish_reason": "tool_calls",
            }
        ]
    }


def text_response(text):
    return {"choices": [{"message": {"role": "assistant", "content": text}, "finish_reason": "stop"}]}


def tool_call_stream(name="calculator", arguments='{"expr": "2+2"}', call_id="call_1"):
    first = {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "id": call_id, "function": {"name": name, "arguments": ""}}]}}]}
    second = {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": arguments}}]}}]}
    done = {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]}
    return [f"data: {json.dumps(p)}" for p in (first, second, done)] + ["data: [DONE]"]


def text_stream(text):
    lines = [f"data: {json.dumps({'choices': [{'index': 0, 'delta': {'content': ch}}]})}" for ch in text]
    lines.append(f"data: {json.dumps({'choices': [{'index': 0, 'delta': {}, 'finish_reason': 'stop'}]})}")
    return lines + ["data: [DONE]"]


class ScriptedAdapter(OpenAIAdapter):
    """按顺序返回预设响应的 OpenAI 适配器；最后一个响应会被重复使用。"""

    def __init__(self, responses):
        super().__init__(API_URL, api_key="k")
        self._responses = list(responses)
        self.requests = []

    def make_request(self, wire, stream=False):
        self.requests.append(wire)
        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(item, Exception):
            raise item
        return iter(item) if stream else item


def calculator_tool():
    return ToolDef(
        name="calculator",
        description="Evaluate an addition",
        params={"expr": ToolParam(name="expr", description="Expression", required=True)},
        execute=lambda args: sum(int(x) for x in args["expr"].split("+")),
    )


def make_orchestrator(adapter=None, backend=None, **config):
    cfg = dict(api_url=API_URL, api_key="k", model="gpt", stream=False)
    cfg.update(config)
    return ConversationOrchestrator(
        config=OrchestratorConfig(**cfg),
        adapter=adapter,
        registry=ToolRegistry([calculator_tool()]),
        instruction="You are a helpful assistant.",
        backend=backend or MemoryBlobBackend(),
    )


def history_shape(orch, chat_id):
    return [(m.role, m.content, [c.name for c in m.tool_calls or []], m.tool_call_id)
            for m in orch.chat_history.get_history(chat_id).messages]


def test_single_tool_round_persists_four_messages():
    adapter = ScriptedAdapter([tool_call_response(), text_response("4")])
    orch = make_orchestrator(adapter)

    result = orch.turn("2+2?")
    assert result.content == "4"
    assert result.finish_reason == "stop"
    assert result.tool_calls == []
    assert len(adapter.requests) == 2

    assert history_shape(orch, result.chat_id) == [
        ("user", "2+2?", [], None),
        ("assistant", None, ["calculator"], None),
        ("tool", '{"result":4}', [], "call_1"),
        ("assistant", "4", [], None),
    ]

    # 第一轮请求带上系统指令与工具摘要
    system = adapter.requests[0].body["messages"][0]
    assert system["role"] == "system"
    assert "Available tools:\n- calculator: Evaluate an addition" in system["content"]
    # 第二轮请求包含工具结果
    assert adapter.requests[1].body["messages"][-1] == {"role": "tool", "content": '{"result":4}', "tool_call_id": "call_1"}

    tasks = orch.task_ledger.list(chat_id=result.chat_id)
    assert [(t.type, t.status) for t in tasks] == [("chat", "completed"), ("tool_followup", "completed")]
    assert orch.tracker.is_thinking is False


def test_streaming_and_non_streaming_write_the_same_records():
    plain = make_orchestrator(ScriptedAdapter([tool_call_response(), text_response("4")]))
    plain_result = plain.turn("2+2?")

    tokens = []
    streaming = make_orchestrator(ScriptedAdapter([tool_call_stream(), text_stream("4")]), stream=True)
    stream_result = streaming.turn("2+2?", TurnOptions(on_token=tokens.append))

    assert stream_result.content == plain_result.content == "4"
    assert tokens == ["4"]
    assert history_shape(streaming, stream_result.chat_id) == history_shape(plain, plain_result.chat_id)
    assert [e.type for e in streaming.event_log.list(chat_id=stream_result.chat_id)] == [
        e.type for e in plain.event_log.list(chat_id=plain_result.chat_id)
    ]
    assert [(t.type, t.status) for t in streaming.task_ledger.list()] == [
        (t.type, t.status) for t in plain.task_ledger.list()
    ]


def test_round_ceiling_stops_before_extra_network_call():
    adapter = ScriptedAdapter([tool_call_response()])
    orch = make_orchestrator(adapter)
    errors = []

    result = orch.turn("loop forever", TurnOptions(max_tool_rounds=3, on_error=errors.append))
    assert result.finish_reason == "max_rounds"
    assert "maximum number of tool calls (3)" in result.content
    assert isinstance(result.error, ToolRoundLimitError)
    assert errors == [result.error]
    assert len(adapter.requests) == 3
    # user + 3 × (assistant 工具调用 + 工具结果)
    assert len(orch.chat_history.get_history(result.chat_id).messages) == 7


def test_zero_round_ceiling_stops_before_any_request():
    adapter = ScriptedAdapter([text_response("unused")])
    orch = make_orchestrator(adapter)

    result = orch.turn("hello", TurnOptions(max_tool_rounds=0))
    assert result.finish_reason == "max_rounds"
    assert "maximum number of tool calls (0)" in result.content
    assert adapter.requests == []
    assert orch.task_ledger.count() == 0
    assert orch.chat_history.count() == 0


def test_unknown_tool_is_fed_back_to_the_model():
    adapter = ScriptedAdapter([tool_call_response(name="weather", arguments="{}"), text_response("I can't check weather.")])
    orch = make_orchestrator(adapter)

    result = orch.turn("weather?")
    assert result.content == "I can't check weather."
    tool_message = orch.chat_history.get_history(result.chat_id).messages[2]
    assert tool_message.role == "tool"
    assert json.loads(tool_message.content) == {"error": 'Tool "weather" not found. Available tools: calculator'}
    failed = orch.event_log.list(type="tool_call_failed", chat_id=result.chat_id)
    assert failed[0].data["toolName"] == "weather"


def test_dns_failure_on_first_round_is_raised(monkeypatch):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, *a, **kw):
            raise httpx.ConnectError("[Errno -2] Name or service not known")

    monkeypatch.setattr("httpx.Client", Client)
    orch = make_orchestrator()
    errors = []

    with pytest.raises(NetworkError) as exc:
        orch.turn("hello", TurnOptions(chat_id="chat_dns", on_error=errors.append))
    assert exc.value.code == "NET_DNS_FAILURE"
    assert errors == [exc.value]

    task = orch.task_ledger.list(chat_id="chat_dns")[0]
    assert task.status == "failed"
    assert task.error["code"] == "NET_DNS_FAILURE"
    types = [e.type for e in orch.event_log.list(chat_id="chat_dns")]
    assert "api_request_failed" in types
    assert "error_occurred" in types
    assert orch.tracker.is_thinking is False


def test_rate_limit_is_returned_as_result(monkeypatch):
    class Resp:
        status_code = 429
        headers = {"retry-after": "3"}
        text = '{"error": {"message": "slow down"}}'

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, *a, **kw):
            return Resp()

    monkeypatch.setattr("httpx.Client", Client)
    orch = make_orchestrator()

    result = orch.turn("hello")
    assert result.finish_reason == "error"
    assert result.content == "Rate limit exceeded. Please wait a moment and try again."
    assert result.error.code == "NET_RATE_LIMIT"


def test_fatal_error_during_tool_follow_up_becomes_result():
    dns = NetworkError(code="NET_DNS_FAILURE", message="DNS lookup failed", http_status=502)
    adapter = ScriptedAdapter([tool_call_response(), dns])
    orch = make_orchestrator(adapter)

    result = orch.turn("2+2?")
    assert result.finish_reason == "error"
    assert result.error is dns
    assert result.content == "I encountered an error: DNS lookup failed"
    statuses = [t.status for t in orch.task_ledger.list(chat_id=result.chat_id)]
    assert statuses == ["completed", "failed"]


def test_validation_and_configuration_errors_skip_side_effects():
    adapter = ScriptedAdapter([text_response("unused")])
    orch = make_orchestrator(adapter)

    result = orch.turn("   ")
    assert result.finish_reason == "error"
    assert result.content.startswith("I encountered a validation error: Message cannot be empty")

    orch.update_config(api_key=None)
    result = orch.turn("hello")
    assert result.finish_reason == "error"
    assert result.content == (
        "Configuration error: Missing required configuration: api_key. Please check API key and model settings."
    )
    assert adapter.requests == []
    assert orch.task_ledger.count() == 0
    assert orch.chat_history.count() == 0


def test_quota_exhaustion_does_not_break_the_turn():
    adapter = ScriptedAdapter([text_response("still answering")])
    orch = make_orchestrator(adapter, backend=MemoryBlobBackend(quota_bytes=16))

    result = orch.turn("hello")
    assert result.content == "still answering"
    assert orch.chat_history.count() == 0
    assert orch.task_ledger.count() == 0
    # 历史没有落盘时，上下文仍然包含本轮的用户消息
    assert adapter.requests[0].body["messages"][-1] == {"role": "user", "content": "hello"}
    assert [m.content for m in orch.get_session(result.chat_id)] == ["hello", "still answering"]


def test_continue_chat_uses_session_when_history_context_disabled():
    adapter = ScriptedAdapter([text_response("hi"), text_response("again hi")])
    orch = make_orchestrator(adapter, include_history=False)

    first = orch.start_new_chat("hello")
    orch.clear_session()
    orch.continue_chat(first.chat_id, "again")

    sent = adapter.requests[1].body["messages"]
    assert [(m["role"], m["content"]) for m in sent if m["role"] != "system"] == [
        ("user", "hello"),
        ("assistant", "hi"),
        ("user", "again"),
    ]


def test_storage_info_status_and_clear_all():
    orch = make_orchestrator(ScriptedAdapter([text_response("hi")]))
    result = orch.turn("hello")

    info = orch.storage_info()
    assert info["tasks"]["count"] == 1
    assert info["chat_histories"] == {
        "count": 1,
        "messages": 2,
        "size_bytes": info["chat_histories"]["size_bytes"],
        "size_formatted": info["chat_histories"]["size_formatted"],
    }
    assert info["total"]["size_bytes"] > 0

    status = orch.get_status()
    assert status["tool_count"] == 1
    assert status["config"]["api_key"] == "***"
    assert status["message_count"] == 2

    orch.clear_all_storage()
    assert orch.storage_info()["total"]["size_bytes"] == 0
    assert orch.get_session(result.chat_id) == []


def test_update_config_logs_masked_changes():
    orch = make_orchestrator(ScriptedAdapter([text_response("hi")]))
    orch.update_config(api_key="new-secret", temperature=0.2)
    event = orch.event_log.list(type="config_updated")[-1]
    assert event.data["changes"] == {"api_key": "***", "temperature": 0.2}
    assert orch.config.temperature == 0.2
    assert orch.event_log.list(type="agent_initialized")


def test_service_facade_runs_a_turn():
    orch = make_orchestrator(ScriptedAdapter([text_response("hello back")]))
    service.set_default_orchestrator(orch)
    try:
        payload = service.run_turn("hello")
        assert payload["content"] == "hello back"
        assert payload["finish_reason"] == "stop"
        assert payload["error"] is None
        chats = service.list_chats()
        assert chats[0]["chat_id"] == payload["chat_id"]
        assert [m["role"] for m in service.get_chat_messages(payload["chat_id"])] == ["user", "assistant"]
        assert service.get_storage_info()["tasks"]["count"] == 1
        service.clear_all_storage()
        assert service.list_chats() == []
    finally:
        service.set_default_orchestrator(None)
