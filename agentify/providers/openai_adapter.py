"""OpenAI 兼容协议适配器（OpenAI / DeepSeek）。

请求体使用 chat/completions 格式；流式响应为 SSE，工具调用参数按 index 分片下发，
需要累积到 finish_reason 出现后再整体产出。
"""

from typing import Any, Dict, Iterable, Iterator, List

from agentify.domain.models import Message
from agentify.providers.base import BaseAdapter, ParsedResponse, StreamChunk, WireRequest, iter_payloads
from agentify.tools.definitions import ToolCall


def message_to_openai(message: Message) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"role": message.role, "content": message.content}
    if message.tool_calls:
        payload["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments_json()},
            }
            for call in message.tool_calls
        ]
    if message.tool_call_id:
        payload["tool_call_id"] = message.tool_call_id
    return payload


def tool_calls_from_openai(message: Dict[str, Any]) -> List[ToolCall]:
    """解析 message.tool_calls（以及旧版 function_call 字段）。

    arguments 保持厂商原样（通常是 JSON 文本），由工具循环统一解析。
    """

    calls: List[ToolCall] = []
    for idx, call in enumerate(message.get("tool_calls") or []):
        func = call.get("function") or {}
        calls.append(
            ToolCall(
                id=BaseAdapter.tool_call_id(call.get("id"), idx),
                name=func.get("name") or call.get("name") or "",
                arguments=func.get("arguments") if func.get("arguments") is not None else {},
            )
        )
    function_call = message.get("function_call")
    if function_call:
        calls.append(
            ToolCall(
                id=BaseAdapter.tool_call_id(function_call.get("id"), len(calls)),
                name=function_call.get("name") or "",
                arguments=function_call.get("arguments") if function_call.get("arguments") is not None else {},
            )
        )
    return calls


class OpenAIAdapter(BaseAdapter):
    name = "openai"

    def format_request(self, messages: List[Message], tools: List[Dict[str, Any]], config) -> WireRequest:
        body: Dict[str, Any] = {
            "model": config.model,
            "messages": [message_to_openai(m) for m in messages],
            "temperature": config.temperature,
            "stream": config.stream,
        }
        if config.max_tokens:
            body["max_tokens"] = config.max_tokens
        if tools:
            body["tools"] = self.format_tools(tools)
            body["tool_choice"] = "auto"
        return WireRequest(url=self.endpoint(config.stream), body=body, headers=self.headers())

    def format_tools(self, tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """同时接受扁平与 {"type": "function", "function": {...}} 两种工具定义。"""

        formatted = []
        for tool in tools:
            fn = tool.get("function") or tool
            formatted.append(
                {
                    "type": "function",
                    "function": {
                        "name": fn.get("name") or "",
                        "description": fn.get("description") or "",
                        "parameters": fn.get("parameters") or {"type": "object", "properties": {}},
                    },
                }
            )
        return formatted

    def parse_response(self, data: Dict[str, Any]) -> ParsedResponse:
        choices = data.get("choices") or []
        if not choices:
            raise self._model_error("No choices in response", data)
        choice = choices[0]
        message = choice.get("message") or {}
        return ParsedResponse(
            content=message.get("content") or "",
            tool_calls=tool_calls_from_openai(message),
            finish_reason=choice.get("finish_reason"),
            thinking=message.get("reasoning_content") or "",
            usage=data.get("usage"),
        )

    def decode_stream(self, lines: Iterable[str]) -> Iterator[StreamChunk]:
        pending: Dict[int, Dict[str, str]] = {}
        finished = False
        for data in iter_payloads(lines):
            if data.get("error"):
                yield StreamChunk(kind="error", error=data["error"])
                continue
            choices = data.get("choices") or []
            if not choices:
                continue
            choice = choices[0]
            delta = choice.get("delta") or {}
            if delta.get("reasoning_content"):
                yield StreamChunk(kind="thinking", text=delta["reasoning_content"])
            if delta.get("content"):
                yield StreamChunk(kind="token", text=delta["content"])
            for part in delta.get("tool_calls") or []:
                index = part.get("index", 0)
                acc = pending.setdefault(index, {"id": "", "name": "", "arguments": ""})
                if part.get("id"):
                    acc["id"] = part["id"]
                func = part.get("function") or {}
                if func.get("name"):
                    acc["name"] = func["name"]
                if func.get("arguments"):
                    acc["arguments"] += func["arguments"]
            if choice.get("finish_reason"):
                yield from self._flush_tool_calls(pending)
                finished = True
                yield StreamChunk(kind="finish", finish_reason=choice["finish_reason"], usage=data.get("usage"))
        if not finished:
            yield from self._flush_tool_calls(pending)

    def _flush_tool_calls(self, pending: Dict[int, Dict[str, str]]) -> Iterator[StreamChunk]:
        for index in sorted(pending):
            acc = pending[index]
            if acc["name"]:
                yield StreamChunk(
                    kind="tool_call",
                    tool_call=ToolCall(
                        id=self.tool_call_id(acc["id"], index),
                        name=acc["name"],
                        arguments=acc["arguments"],
                    ),
                )
        pending.clear()


class DeepSeekAdapter(OpenAIAdapter):
    name = "deepseek"
