"""Anthropic Messages API 适配器。

与 OpenAI 格式的主要差异：
- system 指令单独放在请求体的 system 字段；
- 工具调用是 assistant 内容中的 tool_use 块，工具结果是 user 消息中的 tool_result 块；
- 流式响应中 tool_use 的参数通过 input_json_delta 分片下发。
"""

import json
from typing import Any, Dict, Iterable, Iterator, List, Optional

from agentify.domain.models import Message
from agentify.providers.base import BaseAdapter, ParsedResponse, StreamChunk, WireRequest, iter_payloads
from agentify.tools.definitions import ToolCall


ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_STOP_REASONS = {"end_turn": "stop", "tool_use": "tool_calls", "max_tokens": "length", "stop_sequence": "stop"}


def _input_dict(arguments: Any) -> Dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if isinstance(arguments, str) and arguments.strip():
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


class AnthropicAdapter(BaseAdapter):
    name = "anthropic"

    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "anthropic-version": ANTHROPIC_VERSION}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        headers.update(self.custom_headers)
        return headers

    def format_request(self, messages: List[Message], tools: List[Dict[str, Any]], config) -> WireRequest:
        system = "\n\n".join(m.content for m in messages if m.role == "system" and m.content)
        body: Dict[str, Any] = {
            "model": config.model,
            "messages": self._format_messages([m for m in messages if m.role != "system"]),
            "temperature": config.temperature,
            "stream": config.stream,
            "max_tokens": config.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = self.format_tools(tools)
        return WireRequest(url=self.endpoint(config.stream), body=body, headers=self.headers())

    @staticmethod
    def _format_messages(messages: List[Message]) -> List[Dict[str, Any]]:
        formatted: List[Dict[str, Any]] = []
        for m in messages:
            if m.role == "tool":
                block = {"type": "tool_result", "tool_use_id": m.tool_call_id, "content": m.content or ""}
                # 连续的工具结果合并进同一条 user 消息
                last = formatted[-1] if formatted else None
                if last and last["role"] == "user" and isinstance(last["content"], list) and all(
                    b.get("type") == "tool_result" for b in last["content"]
                ):
                    last["content"].append(block)
                else:
                    formatted.append({"role": "user", "content": [block]})
            elif m.role == "assistant" and m.tool_calls:
                blocks: List[Dict[str, Any]] = []
                if m.content:
                    blocks.append({"type": "text", "text": m.content})
                for call in m.tool_calls:
                    blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": _input_dict(call.arguments)})
                formatted.append({"role": "assistant", "content": blocks})
            else:
                formatted.append({"role": m.role, "content": m.content or ""})
        return formatted

    def format_tools(self, tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        formatted = []
        for tool in tools:
            fn = tool.get("function") or tool
            formatted.append(
                {
                    "name": fn.get("name") or "",
                    "description": fn.get("description") or "",
                    "input_schema": fn.get("input_schema") or fn.get("parameters") or {"type": "object", "properties": {}},
                }
            )
        return formatted

    def parse_response(self, data: Dict[str, Any]) -> ParsedResponse:
        blocks = data.get("content")
        if not blocks:
            raise self._model_error("No content in response", data)
        text, thinking = [], []
        calls: List[ToolCall] = []
        for block in blocks:
            kind = block.get("type")
            if kind == "text":
                text.append(block.get("text") or "")
            elif kind == "tool_use":
                calls.append(
                    ToolCall(
                        id=self.tool_call_id(block.get("id"), len(calls)),
                        name=block.get("name") or "",
                        arguments=block.get("input") or {},
                    )
                )
            elif kind == "thinking":
                thinking.append(block.get("thinking") or "")
        return ParsedResponse(
            content="".join(text),
            tool_calls=calls,
            finish_reason=_STOP_REASONS.get(data.get("stop_reason"), data.get("stop_reason")),
            thinking="".join(thinking),
            usage=data.get("usage"),
        )

    def decode_stream(self, lines: Iterable[str]) -> Iterator[StreamChunk]:
        blocks: Dict[int, Dict[str, str]] = {}
        stop_reason: Optional[str] = None
        usage: Optional[Dict[str, Any]] = None
        for data in iter_payloads(lines):
            kind = data.get("type")
            index = data.get("index", 0)
            if kind == "error":
                yield StreamChunk(kind="error", error=data.get("error") or data)
            elif kind == "content_block_start":
                block = data.get("content_block") or {}
                if block.get("type") == "tool_use":
                    initial = block.get("input")
                    blocks[index] = {
                        "id": block.get("id") or "",
                        "name": block.get("name") or "",
                        "json": json.dumps(initial) if initial else "",
                    }
            elif kind == "content_block_delta":
                delta = data.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    yield StreamChunk(kind="token", text=delta["text"])
                elif delta.get("type") == "thinking_delta" and delta.get("thinking"):
                    yield StreamChunk(kind="thinking", text=delta["thinking"])
                elif delta.get("type") == "input_json_delta" and index in blocks:
                    if blocks[index]["json"] == "{}":
                        blocks[index]["json"] = ""
                    blocks[index]["json"] += delta.get("partial_json") or ""
            elif kind == "content_block_stop" and index in blocks:
                acc = blocks.pop(index)
                yield StreamChunk(
                    kind="tool_call",
                    tool_call=ToolCall(id=self.tool_call_id(acc["id"], index), name=acc["name"], arguments=acc["json"]),
                )
            elif kind == "message_delta":
                stop_reason = (data.get("delta") or {}).get("stop_reason") or stop_reason
                usage = data.get("usage") or usage
            elif kind == "message_stop":
                yield StreamChunk(kind="finish", finish_reason=_STOP_REASONS.get(stop_reason, stop_reason or "stop"), usage=usage)
