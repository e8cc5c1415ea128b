"""Google Gemini generateContent 适配器。"""

import json
from typing import Any, Dict, Iterable, Iterator, List
from uuid import uuid4

from agentify.domain.models import Message
from agentify.providers.base import BaseAdapter, ParsedResponse, StreamChunk, WireRequest, iter_payloads
from agentify.tools.definitions import ToolCall


DEFAULT_MAX_OUTPUT_TOKENS = 2048

_FINISH_REASONS = {"STOP": "stop", "MAX_TOKENS": "length"}


def _new_call_id() -> str:
    # Gemini 的 functionCall 不带 id，这里生成一个，保证 tool 消息可以回指
    return f"call_{uuid4().hex[:12]}"


def _response_object(content: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(content)
    except (TypeError, json.JSONDecodeError):
        return {"result": content}
    return parsed if isinstance(parsed, dict) else {"result": parsed}


class GeminiAdapter(BaseAdapter):
    name = "gemini"

    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-goog-api-key"] = self.api_key
        headers.update(self.custom_headers)
        return headers

    def endpoint(self, stream: bool = False) -> str:
        if not stream:
            return self.api_url
        url = self.api_url
        if "streamGenerateContent" not in url:
            url = url.replace(":generateContent", ":streamGenerateContent")
        if "alt=sse" not in url:
            url += ("&" if "?" in url else "?") + "alt=sse"
        return url

    def format_request(self, messages: List[Message], tools: List[Dict[str, Any]], config) -> WireRequest:
        system = "\n\n".join(m.content for m in messages if m.role == "system" and m.content)
        body: Dict[str, Any] = {
            "contents": self._format_contents([m for m in messages if m.role != "system"]),
            "generationConfig": {
                "temperature": config.temperature,
                "maxOutputTokens": config.max_tokens or DEFAULT_MAX_OUTPUT_TOKENS,
            },
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        if tools:
            body["tools"] = [{"functionDeclarations": self.format_tools(tools)}]
        return WireRequest(url=self.endpoint(config.stream), body=body, headers=self.headers())

    @staticmethod
    def _format_contents(messages: List[Message]) -> List[Dict[str, Any]]:
        names: Dict[str, str] = {}
        contents: List[Dict[str, Any]] = []
        for m in messages:
            if m.role == "tool":
                part = {
                    "functionResponse": {
                        "name": names.get(m.tool_call_id or "", ""),
                        "response": _response_object(m.content or ""),
                    }
                }
                last = contents[-1] if contents else None
                if last and last["role"] == "function":
                    last["parts"].append(part)
                else:
                    contents.append({"role": "function", "parts": [part]})
                continue
            parts: List[Dict[str, Any]] = []
            if m.content:
                parts.append({"text": m.content})
            for call in m.tool_calls or []:
                names[call.id] = call.name
                args = call.arguments
                if isinstance(args, str):
                    try:
                        args = json.loads(args) if args.strip() else {}
                    except json.JSONDecodeError:
                        args = {}
                parts.append({"functionCall": {"name": call.name, "args": args}})
            contents.append({"role": "model" if m.role == "assistant" else "user", "parts": parts or [{"text": ""}]})
        return contents

    def format_tools(self, tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        formatted = []
        for tool in tools:
            fn = tool.get("function") or tool
            formatted.append(
                {
                    "name": fn.get("name") or "",
                    "description": fn.get("description") or "",
                    "parameters": fn.get("parameters") or {"type": "object", "properties": {}},
                }
            )
        return formatted

    def _parse_candidate(self, candidate: Dict[str, Any]):
        text: List[str] = []
        calls: List[ToolCall] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("text"):
                text.append(part["text"])
            elif part.get("functionCall"):
                fc = part["functionCall"]
                calls.append(ToolCall(id=_new_call_id(), name=fc.get("name") or "", arguments=fc.get("args") or {}))
        return "".join(text), calls

    def parse_response(self, data: Dict[str, Any]) -> ParsedResponse:
        candidates = data.get("candidates") or []
        if not candidates:
            raise self._model_error("No candidates in response", data)
        candidate = candidates[0]
        content, calls = self._parse_candidate(candidate)
        reason = candidate.get("finishReason")
        return ParsedResponse(
            content=content,
            tool_calls=calls,
            finish_reason="tool_calls" if calls else _FINISH_REASONS.get(reason, reason),
            usage=data.get("usageMetadata"),
        )

    def decode_stream(self, lines: Iterable[str]) -> Iterator[StreamChunk]:
        saw_calls = False
        for data in iter_payloads(lines):
            if data.get("error"):
                yield StreamChunk(kind="error", error=data["error"])
                continue
            candidates = data.get("candidates") or []
            if not candidates:
                continue
            candidate = candidates[0]
            content, calls = self._parse_candidate(candidate)
            if content:
                yield StreamChunk(kind="token", text=content)
            for call in calls:
                saw_calls = True
                yield StreamChunk(kind="tool_call", tool_call=call)
            reason = candidate.get("finishReason")
            if reason:
                yield StreamChunk(
                    kind="finish",
                    finish_reason="tool_calls" if saw_calls else _FINISH_REASONS.get(reason, reason),
                    usage=data.get("usageMetadata"),
                )
