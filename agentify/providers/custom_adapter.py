"""自定义 / 通用 endpoint 适配器。

请求默认使用 OpenAI 兼容格式，并合并 config.custom_params；
响应依次尝试 OpenAI、Anthropic 以及纯文本（text / response / output）三种格式。
"""

from typing import Any, Dict, List

from agentify.domain.models import Message
from agentify.providers.anthropic_adapter import AnthropicAdapter
from agentify.providers.base import ParsedResponse, WireRequest
from agentify.providers.openai_adapter import OpenAIAdapter


class CustomAdapter(OpenAIAdapter):
    name = "custom"

    def format_request(self, messages: List[Message], tools: List[Dict[str, Any]], config) -> WireRequest:
        wire = super().format_request(messages, tools, config)
        wire.body.pop("tool_choice", None)
        wire.body.update(getattr(config, "custom_params", None) or {})
        return wire

    def parse_response(self, data: Dict[str, Any]) -> ParsedResponse:
        if data.get("choices"):
            return super().parse_response(data)
        if isinstance(data.get("content"), list) and data["content"]:
            return AnthropicAdapter.parse_response(self, data)
        for key in ("text", "response", "output"):
            if data.get(key):
                return ParsedResponse(content=str(data[key]), finish_reason="stop")
        raise self._model_error("Unable to parse custom API response format", data)
