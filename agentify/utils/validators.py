"""输入与定义的结构化校验，失败统一抛出 ValidationError。"""

from typing import Any, Dict, Mapping, Union

import httpx

from agentify.domain.exceptions import ValidationError
from agentify.domain.models import Message
from agentify.tools.definitions import ToolDef


def validate_message(message: Union[str, Message, Dict[str, Any], None]) -> None:
    if isinstance(message, (Message, dict)):
        return
    if not isinstance(message, str):
        raise ValidationError(
            code="SYS_INVALID_PARAMETER",
            message="Message must be a string or message object",
            provided_type=type(message).__name__,
        )
    if not message.strip():
        raise ValidationError(code="SYS_VALIDATION_FAILED", message="Message cannot be empty")


def validate_tool(tool: ToolDef) -> None:
    if not isinstance(tool, ToolDef):
        raise ValidationError(
            code="SYS_INVALID_PARAMETER",
            message="Tool must be a ToolDef",
            provided_type=type(tool).__name__,
        )
    if not tool.name or not isinstance(tool.name, str):
        raise ValidationError(code="SYS_VALIDATION_FAILED", message="Tool must have a name (string)")
    if not tool.description or not isinstance(tool.description, str):
        raise ValidationError(
            code="SYS_VALIDATION_FAILED",
            message="Tool must have a description (string)",
            tool_name=tool.name,
        )
    if not isinstance(tool.params, Mapping):
        raise ValidationError(
            code="SYS_VALIDATION_FAILED",
            message="Tool parameters must be a mapping",
            tool_name=tool.name,
        )
    if tool.execute is not None and not callable(tool.execute):
        raise ValidationError(
            code="SYS_VALIDATION_FAILED",
            message="Tool execute must be callable",
            tool_name=tool.name,
        )


def validate_url(url: str) -> None:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as e:
        raise ValidationError(code="SYS_VALIDATION_FAILED", message="Invalid URL format", url=url, reason=str(e))
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValidationError(code="SYS_VALIDATION_FAILED", message="Invalid URL format", url=url)


def validate_config(config: Mapping[str, Any]) -> None:
    """校验配置字典中出现的字段类型与取值范围（缺失字段不在此处检查）。"""

    for name in ("api_url", "api_key", "model"):
        value = config.get(name)
        if value is not None and not isinstance(value, str):
            raise ValidationError(
                code="SYS_INVALID_PARAMETER",
                message=f"{name} must be a string",
                parameter=name,
                provided_type=type(value).__name__,
            )
    temperature = config.get("temperature")
    if temperature is not None:
        if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
            raise ValidationError(code="SYS_INVALID_PARAMETER", message="Temperature must be a number")
        if not 0 <= temperature <= 2:
            raise ValidationError(
                code="SYS_VALIDATION_FAILED",
                message="Temperature must be between 0 and 2",
                value=temperature,
            )
    max_tokens = config.get("max_tokens")
    if max_tokens is not None and (not isinstance(max_tokens, int) or max_tokens <= 0):
        raise ValidationError(
            code="SYS_INVALID_PARAMETER",
            message="Max tokens must be a positive number",
            value=max_tokens,
        )
    if config.get("api_url"):
        validate_url(config["api_url"])
