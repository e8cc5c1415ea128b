"""消息、字节数、时长等格式化工具。"""

import math
import re
from typing import Any, Dict, Iterable, List, Optional, Union

from agentify.domain.models import Message


_THINKING_TAG = re.compile(r"</?thinking>", re.IGNORECASE)


def format_messages(
    messages: Iterable[Union[str, Message, Dict[str, Any]]],
    system_instruction: Optional[str] = None,
) -> List[Message]:
    """把上下文整理成发给 Provider 的 Message 列表，系统指令放在最前。

    纯字符串视为 user 消息，dict 按持久化格式解析。
    """

    formatted: List[Message] = []
    if system_instruction:
        formatted.append(Message(role="system", content=system_instruction))
    for msg in messages:
        if isinstance(msg, str):
            formatted.append(Message(role="user", content=msg))
        elif isinstance(msg, Message):
            formatted.append(msg.for_context())
        elif isinstance(msg, dict):
            formatted.append(Message.from_dict(msg).for_context())
    return formatted


def format_thinking_content(content: Optional[str]) -> str:
    if not content:
        return ""
    return _THINKING_TAG.sub("", content).strip()


def truncate_text(text: Optional[str], max_length: int = 100, suffix: str = "...") -> Optional[str]:
    if not text or len(text) <= max_length:
        return text
    return text[:max_length] + suffix


def format_bytes(num: int) -> str:
    if num <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    i = min(int(math.floor(math.log(num, 1024))), len(units) - 1)
    value = round(num / (1024 ** i), 2)
    return f"{value:g} {units[i]}"


def format_duration(ms: Union[int, float]) -> str:
    if ms < 1000:
        return f"{int(ms)}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    if ms < 3_600_000:
        return f"{ms / 60_000:.1f}m"
    return f"{ms / 3_600_000:.1f}h"


def format_elapsed(ms: Union[int, float]) -> str:
    """把毫秒数格式化为 “1h 2m 5s” / “12s” / “350ms” 形式，供思考状态展示。"""

    ms = int(ms)
    if ms < 1000:
        return f"{ms}ms"
    seconds = ms // 1000
    minutes, sec = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {sec}s"
    if minutes:
        return f"{minutes}m {sec}s"
    return f"{sec}s"
