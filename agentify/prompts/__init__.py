"""系统指令管理。

指令可以直接设置为文本、从文件读取，或由多个带 key 的片段拼接而成，
编排器每轮把它作为 role="system" 的首条消息发送。
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from agentify.domain.exceptions import ConfigurationError, ValidationError
from agentify.domain.models import utcnow


@dataclass
class InstructionPart:
    key: str
    content: str
    timestamp: str = field(default_factory=utcnow)


class Instruction:
    def __init__(self, text: str = ""):
        self._text = text
        self._parts: List[InstructionPart] = []

    @property
    def text(self) -> str:
        return self._text

    def set_from_text(self, text: str) -> str:
        if not isinstance(text, str):
            raise ValidationError(
                code="SYS_INVALID_PARAMETER",
                message="Instruction must be a string",
                provided_type=type(text).__name__,
            )
        self._text = text
        return self._text

    def load_from_file(self, path: Union[str, Path]) -> str:
        """从 UTF-8 文本文件读取指令。"""

        try:
            content = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(
                code="SYS_INIT_FAILED",
                message="Failed to load instruction from file",
                file=str(path),
                original_error=str(e),
            )
        self._text = content
        return self._text

    def add_part(self, text: str, key: Optional[str] = None) -> InstructionPart:
        if not isinstance(text, str):
            raise ValidationError(code="SYS_INVALID_PARAMETER", message="Instruction part must be a string")
        part = InstructionPart(key=key or f"part_{len(self._parts)}", content=text)
        self._parts.append(part)
        self._rebuild()
        return part

    def remove_part(self, key: str) -> bool:
        for i, part in enumerate(self._parts):
            if part.key == key:
                del self._parts[i]
                self._rebuild()
                return True
        return False

    def parts(self) -> List[InstructionPart]:
        return list(self._parts)

    def _rebuild(self) -> None:
        if self._parts:
            self._text = "\n\n".join(p.content for p in self._parts)

    def merge(self, instructions: Iterable[str]) -> str:
        self._text = "\n\n".join(i for i in instructions if isinstance(i, str) and i.strip())
        return self._text

    def render(self, variables: Optional[Dict[str, Any]] = None) -> str:
        """替换 {{ name }} 形式的变量，未提供的变量保持原样。"""

        rendered = self._text
        for key, value in (variables or {}).items():
            rendered = re.sub(r"\{\{\s*" + re.escape(key) + r"\s*\}\}", lambda _m: str(value), rendered)
        return rendered

    def clear(self) -> None:
        self._text = ""
        self._parts = []

    def with_tool_summary(self, summary_lines: List[str]) -> str:
        """在指令后追加可用工具列表，没有工具时原样返回。"""

        if not summary_lines:
            return self._text
        return (
            f"{self._text}\n\nAvailable tools:\n"
            + "\n".join(summary_lines)
            + "\n\nUse these tools when appropriate to help answer user questions."
        )
