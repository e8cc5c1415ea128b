"""把适配器解码出的类型化增量分发给调用方回调。

token / thinking 增量收到即转发，不做缓冲；tool_call 增量在收到时立即交给
on_tool_call 执行（执行完成后才继续读流），其返回的 ToolResult 按顺序收集。
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from agentify.domain.exceptions import StreamError
from agentify.providers.base import StreamChunk
from agentify.tools.definitions import ToolCall, ToolResult
from agentify.utils.formatters import format_thinking_content


@dataclass
class StreamOutcome:
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[ToolResult] = field(default_factory=list)
    thinking: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None


class StreamHandler:
    def __init__(self):
        self.is_streaming = False

    def handle(
        self,
        chunks: Iterable[StreamChunk],
        on_token: Optional[Callable[[str], None]] = None,
        on_tool_call: Optional[Callable[[ToolCall], Optional[ToolResult]]] = None,
        on_thinking: Optional[Callable[[str], None]] = None,
        on_complete: Optional[Callable[[StreamOutcome], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> StreamOutcome:
        """消费整个流并返回累积结果。

        流中的 error 增量会被转换为 StreamError 抛出；任何异常都会先通知 on_error 再向上抛。
        """

        outcome = StreamOutcome()
        self.is_streaming = True
        try:
            for chunk in chunks:
                if chunk.kind == "token":
                    outcome.content += chunk.text
                    if on_token:
                        on_token(chunk.text)
                elif chunk.kind == "thinking":
                    outcome.thinking += chunk.text
                    if on_thinking:
                        on_thinking(format_thinking_content(chunk.text))
                elif chunk.kind == "tool_call" and chunk.tool_call is not None:
                    outcome.tool_calls.append(chunk.tool_call)
                    if on_tool_call:
                        result = on_tool_call(chunk.tool_call)
                        if result is not None:
                            outcome.tool_results.append(result)
                elif chunk.kind == "finish":
                    outcome.finish_reason = chunk.finish_reason or outcome.finish_reason
                    outcome.usage = chunk.usage or outcome.usage
                elif chunk.kind == "error":
                    raise StreamError(
                        code="STR_PROVIDER_ERROR",
                        message=f"Stream error received: {self._error_text(chunk.error)}",
                        http_status=502,
                        error=chunk.error,
                    )
        except Exception as e:
            if on_error:
                on_error(e)
            raise
        finally:
            self.is_streaming = False

        if outcome.finish_reason is None:
            outcome.finish_reason = "tool_calls" if outcome.tool_calls else "stop"
        if on_complete:
            on_complete(outcome)
        return outcome

    @staticmethod
    def _error_text(error: Any) -> str:
        if isinstance(error, dict):
            return str(error.get("message") or error.get("type") or error)
        return str(error)
