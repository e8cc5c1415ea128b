"""工具调用循环中"单轮执行"部分。

模型在一轮中请求的每个工具调用都会经过：参数解析 → 按名称查找 → 执行并计时。
任何一步失败都只会构造失败的 ToolResult 回传给模型，不会向外抛出。
发起 / 完成 / 失败三类事件共用同一载荷结构写入 EventLog。
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from agentify.domain.exceptions import ToolArgumentParseError, ToolError
from agentify.infrastructure.logging.logger import log_with_context
from agentify.infrastructure.storage.event_log import EventLog, EventType
from agentify.thinking.tracker import ThinkingStatusTracker
from agentify.tools.definitions import ToolCall, ToolResult
from agentify.tools.registry import ToolRegistry


def parse_tool_arguments(raw: Any) -> Dict[str, Any]:
    """把模型给出的参数转换为 dict。

    已经是 dict 时原样返回；None 或空白字符串视为无参数；
    其他文本按 JSON 解析，解析失败或不是 JSON 对象时抛出 ToolArgumentParseError。
    """

    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ToolArgumentParseError(
                code="TOOL_INVALID_PARAMS",
                message=f"Failed to parse tool arguments: {e}",
                raw_arguments=raw,
            ) from e
        if not isinstance(parsed, dict):
            raise ToolArgumentParseError(
                code="TOOL_INVALID_PARAMS",
                message=f"Tool arguments must be a JSON object, got {type(parsed).__name__}",
                raw_arguments=raw,
            )
        return parsed
    raise ToolArgumentParseError(
        code="TOOL_INVALID_PARAMS",
        message=f"Unsupported tool arguments type: {type(raw).__name__}",
    )


class ToolInvocationLoop:
    def __init__(
        self,
        registry: ToolRegistry,
        event_log: EventLog,
        tracker: Optional[ThinkingStatusTracker] = None,
    ):
        self._registry = registry
        self._event_log = event_log
        self._tracker = tracker

    def invoke(
        self,
        call: ToolCall,
        chat_id: Optional[str],
        log_ctx: Optional[Dict[str, Any]] = None,
    ) -> ToolResult:
        """执行单个工具调用，总是返回 ToolResult。"""

        ctx = dict(log_ctx or {})
        ctx.update(tool_name=call.name, call_id=call.id)
        if self._tracker is not None:
            self._tracker.set_action(f"Executing tool: {call.name}")
        self._event_log.log_tool_call(EventType.TOOL_CALL_INITIATED, chat_id, call.name, call.arguments)

        start = time.perf_counter()
        arguments: Any = call.arguments
        try:
            arguments = parse_tool_arguments(call.arguments)
            result = self._registry.execute_tool(call.name, arguments)
        except ToolError as e:
            duration_ms = int((time.perf_counter() - start) * 1000)
            log_with_context(logging.WARNING, "Tool call failed", ctx, code=e.code, error=e.message)
            self._event_log.log_tool_call(
                EventType.TOOL_CALL_FAILED,
                chat_id,
                call.name,
                arguments,
                success=False,
                error=e.message,
                duration_ms=duration_ms,
            )
            self._event_log.log_error(chat_id, e, context="tool")
            return ToolResult(
                success=False,
                tool_name=call.name,
                error=e.message,
                call_id=call.id,
                duration_ms=duration_ms,
            )

        result.call_id = call.id
        log_with_context(logging.INFO, "Tool call completed", ctx, duration_ms=result.duration_ms)
        self._event_log.log_tool_call(
            EventType.TOOL_CALL_COMPLETED,
            chat_id,
            call.name,
            arguments,
            success=True,
            result=result.result,
            duration_ms=result.duration_ms,
        )
        return result

    def invoke_all(
        self,
        calls: Iterable[ToolCall],
        chat_id: Optional[str],
        on_tool_call: Optional[Callable[[ToolCall], None]] = None,
        log_ctx: Optional[Dict[str, Any]] = None,
    ) -> List[ToolResult]:
        """按顺序执行一轮中的全部调用，逐个执行完成后才开始下一个。"""

        results: List[ToolResult] = []
        for call in calls:
            if on_tool_call:
                on_tool_call(call)
            results.append(self.invoke(call, chat_id, log_ctx))
        return results
