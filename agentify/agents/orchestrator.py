"""对话编排器。

一次 turn() 可能包含多轮：每轮组装上下文 → 调用 Provider → 解析（流式或非流式）
→ 执行模型请求的工具 → 写回历史。模型不再请求工具时结束，或在达到轮数上限时
于发起网络请求之前停止。

每轮返回 Ok(RoundOutcome) 或 Err(TurnFailure)，由 turn() 统一决定是把错误包装成
TurnResult 还是向外抛出。流式与非流式两条路径最终走同一个收尾逻辑，
因此写入 TaskLedger / EventLog / ChatHistoryStore 的内容完全一致。
"""

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union
from uuid import uuid4

from agentify.agents.tool_loop import ToolInvocationLoop
from agentify.config.settings import OrchestratorConfig, settings
from agentify.domain.exceptions import (
    ConfigurationError,
    StorageQuotaExceeded,
    ToolRoundLimitError,
    TransportError,
    ValidationError,
    error_payload,
    user_facing_message,
)
from agentify.domain.models import Message, RoundState, Task, TurnOptions, TurnResult
from agentify.domain.result import Err, Ok, Result, TurnFailure
from agentify.infrastructure.logging.logger import log_with_context
from agentify.infrastructure.storage.backends import BlobBackend, FileBlobBackend
from agentify.infrastructure.storage.chat_history import ChatHistoryStore
from agentify.infrastructure.storage.event_log import EventLog, EventType
from agentify.infrastructure.storage.task_ledger import TaskLedger
from agentify.prompts import Instruction
from agentify.providers import BaseAdapter, create_adapter, detect_provider
from agentify.streaming import StreamHandler
from agentify.thinking import ThinkingStatusTracker
from agentify.tools.definitions import ToolCall, ToolDef, ToolResult
from agentify.tools.registry import ToolRegistry
from agentify.utils.formatters import format_bytes, format_messages
from agentify.utils.validators import validate_message


# 修改这些字段后需要重新创建适配器
_ADAPTER_FIELDS = frozenset({"provider", "api_url", "api_key", "http_timeout", "custom_headers"})


def generate_chat_id() -> str:
    return f"chat_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


@dataclass
class RoundOutcome:
    """单轮编排的结果；tool_calls 非空表示需要继续下一轮。"""

    result: TurnResult
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[ToolResult] = field(default_factory=list)

    @property
    def needs_follow_up(self) -> bool:
        return bool(self.tool_calls)


class ConversationOrchestrator:
    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        adapter: Optional[BaseAdapter] = None,
        registry: Optional[ToolRegistry] = None,
        instruction: Union[Instruction, str, None] = None,
        backend: Optional[BlobBackend] = None,
        task_ledger: Optional[TaskLedger] = None,
        event_log: Optional[EventLog] = None,
        chat_history: Optional[ChatHistoryStore] = None,
        tracker: Optional[ThinkingStatusTracker] = None,
        stream_handler: Optional[StreamHandler] = None,
    ):
        """初始化编排器。

        Args:
            config: 配置快照，默认从全局 settings 生成。
            adapter: Provider 适配器，默认按 config 创建；显式传入时 update_config 不会替换它。
            registry: 工具注册表。
            instruction: 系统指令，可以是 Instruction 或纯文本。
            backend: 三个存储共用的 blob 后端，默认是 settings.storage_root 下的文件后端。
            task_ledger / event_log / chat_history: 显式传入时优先于 backend。
        """
        self.config = config or OrchestratorConfig.from_settings()
        self._owns_adapter = adapter is None
        self.adapter = adapter or create_adapter(self.config)
        self.registry = registry or ToolRegistry()
        if isinstance(instruction, Instruction):
            self.instruction = instruction
        else:
            self.instruction = Instruction(instruction if instruction is not None else self.config.instruction)

        if backend is None and None in (task_ledger, event_log, chat_history):
            backend = FileBlobBackend(settings.storage_root, settings.storage_quota_bytes)
        self.task_ledger = task_ledger or TaskLedger(backend)
        self.event_log = event_log or EventLog(backend)
        self.chat_history = chat_history or ChatHistoryStore(backend)

        self.tracker = tracker or ThinkingStatusTracker()
        self.stream_handler = stream_handler or StreamHandler()
        self.tool_loop = ToolInvocationLoop(self.registry, self.event_log, self.tracker)

        # 当前进程内的会话消息，按 chat_id 区分，不存在全局的“当前会话”
        self._sessions: Dict[str, List[Message]] = {}
        self._unpersisted_chats: Set[str] = set()

        self.event_log.log_event(
            EventType.AGENT_INITIALIZED,
            {"config": self.config.to_dict(), "provider": self.provider_name},
        )

    @property
    def provider_name(self) -> str:
        return getattr(self.adapter, "name", None) or self.config.provider or detect_provider(self.config.api_url)

    # ---- turn ----

    def turn(self, text: Any, options: Optional[TurnOptions] = None) -> TurnResult:
        """处理一条用户输入，直到模型给出最终回答。

        校验失败、配置缺失、可恢复错误以及任何工具续轮中的错误都会以
        finish_reason="error" 的 TurnResult 返回；只有首轮的致命错误
        （连接被拒绝、DNS 失败、编程错误）会向外抛出。
        """

        options = options or TurnOptions()

        if not options.is_tool_follow_up:
            try:
                validate_message(text)
            except ValidationError as e:
                return self._precondition_failed(
                    e, f"I encountered a validation error: {e.message}. Please provide a valid message.", options
                )
        try:
            self.config.validate_required()
        except ConfigurationError as e:
            return self._precondition_failed(
                e, f"Configuration error: {e.message}. Please check API key and model settings.", options
            )

        state = RoundState(
            chat_id=options.chat_id or "",
            round_index=options.tool_round,
            ceiling=options.max_tool_rounds if options.max_tool_rounds is not None else self.config.max_tool_rounds,
        )
        user_text = text
        while True:
            if state.exhausted:
                return self._max_rounds_result(state, options)
            if not state.chat_id:
                state.chat_id = generate_chat_id()

            follow_up = options.is_tool_follow_up or state.is_follow_up
            outcome = self._run_round(user_text, state, options, follow_up)
            if isinstance(outcome, Err):
                return self._handle_failure(outcome.failure, state, follow_up)

            if not outcome.value.needs_follow_up:
                result = outcome.value.result
                if options.on_complete:
                    options.on_complete(result)
                return result

            # 续轮的“用户输入”是合成的空文本
            user_text = ""
            state = state.next()

    def start_new_chat(self, text: Any, options: Optional[TurnOptions] = None) -> TurnResult:
        chat_id = generate_chat_id()
        self._sessions[chat_id] = []
        return self.turn(text, dataclasses.replace(options or TurnOptions(), chat_id=chat_id))

    def continue_chat(self, chat_id: str, text: Any, options: Optional[TurnOptions] = None) -> TurnResult:
        """把已持久化的历史载入会话后继续对话。"""

        self._sessions[chat_id] = [m.for_context() for m in self.chat_history.get_history(chat_id).messages]
        return self.turn(text, dataclasses.replace(options or TurnOptions(), chat_id=chat_id))

    def generate_chat_id(self) -> str:
        return generate_chat_id()

    # ---- 单轮 ----

    def _run_round(self, text: Any, state: RoundState, options: TurnOptions, follow_up: bool) -> Result[RoundOutcome]:
        chat_id = state.chat_id
        log_ctx: Dict[str, Any] = {
            "chat_id": chat_id,
            "round": state.round_index,
            "provider": self.provider_name,
            "follow_up": follow_up,
        }
        start = time.perf_counter()
        task: Optional[Task] = None
        try:
            if not follow_up:
                self.event_log.log_user_message(chat_id, self._message_text(text))

            task = self._persist(
                self.task_ledger.create_task,
                log_ctx,
                title="Tool follow-up" if follow_up else "Chat turn",
                type="tool_followup" if follow_up else "chat",
                chat_id=chat_id,
                input=self._message_text(text),
                metadata={"round": state.round_index},
            )
            if task is not None:
                log_ctx["task_id"] = task.id
            log_with_context(logging.INFO, "Starting round", log_ctx)

            action = "Processing tool results" if follow_up else "Preparing request"
            self.tracker.start_thinking(action)
            self.event_log.log_thinking(EventType.THINKING_STARTED, chat_id, action)

            if not follow_up and text:
                self._append_message(chat_id, self._user_message(text), log_ctx)

            context = self._context_messages(chat_id)
            tools = self.registry.get_tool_definitions(self.provider_name) if self.registry.count() > 0 else []
            system_text = self.instruction.with_tool_summary(self.registry.summary_lines()) if tools else self.instruction.text
            messages = format_messages(context, system_text)

            self.tracker.set_action("Formatting request")
            wire = self.adapter.format_request(messages, tools, self.config)
            self._update_task(task, "running", log_ctx)
            self.event_log.log_api_request(
                chat_id,
                self.config.api_url or "",
                wire.method,
                {"model": self.config.model, "messages": len(messages), "tools": len(tools)},
                round=state.round_index,
            )

            self.tracker.set_action("Sending request to API")
            log_with_context(
                logging.INFO,
                "Calling provider",
                log_ctx,
                model=self.config.model,
                message_count=len(messages),
                tool_count=len(tools),
                stream=self.config.stream,
            )
            raw = self.adapter.make_request(wire, self.config.stream)
            self.event_log.log_assistant_started(chat_id, round=state.round_index)

            if self.config.stream:
                outcome = self._handle_streaming(raw, options, chat_id, log_ctx)
            else:
                outcome = self._handle_non_streaming(raw, options, chat_id, log_ctx)
            return Ok(self._complete_round(outcome, task, chat_id, start, log_ctx))

        except Exception as e:
            log_with_context(logging.ERROR, "Round failed", log_ctx, error=error_payload(e))
            if isinstance(e, TransportError):
                self.event_log.log_api_request_failed(chat_id, self.config.api_url or "", e)
            self.event_log.log_error(chat_id, e, context="chat")
            self._update_task(task, "failed", log_ctx, error=error_payload(e))
            self.tracker.stop_thinking()
            self.event_log.log_thinking(EventType.THINKING_STOPPED, chat_id)
            if options.on_error:
                options.on_error(e)
            return Err(TurnFailure.classify(e))

    def _handle_streaming(self, raw: Iterable[str], options: TurnOptions, chat_id: str, log_ctx: Dict[str, Any]) -> RoundOutcome:
        """消费流：token / thinking 即时转发，工具调用在到达时执行完成后再继续读流。"""

        def on_tool_call(call: ToolCall) -> ToolResult:
            if options.on_tool_call:
                options.on_tool_call(call)
            return self.tool_loop.invoke(call, chat_id, log_ctx)

        def on_thinking(thought: str) -> None:
            self.tracker.add_thinking_content(thought)
            if options.on_thinking:
                options.on_thinking(thought)

        streamed = self.stream_handler.handle(
            self.adapter.decode_stream(raw),
            on_token=options.on_token,
            on_tool_call=on_tool_call,
            on_thinking=on_thinking,
        )
        result = TurnResult(
            content=streamed.content,
            finish_reason=streamed.finish_reason or "stop",
            tool_calls=list(streamed.tool_calls),
            tool_results=list(streamed.tool_results),
            chat_id=chat_id,
            thinking_content=streamed.thinking,
            usage=streamed.usage,
        )
        return RoundOutcome(result=result, tool_calls=list(streamed.tool_calls), tool_results=list(streamed.tool_results))

    def _handle_non_streaming(
        self, raw: Dict[str, Any], options: TurnOptions, chat_id: str, log_ctx: Dict[str, Any]
    ) -> RoundOutcome:
        self.tracker.set_action("Parsing response")
        parsed = self.adapter.parse_response(raw)
        if parsed.thinking:
            self.tracker.add_thinking_content(parsed.thinking)
            if options.on_thinking:
                options.on_thinking(parsed.thinking)

        tool_results: List[ToolResult] = []
        if parsed.tool_calls:
            self.tracker.set_action("Processing tool calls")
            tool_results = self.tool_loop.invoke_all(parsed.tool_calls, chat_id, options.on_tool_call, log_ctx)

        result = TurnResult(
            content=parsed.content,
            finish_reason=parsed.finish_reason or ("tool_calls" if parsed.tool_calls else "stop"),
            tool_calls=list(parsed.tool_calls),
            tool_results=tool_results,
            chat_id=chat_id,
            thinking_content=parsed.thinking,
            usage=parsed.usage,
        )
        return RoundOutcome(result=result, tool_calls=list(parsed.tool_calls), tool_results=tool_results)

    def _complete_round(
        self, outcome: RoundOutcome, task: Optional[Task], chat_id: str, start: float, log_ctx: Dict[str, Any]
    ) -> RoundOutcome:
        """两条路径共用的收尾：写历史、记录事件、完成任务、停止思考状态。"""

        result = outcome.result
        duration_ms = int((time.perf_counter() - start) * 1000)

        if outcome.tool_calls:
            self.tracker.set_action("Sending tool results to model")
            self._append_message(
                chat_id,
                Message(role="assistant", content=result.content or None, tool_calls=list(outcome.tool_calls)),
                log_ctx,
            )
            for call, tool_result in zip(outcome.tool_calls, outcome.tool_results):
                self._append_message(
                    chat_id,
                    Message(role="tool", content=tool_result.to_message_content(), tool_call_id=call.id),
                    log_ctx,
                )
        elif result.content:
            self._append_message(chat_id, Message(role="assistant", content=result.content), log_ctx)

        if result.thinking_content:
            self.event_log.log_thinking(
                EventType.THINKING_UPDATED, chat_id, "Model reasoning", length=len(result.thinking_content)
            )
        self.event_log.log_assistant_completed(
            chat_id, result.content, duration_ms, finishReason=result.finish_reason
        )
        self.event_log.log_api_response(
            chat_id,
            self.config.api_url or "",
            200,
            duration_ms,
            contentLength=len(result.content or ""),
            toolCalls=len(outcome.tool_calls),
            finishReason=result.finish_reason,
        )
        self._update_task(task, "completed", log_ctx, output=result.content, duration_ms=duration_ms)
        self.tracker.stop_thinking()
        self.event_log.log_thinking(EventType.THINKING_STOPPED, chat_id)
        log_with_context(
            logging.INFO,
            "Completed round",
            log_ctx,
            duration_ms=duration_ms,
            finish_reason=result.finish_reason,
            tool_calls=len(outcome.tool_calls),
        )
        return outcome

    # ---- 失败与终止 ----

    def _handle_failure(self, failure: TurnFailure, state: RoundState, follow_up: bool) -> TurnResult:
        if failure.recoverable or follow_up:
            return TurnResult(
                content=user_facing_message(failure.error),
                finish_reason="error",
                error=failure.error,
                chat_id=state.chat_id,
            )
        raise failure.error

    def _precondition_failed(self, error: Exception, content: str, options: TurnOptions) -> TurnResult:
        log_with_context(logging.WARNING, "Turn rejected", {"chat_id": options.chat_id}, error=error_payload(error))
        if options.on_error:
            options.on_error(error)
        return TurnResult(content=content, finish_reason="error", error=error, chat_id=options.chat_id)

    def _max_rounds_result(self, state: RoundState, options: TurnOptions) -> TurnResult:
        error = ToolRoundLimitError(
            code="TOOL_MAX_ROUNDS_EXCEEDED",
            message=f"Maximum tool call rounds ({state.ceiling}) exceeded. This may indicate a tool calling loop.",
            max_tool_rounds=state.ceiling,
            current_round=state.round_index,
        )
        log_with_context(
            logging.WARNING,
            "Tool round limit reached",
            {"chat_id": state.chat_id, "round": state.round_index},
            ceiling=state.ceiling,
        )
        if options.on_error:
            options.on_error(error)
        return TurnResult(
            content=(
                f"I've reached the maximum number of tool calls ({state.ceiling}). "
                "Let me provide you with what I have so far instead of continuing the loop."
            ),
            finish_reason="max_rounds",
            error=error,
            chat_id=state.chat_id or None,
        )

    # ---- 会话与存储辅助 ----

    @staticmethod
    def _message_text(text: Any) -> str:
        if isinstance(text, str):
            return text
        if isinstance(text, Message):
            return text.content or ""
        if isinstance(text, dict):
            return str(text.get("content") or "")
        return str(text)

    @staticmethod
    def _user_message(text: Any) -> Message:
        if isinstance(text, Message):
            return text
        if isinstance(text, dict):
            return Message.from_dict(text)
        return Message(role="user", content=text)

    def _persist(self, action: Callable[..., Any], log_ctx: Dict[str, Any], *args: Any, **kwargs: Any) -> Any:
        """执行一次存储写入；配额耗尽时只记日志，本轮继续在内存中进行。"""

        try:
            return action(*args, **kwargs)
        except StorageQuotaExceeded as e:
            log_with_context(
                logging.WARNING,
                "Record not persisted, storage quota exceeded",
                log_ctx,
                storage_key=e.extra.get("storage_key"),
            )
            return None

    def _append_message(self, chat_id: str, message: Message, log_ctx: Dict[str, Any]) -> None:
        self._sessions.setdefault(chat_id, []).append(message)
        if self.config.use_history:
            if self._persist(self.chat_history.append, log_ctx, chat_id, message) is None:
                self._unpersisted_chats.add(chat_id)

    def _update_task(self, task: Optional[Task], status: str, log_ctx: Dict[str, Any], **patch: Any) -> None:
        if task is None:
            return
        self._persist(self.task_ledger.update_status, log_ctx, task.id, status, **patch)

    def _context_messages(self, chat_id: str) -> List[Message]:
        # 历史写入失败过的会话改用进程内消息，避免上下文缺少未落盘的消息
        if self.config.include_history and self.config.use_history and chat_id not in self._unpersisted_chats:
            return self.chat_history.context_window(chat_id, self.config.max_history_messages)
        return [m.for_context() for m in self._sessions.get(chat_id, [])]

    def get_session(self, chat_id: str) -> List[Message]:
        return list(self._sessions.get(chat_id, []))

    def clear_session(self, chat_id: Optional[str] = None) -> None:
        if chat_id is None:
            self._sessions.clear()
        else:
            self._sessions.pop(chat_id, None)

    # ---- 工具、指令与配置 ----

    def add_tool(self, tool: ToolDef, instruction_file: Union[str, Path, None] = None) -> ToolDef:
        return self.registry.register(tool, instruction_file)

    def add_tools(self, tools: Iterable[ToolDef]) -> List[Dict[str, Any]]:
        return self.registry.register_many(tools)

    def remove_tool(self, name: str) -> bool:
        return self.registry.remove(name)

    def set_instruction(self, text: str) -> str:
        return self.instruction.set_from_text(text)

    def load_instruction(self, path: Union[str, Path]) -> str:
        return self.instruction.load_from_file(path)

    def update_config(self, **changes: Any) -> OrchestratorConfig:
        self.config.update(**changes)
        if self._owns_adapter and _ADAPTER_FIELDS & set(changes):
            self.adapter = create_adapter(self.config)
        masked = {k: ("***" if k == "api_key" and v else v) for k, v in changes.items()}
        self.event_log.log_event(EventType.CONFIG_UPDATED, {"changes": masked})
        log_with_context(logging.INFO, "Configuration updated", {"provider": self.provider_name}, fields=sorted(changes))
        return self.config

    # ---- 状态与存储信息 ----

    def get_status(self) -> Dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "provider": self.provider_name,
            "session_count": len(self._sessions),
            "message_count": sum(len(m) for m in self._sessions.values()),
            "tool_count": self.registry.count(),
            "has_instruction": bool(self.instruction.text),
            "task_stats": self.task_ledger.stats(),
            "event_stats": self.event_log.stats(),
            "thinking_status": self.tracker.get_status(),
        }

    def storage_info(self) -> Dict[str, Any]:
        tasks = self.task_ledger.stats()
        events = self.event_log.stats()
        chats = self.chat_history.stats()
        total = tasks["bytes_used"] + events["bytes_used"] + chats["bytes_used"]
        return {
            "tasks": {"count": tasks["count"], "size_bytes": tasks["bytes_used"], "size_formatted": tasks["bytes_formatted"]},
            "events": {"count": events["count"], "size_bytes": events["bytes_used"], "size_formatted": events["bytes_formatted"]},
            "chat_histories": {
                "count": chats["count"],
                "messages": chats["total_messages"],
                "size_bytes": chats["bytes_used"],
                "size_formatted": chats["bytes_formatted"],
            },
            "total": {"size_bytes": total, "size_formatted": format_bytes(total)},
        }

    def clear_all_storage(self) -> None:
        """清空三个持久化存储以及进程内会话。"""

        self.task_ledger.clear()
        self.event_log.clear()
        self.chat_history.clear()
        self._sessions.clear()
        self._unpersisted_chats.clear()
        self.tracker.reset()
        log_with_context(logging.WARNING, "Cleared all storage", {"provider": self.provider_name})
