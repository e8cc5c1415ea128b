"""统一的对话、记录与编排结果数据模型。

本模块定义了编排层与三个持久化存储之间共享的标准数据结构：

- Message: 一条对话消息（user/assistant/tool/system），保留 tool_calls / tool_call_id。
- Task: 每一轮编排对应的任务记录。
- Event: 只追加的遥测事件。
- ChatHistoryRecord: 一个会话的完整消息列表与元数据。
- RoundState / TurnOptions / TurnResult: 编排过程中的瞬态结构，不持久化。

持久化时统一通过 to_dict / from_dict 转换为 JSON 友好的字典。
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

from agentify.tools.definitions import ToolCall, ToolResult


Role = Literal["system", "user", "assistant", "tool"]
TaskStatus = Literal["pending", "running", "completed", "failed"]
FinishReason = Literal["stop", "tool_calls", "length", "error", "max_rounds"]


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class Message:
    """一条对话消息。

    - content: 文本内容，assistant 携带工具调用时允许为 None。
    - tool_calls: role 为 assistant 且模型触发工具调用时的调用列表。
    - tool_call_id: role 为 tool 时关联的工具调用 id。
    - timestamp / message_id: 写入历史时由 ChatHistoryStore 分配。
    """

    role: Role
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    timestamp: Optional[str] = None
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.timestamp:
            data["timestamp"] = self.timestamp
        if self.message_id:
            data["message_id"] = self.message_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        raw_calls = data.get("tool_calls") or []
        return cls(
            role=data.get("role") or "user",
            content=data.get("content"),
            tool_calls=[ToolCall.from_dict(c) for c in raw_calls] or None,
            tool_call_id=data.get("tool_call_id"),
            timestamp=data.get("timestamp"),
            message_id=data.get("message_id"),
        )

    def for_context(self) -> "Message":
        """去掉存储元数据，只保留发给模型的协议字段。"""

        return Message(
            role=self.role,
            content=self.content,
            tool_calls=list(self.tool_calls) if self.tool_calls else None,
            tool_call_id=self.tool_call_id,
        )


@dataclass
class Task:
    """一轮编排（或工具回填轮次）的任务记录。"""

    id: str
    title: str
    status: TaskStatus = "pending"
    type: str = "chat"
    description: Optional[str] = None
    chat_id: Optional[str] = None
    input: Optional[str] = None
    output: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    duration_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    compressed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(**_known_fields(cls, data))


@dataclass
class Event:
    """一条遥测事件，除驱逐时的有损压缩外不可变。"""

    id: str
    type: str
    timestamp: str
    unix_timestamp: int
    chat_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    compressed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        return cls(**_known_fields(cls, data))


@dataclass
class ChatMetadata:
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)
    message_count: int = 0
    compressed: bool = False


@dataclass
class ChatHistoryRecord:
    """一个会话的完整历史。"""

    chat_id: str
    messages: List[Message] = field(default_factory=list)
    metadata: ChatMetadata = field(default_factory=ChatMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "messages": [m.to_dict() for m in self.messages],
            "metadata": asdict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatHistoryRecord":
        meta = data.get("metadata") or {}
        return cls(
            chat_id=str(data.get("chat_id") or ""),
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            metadata=ChatMetadata(**_known_fields(ChatMetadata, meta)),
        )


@dataclass
class RoundState:
    """工具循环的轮次状态，只在一次 turn() 内部传递。"""

    chat_id: str
    round_index: int = 0
    ceiling: int = 10

    @property
    def exhausted(self) -> bool:
        return self.round_index >= self.ceiling

    @property
    def is_follow_up(self) -> bool:
        return self.round_index > 0

    def next(self) -> "RoundState":
        return RoundState(chat_id=self.chat_id, round_index=self.round_index + 1, ceiling=self.ceiling)


@dataclass
class TurnOptions:
    """turn() 的可选参数。

    以下划线语义的 is_tool_follow_up / tool_round 仅供内部续轮使用。
    """

    on_token: Optional[Callable[[str], None]] = None
    on_tool_call: Optional[Callable[[ToolCall], None]] = None
    on_thinking: Optional[Callable[[str], None]] = None
    on_complete: Optional[Callable[["TurnResult"], None]] = None
    on_error: Optional[Callable[[BaseException], None]] = None
    chat_id: Optional[str] = None
    max_tool_rounds: Optional[int] = None
    is_tool_follow_up: bool = False
    tool_round: int = 0


@dataclass
class TurnResult:
    """一次 turn() 的最终结果，调用方总能拿到可渲染的 content。"""

    content: str
    finish_reason: str = "stop"
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[ToolResult] = field(default_factory=list)
    error: Optional[BaseException] = None
    chat_id: Optional[str] = None
    thinking_content: str = ""
    usage: Optional[Dict[str, Any]] = None
