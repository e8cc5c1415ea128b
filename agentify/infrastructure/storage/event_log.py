"""只追加的事件日志。

事件是面向使用者的遥测数据（消息、工具、思考、API、流、系统五类），
与进程日志（infrastructure.logging）相互独立。记录事件永远不会打断一次 turn：
持久化失败只会写进程日志，然后把内存中的事件原样返回。
"""

import csv
import io
import json
import logging
import time
from collections import Counter
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import uuid4

from agentify.domain.exceptions import AgentError, StorageError
from agentify.domain.models import Event, parse_timestamp, utcnow
from agentify.infrastructure.logging.logger import log_with_context
from agentify.infrastructure.storage.bounded_store import ListRecordStore


MAX_STRING_LENGTH = 10000


class EventType(str, Enum):
    # 消息
    USER_MESSAGE_SENT = "user_message_sent"
    ASSISTANT_MESSAGE_STARTED = "assistant_message_started"
    ASSISTANT_MESSAGE_COMPLETED = "assistant_message_completed"
    ASSISTANT_TOKEN_RECEIVED = "assistant_token_received"
    # 工具
    TOOL_CALL_INITIATED = "tool_call_initiated"
    TOOL_CALL_COMPLETED = "tool_call_completed"
    TOOL_CALL_FAILED = "tool_call_failed"
    # 思考
    THINKING_STARTED = "thinking_started"
    THINKING_UPDATED = "thinking_updated"
    THINKING_STOPPED = "thinking_stopped"
    # API
    API_REQUEST_SENT = "api_request_sent"
    API_RESPONSE_RECEIVED = "api_response_received"
    API_REQUEST_FAILED = "api_request_failed"
    # 系统
    AGENT_INITIALIZED = "agent_initialized"
    CONFIG_UPDATED = "config_updated"
    ERROR_OCCURRED = "error_occurred"
    # 流
    STREAM_STARTED = "stream_started"
    STREAM_CHUNK_RECEIVED = "stream_chunk_received"
    STREAM_COMPLETED = "stream_completed"
    STREAM_ERROR = "stream_error"


def generate_event_id() -> str:
    return f"evt_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


def sanitize(value: Any) -> Any:
    """把任意载荷转换成 JSON 安全的结构，超长字符串截断，异常展开为字典。"""

    if isinstance(value, BaseException):
        data: Dict[str, Any] = {"name": type(value).__name__, "message": str(value)}
        if isinstance(value, AgentError):
            data.update(message=value.message, code=value.code, details=sanitize(value.extra))
        return data
    if isinstance(value, str):
        if len(value) > MAX_STRING_LENGTH:
            return value[:MAX_STRING_LENGTH] + "... [truncated]"
        return value
    if isinstance(value, Enum):
        return sanitize(value.value)
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if is_dataclass(value) and not isinstance(value, type):
        return sanitize(asdict(value))
    if isinstance(value, dict):
        return {str(k): sanitize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [sanitize(v) for v in value]
    return str(value)


def summarize(event_type: str, data: Dict[str, Any]) -> str:
    if event_type == EventType.USER_MESSAGE_SENT:
        return f"User sent message ({data.get('messageLength', 0)} chars)"
    if event_type == EventType.ASSISTANT_MESSAGE_COMPLETED:
        return f"Assistant replied ({data.get('messageLength', 0)} chars)"
    if event_type == EventType.TOOL_CALL_COMPLETED:
        return f"Tool {data.get('toolName')} executed"
    if event_type == EventType.TOOL_CALL_FAILED:
        return f"Tool {data.get('toolName')} failed"
    if event_type == EventType.ERROR_OCCURRED:
        return f"Error: {data.get('error')}"
    return str(event_type)


class EventLog(ListRecordStore):
    storage_key = "agentify_events"
    default_cap = 5000
    default_compression_threshold = 3000

    def log_event(
        self,
        event_type: Union[EventType, str],
        data: Optional[Dict[str, Any]] = None,
        chat_id: Optional[str] = None,
    ) -> Event:
        now = time.time()
        event = Event(
            id=generate_event_id(),
            type=str(getattr(event_type, "value", event_type)),
            timestamp=utcnow(),
            unix_timestamp=int(now * 1000),
            chat_id=chat_id,
            data=sanitize(data or {}),
        )
        try:
            events = self._load()
            events.append(event.to_dict())
            self._save(events)
        except StorageError as e:
            log_with_context(
                logging.WARNING,
                "Failed to persist event",
                self._log_ctx,
                event_type=event.type,
                chat_id=chat_id,
                error=e.to_dict(),
            )
        return event

    # ---- 语义化的记录方法 ----

    def log_user_message(self, chat_id: str, message: str, **metadata: Any) -> Event:
        return self.log_event(
            EventType.USER_MESSAGE_SENT,
            {"message": message, "messageLength": len(message or ""), "metadata": metadata},
            chat_id,
        )

    def log_assistant_started(self, chat_id: str, **metadata: Any) -> Event:
        return self.log_event(
            EventType.ASSISTANT_MESSAGE_STARTED,
            {"startTime": utcnow(), "metadata": metadata},
            chat_id,
        )

    def log_assistant_completed(
        self, chat_id: str, message: str, duration_ms: Optional[int] = None, **metadata: Any
    ) -> Event:
        return self.log_event(
            EventType.ASSISTANT_MESSAGE_COMPLETED,
            {
                "message": message,
                "messageLength": len(message or ""),
                "duration": duration_ms,
                "endTime": utcnow(),
                "metadata": metadata,
            },
            chat_id,
        )

    def log_token(self, chat_id: str, token: str, position: Optional[int] = None) -> Event:
        return self.log_event(
            EventType.ASSISTANT_TOKEN_RECEIVED,
            {"token": token, "tokenLength": len(token), "position": position},
            chat_id,
        )

    def log_tool_call(
        self,
        event_type: EventType,
        chat_id: Optional[str],
        tool_name: str,
        parameters: Any,
        success: Optional[bool] = None,
        result: Any = None,
        error: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> Event:
        """工具发起/完成/失败三类事件共用同一载荷结构。"""

        return self.log_event(
            event_type,
            {
                "toolName": tool_name,
                "parameters": parameters,
                "success": success,
                "result": result,
                "error": error,
                "duration": duration_ms,
            },
            chat_id,
        )

    def log_api_request(self, chat_id: str, endpoint: str, method: str, body: Any, **metadata: Any) -> Event:
        body = sanitize(body)
        return self.log_event(
            EventType.API_REQUEST_SENT,
            {
                "endpoint": endpoint,
                "method": method,
                "body": body,
                "bodySize": len(json.dumps(body, ensure_ascii=False)),
                "metadata": metadata,
            },
            chat_id,
        )

    def log_api_response(
        self, chat_id: str, endpoint: str, status_code: int, duration_ms: Optional[int] = None, **metadata: Any
    ) -> Event:
        return self.log_event(
            EventType.API_RESPONSE_RECEIVED,
            {"endpoint": endpoint, "statusCode": status_code, "duration": duration_ms, "metadata": metadata},
            chat_id,
        )

    def log_api_request_failed(self, chat_id: str, endpoint: str, error: BaseException) -> Event:
        return self.log_event(
            EventType.API_REQUEST_FAILED,
            {
                "endpoint": endpoint,
                "error": getattr(error, "message", None) or str(error),
                "errorCode": getattr(error, "code", None),
                "errorDetails": sanitize(getattr(error, "extra", {})),
            },
            chat_id,
        )

    def log_thinking(self, event_type: EventType, chat_id: str, action: Optional[str] = None, **metadata: Any) -> Event:
        return self.log_event(event_type, {"action": action, "metadata": metadata}, chat_id)

    def log_error(self, chat_id: Optional[str], error: BaseException, context: str = "", **metadata: Any) -> Event:
        return self.log_event(
            EventType.ERROR_OCCURRED,
            {
                "error": getattr(error, "message", None) or str(error),
                "errorType": type(error).__name__,
                "errorCode": getattr(error, "code", None),
                "errorDetails": sanitize(getattr(error, "extra", {})),
                "context": context,
                "metadata": metadata,
            },
            chat_id,
        )

    # ---- 查询 ----

    def list(
        self,
        type: Union[str, Iterable[str], None] = None,
        chat_id: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        search: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        events = [Event.from_dict(d) for d in self._load()]
        if type:
            wanted = {type} if isinstance(type, str) else {str(getattr(t, "value", t)) for t in type}
            events = [e for e in events if e.type in wanted]
        if chat_id:
            events = [e for e in events if e.chat_id == chat_id]
        if since:
            since_dt = parse_timestamp(since)
            events = [e for e in events if parse_timestamp(e.timestamp) >= since_dt]
        if until:
            until_dt = parse_timestamp(until)
            events = [e for e in events if parse_timestamp(e.timestamp) <= until_dt]
        if search:
            needle = search.lower()
            events = [
                e for e in events
                if needle in e.type or needle in json.dumps(e.data, ensure_ascii=False).lower()
            ]
        if limit:
            events = events[-limit:]
        return events

    def get_event(self, event_id: str) -> Optional[Event]:
        for data in self._load():
            if data.get("id") == event_id:
                return Event.from_dict(data)
        return None

    def chat_ids(self) -> List[str]:
        seen: Dict[str, None] = {}
        for data in self._load():
            if data.get("chat_id"):
                seen.setdefault(data["chat_id"], None)
        return list(seen)

    def chat_timeline(self, chat_id: str) -> List[Dict[str, Any]]:
        return [
            {
                "id": e.id,
                "type": e.type,
                "timestamp": e.timestamp,
                "summary": e.data.get("summary") if e.compressed else summarize(e.type, e.data),
                "data": e.data,
            }
            for e in self.list(chat_id=chat_id)
        ]

    def count(self) -> int:
        return len(self._load())

    # ---- 删除 ----

    def delete_by_chat(self, chat_id: str) -> int:
        events = self._load()
        remaining = [d for d in events if d.get("chat_id") != chat_id]
        self._save(remaining)
        return len(events) - len(remaining)

    def delete_older_than(self, cutoff: str) -> int:
        cutoff_dt = parse_timestamp(cutoff)
        events = self._load()
        remaining = [d for d in events if parse_timestamp(d["timestamp"]) >= cutoff_dt]
        self._save(remaining)
        return len(events) - len(remaining)

    # ---- 压缩与统计 ----

    def _compress_record(self, record: Dict[str, Any]) -> bool:
        if record.get("compressed") or not record.get("data"):
            return False
        # type / chat_id / timestamp 已在记录顶层，压缩后只留摘要
        compressed = {"summary": summarize(record.get("type", ""), record["data"])}
        if len(self._dumps(compressed)) >= len(self._dumps(record["data"])):
            return False
        record["data"] = compressed
        record["compressed"] = True
        return True

    def stats(self) -> Dict[str, Any]:
        result = super().stats()
        events = self._load()
        chat_ids = self.chat_ids()
        result.update(
            type_counts=dict(Counter(e.get("type") for e in events)),
            unique_chat_ids=len(chat_ids),
            chat_ids=chat_ids,
            oldest=events[0].get("timestamp") if events else None,
            newest=events[-1].get("timestamp") if events else None,
        )
        return result

    def export(self, fmt: str = "json", **filters: Any) -> str:
        events = self.list(**filters)
        fmt = fmt.lower()
        if fmt == "csv":
            buf = io.StringIO()
            writer = csv.writer(buf, lineterminator="\n")
            writer.writerow(["id", "type", "chat_id", "timestamp", "data"])
            for e in events:
                writer.writerow([e.id, e.type, e.chat_id or "", e.timestamp, json.dumps(e.data, ensure_ascii=False)])
            return buf.getvalue().rstrip("\n")
        if fmt == "text":
            return "\n".join(
                f"[{e.timestamp}] {e.type} ({e.chat_id or '-'}): {summarize(e.type, e.data)}" for e in events
            )
        return json.dumps([e.to_dict() for e in events], ensure_ascii=False, indent=2)
