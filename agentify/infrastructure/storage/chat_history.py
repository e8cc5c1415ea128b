"""按会话保存的消息历史。

blob 结构为 {chat_id: ChatHistoryRecord}，字典顺序即“最近更新”顺序（最旧在前）。
容量：最多 cap 个会话、每个会话最多 max_messages 条消息；超出时按 updated_at
淘汰最久未更新的会话，单个会话只保留最新的消息。
"""

import json
import time
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import uuid4

from agentify.domain.exceptions import ValidationError
from agentify.domain.models import ChatHistoryRecord, Message, parse_timestamp, utcnow
from agentify.infrastructure.storage.bounded_store import BoundedRecordStore


COMPRESSED_SUFFIX = "... [compressed]"
_KEEP_CHARS = 100
_EPOCH = "1970-01-01T00:00:00Z"

Histories = Dict[str, Dict[str, Any]]


def generate_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


class ChatHistoryStore(BoundedRecordStore[Histories]):
    storage_key = "agentify_chat_history"
    default_cap = 50
    default_compression_threshold = 20

    def __init__(self, backend=None, cap=None, compression_threshold=None, max_messages: int = 100, storage_key=None):
        super().__init__(backend, cap, compression_threshold, storage_key)
        self.max_messages = max_messages

    # ---- 容器钩子 ----

    def _empty(self) -> Histories:
        return {}

    def _count(self, data: Histories) -> int:
        return len(data)

    def _trim(self, data: Histories) -> int:
        for record in data.values():
            messages = record.setdefault("messages", [])
            if len(messages) > self.max_messages:
                record["messages"] = messages[-self.max_messages:]
            record.setdefault("metadata", {})["message_count"] = len(record["messages"])
        overflow = len(data) - self.cap
        if overflow <= 0:
            return 0
        for chat_id in self._by_recency(data)[:overflow]:
            del data[chat_id]
        return overflow

    def _compress(self, data: Histories) -> int:
        if len(data) <= self.compression_threshold:
            return 0
        keep = self.compression_threshold // 2
        ordered = self._by_recency(data)
        count = 0
        for chat_id in ordered[: len(ordered) - keep]:
            record = data[chat_id]
            changed = False
            for message in record.get("messages", []):
                content = message.get("content")
                if isinstance(content, str) and len(content) > _KEEP_CHARS + len(COMPRESSED_SUFFIX):
                    message["content"] = content[:_KEEP_CHARS] + COMPRESSED_SUFFIX
                    changed = True
            if changed:
                record.setdefault("metadata", {})["compressed"] = True
                count += 1
        return count

    @staticmethod
    def _by_recency(data: Histories) -> List[str]:
        """最久未更新的排在最前；updated_at 相同时保持字典顺序。"""

        def updated_at(chat_id: str):
            meta = data[chat_id].get("metadata") or {}
            return parse_timestamp(meta.get("updated_at") or _EPOCH)

        return sorted(data, key=updated_at)

    # ---- 写入 ----

    def append(self, chat_id: str, message: Message) -> Message:
        """追加一条消息，分配 timestamp / message_id 后返回带元数据的副本。"""

        if not chat_id:
            raise ValidationError(code="SYS_INVALID_PARAMETER", message="chat_id is required")
        histories = self._load()
        record = histories.pop(chat_id, None) or ChatHistoryRecord(chat_id=chat_id).to_dict()
        stored = Message(
            role=message.role,
            content=message.content,
            tool_calls=message.tool_calls,
            tool_call_id=message.tool_call_id,
            timestamp=utcnow(),
            message_id=generate_message_id(),
        )
        record["messages"].append(stored.to_dict())
        record["metadata"]["updated_at"] = stored.timestamp
        record["metadata"]["message_count"] = len(record["messages"])
        histories[chat_id] = record
        self._save(histories)
        return stored

    def append_many(self, chat_id: str, messages: Iterable[Message]) -> List[Message]:
        return [self.append(chat_id, m) for m in messages]

    def replace_history(self, chat_id: str, messages: Iterable[Message]) -> ChatHistoryRecord:
        histories = self._load()
        old = histories.pop(chat_id, None)
        record = ChatHistoryRecord(chat_id=chat_id)
        if old:
            record.metadata.created_at = old.get("metadata", {}).get("created_at") or record.metadata.created_at
        for m in messages:
            record.messages.append(
                Message(
                    role=m.role,
                    content=m.content,
                    tool_calls=m.tool_calls,
                    tool_call_id=m.tool_call_id,
                    timestamp=m.timestamp or utcnow(),
                    message_id=m.message_id or generate_message_id(),
                )
            )
        record.metadata.message_count = len(record.messages)
        histories[chat_id] = record.to_dict()
        self._save(histories)
        return record

    def clear_chat(self, chat_id: str) -> bool:
        histories = self._load()
        if chat_id not in histories:
            return False
        del histories[chat_id]
        self._save(histories)
        return True

    # ---- 读取 ----

    def get_history(self, chat_id: str) -> ChatHistoryRecord:
        data = self._load().get(chat_id)
        if data is None:
            return ChatHistoryRecord(chat_id=chat_id)
        return ChatHistoryRecord.from_dict(data)

    def get_messages(
        self,
        chat_id: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        role: Optional[str] = None,
    ) -> List[Message]:
        messages = self.get_history(chat_id).messages
        if limit and limit > 0:
            messages = messages[-limit:]
        if offset and offset > 0:
            messages = messages[offset:]
        if role:
            messages = [m for m in messages if m.role == role]
        return messages

    def last_messages(self, chat_id: str, count: int = 10) -> List[Message]:
        return self.get_history(chat_id).messages[-count:]

    def search(self, chat_id: str, query: str, role: Optional[str] = None, limit: Optional[int] = None) -> List[Message]:
        needle = query.lower()
        results = [m for m in self.get_history(chat_id).messages if needle in (m.content or "").lower()]
        if role:
            results = [m for m in results if m.role == role]
        if limit:
            results = results[:limit]
        return results

    def context_window(self, chat_id: str, max_messages: Optional[int] = None) -> List[Message]:
        """最近 max_messages 条消息（None 表示全部），保留 tool_calls / tool_call_id。"""

        messages = self.get_history(chat_id).messages
        if max_messages and max_messages > 0:
            messages = messages[-max_messages:]
        return [m.for_context() for m in messages]

    def chat_ids(self) -> List[str]:
        return list(self._load())

    def exists(self, chat_id: str) -> bool:
        return chat_id in self._load()

    def message_count(self, chat_id: str) -> int:
        return len(self.get_history(chat_id).messages)

    def count(self) -> int:
        return len(self._load())

    # ---- 导入导出 ----

    def export(self, chat_id: str, fmt: str = "json") -> str:
        history = self.get_history(chat_id)
        fmt = fmt.lower()
        if fmt == "text":
            parts = [
                f"Chat ID: {history.chat_id}",
                f"Created: {history.metadata.created_at}",
                f"Messages: {history.metadata.message_count}",
                "=" * 60,
                "",
            ]
            for i, m in enumerate(history.messages, 1):
                parts += [f"[{i}] {m.role.upper()}", f"Time: {m.timestamp}", f"Content: {m.content or ''}", "-" * 60, ""]
            return "\n".join(parts)
        if fmt == "markdown":
            parts = [
                f"# Chat: {history.chat_id}",
                "",
                f"**Created:** {history.metadata.created_at}  ",
                f"**Messages:** {history.metadata.message_count}",
                "",
                "---",
                "",
            ]
            for i, m in enumerate(history.messages, 1):
                body = m.content
                if body is None and m.tool_calls:
                    calls = [c.to_dict() for c in m.tool_calls]
                    body = "```json\n" + json.dumps(calls, ensure_ascii=False, indent=2) + "\n```"
                parts += [f"### Message {i} - {m.role}", "", f"*{m.timestamp}*", "", body or "", "", "---", ""]
            return "\n".join(parts)
        return json.dumps(history.to_dict(), ensure_ascii=False, indent=2)

    def import_history(self, chat_id: str, data: Union[str, Dict[str, Any]]) -> ChatHistoryRecord:
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as e:
                raise ValidationError(code="SYS_VALIDATION_FAILED", message=f"Invalid chat history JSON: {e}")
        if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
            raise ValidationError(code="SYS_VALIDATION_FAILED", message="Chat history must contain a messages list")
        imported = ChatHistoryRecord.from_dict(data)
        return self.replace_history(chat_id, imported.messages)

    def merge(self, target_chat_id: str, source_chat_ids: Iterable[str]) -> ChatHistoryRecord:
        """把多个会话合并进目标会话，按消息时间排序。"""

        histories = self._load()
        target = self.get_history(target_chat_id)
        for source_id in source_chat_ids:
            source = histories.get(source_id)
            if source is None:
                continue
            target.messages.extend(ChatHistoryRecord.from_dict(source).messages)
        target.messages.sort(key=lambda m: parse_timestamp(m.timestamp or _EPOCH))
        return self.replace_history(target_chat_id, target.messages)

    def stats(self) -> Dict[str, Any]:
        result = super().stats()
        histories = self._load()
        total = sum(len(r.get("messages", [])) for r in histories.values())
        result.update(
            total_messages=total,
            chat_ids=list(histories),
            average_messages_per_chat=round(total / len(histories)) if histories else 0,
        )
        return result
