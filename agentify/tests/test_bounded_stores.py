import json
import tempfile
from pathlib import Path

import pytest

from agentify.domain.exceptions import StorageError, StorageQuotaExceeded
from agentify.domain.models import Message, Task
from agentify.infrastructure.storage.backends import FileBlobBackend, MemoryBlobBackend
from agentify.infrastructure.storage.chat_history import ChatHistoryStore
from agentify.infrastructure.storage.event_log import EventLog, EventType
from agentify.infrastructure.storage.task_ledger import TaskLedger
from agentify.tools.definitions import ToolCall


def test_task_ledger_trims_oldest_only_past_cap():
    ledger = TaskLedger(MemoryBlobBackend(), cap=3)
    ids = [ledger.create_task(f"t{i}").id for i in range(3)]
    assert [t.id for t in ledger.list()] == ids

    fourth = ledger.create_task("t3")
    remaining = [t.id for t in ledger.list()]
    assert remaining == ids[1:] + [fourth.id]
    assert ledger.count() == 3


def test_task_ledger_status_transitions():
    ledger = TaskLedger(MemoryBlobBackend())
    task = ledger.create_task("chat", chat_id="chat_1", input="hi")
    assert task.status == "pending"

    running = ledger.update_status(task.id, "running")
    assert running.started_at is not None
    done = ledger.update_status(task.id, "completed", output="ok", duration_ms=12)
    assert done.ended_at is not None
    assert ledger.get_task(task.id).output == "ok"
    assert ledger.list(status="completed", chat_id="chat_1")[0].id == task.id

    with pytest.raises(StorageError) as exc:
        ledger.update("missing", status="failed")
    assert exc.value.code == "STG_NOT_FOUND"


def test_compression_runs_only_on_quota_failure_and_keeps_ids():
    backend = MemoryBlobBackend()
    ledger = TaskLedger(backend, cap=100, compression_threshold=4)
    for i in range(6):
        ledger.append(Task(id="", title=f"t{i}", input="x" * 500, output="y" * 500))
    before = ledger.list()
    assert not any(t.compressed for t in before)

    size_before = backend.size(ledger.storage_key)
    backend.quota_bytes = size_before + 50
    added = ledger.append(Task(id="", title="big", input="z" * 400))

    after = ledger.list()
    assert len(after) == 7
    assert [t.id for t in after] == [t.id for t in before] + [added.id]
    # 保留最新的 threshold // 2 条不压缩
    assert [t.compressed for t in after] == [True] * 5 + [False] * 2
    assert after[0].input.endswith("... [compressed]")
    assert backend.size(ledger.storage_key) < size_before + len("z" * 400)


def test_quota_exceeded_after_compression_raises():
    backend = MemoryBlobBackend(quota_bytes=20)
    ledger = TaskLedger(backend)
    with pytest.raises(StorageQuotaExceeded) as exc:
        ledger.create_task("too big for the quota")
    assert exc.value.code == "STG_QUOTA_EXCEEDED"
    # 首次写入 + 压缩后重试一次
    assert backend.write_attempts == 2


def test_chat_history_evicts_least_recently_updated_chat():
    store = ChatHistoryStore(MemoryBlobBackend())
    for i in range(50):
        store.append(f"chat_{i}", Message(role="user", content=f"hello {i}"))
    store.append("chat_0", Message(role="assistant", content="still here"))
    assert store.count() == 50

    store.append("chat_50", Message(role="user", content="new"))
    ids = store.chat_ids()
    assert len(ids) == 50
    assert "chat_1" not in ids
    assert "chat_0" in ids
    assert "chat_50" in ids


def test_chat_history_caps_messages_per_chat():
    store = ChatHistoryStore(MemoryBlobBackend(), max_messages=3)
    for i in range(5):
        store.append("c", Message(role="user", content=str(i)))
    assert [m.content for m in store.get_history("c").messages] == ["2", "3", "4"]
    assert store.get_history("c").metadata.message_count == 3


def test_context_window_round_trip_keeps_tool_fields():
    store = ChatHistoryStore(MemoryBlobBackend())
    call = ToolCall(id="call_1", name="calculator", arguments={"expr": "2+2"})
    sent = [
        Message(role="user", content="2+2?"),
        Message(role="assistant", content=None, tool_calls=[call]),
        Message(role="tool", content='{"result":4}', tool_call_id="call_1"),
        Message(role="assistant", content="4"),
    ]
    store.append_many("c", sent)

    window = store.context_window("c", None)
    assert window == sent
    assert window[1].tool_calls[0].arguments == {"expr": "2+2"}
    assert store.context_window("c", 2) == sent[-2:]


def test_chat_history_export_import_and_merge():
    store = ChatHistoryStore(MemoryBlobBackend())
    store.append("a", Message(role="user", content="first"))
    store.append("b", Message(role="user", content="second"))

    exported = store.export("a", "json")
    store.import_history("copy", exported)
    assert [m.content for m in store.get_history("copy").messages] == ["first"]

    merged = store.merge("merged", ["a", "b", "missing"])
    assert [m.content for m in merged.messages] == ["first", "second"]
    assert "### Message 1 - user" in store.export("a", "markdown")
    assert store.search("b", "SEC")[0].content == "second"


def test_event_log_never_raises_on_quota():
    backend = MemoryBlobBackend(quota_bytes=10)
    log = EventLog(backend)
    event = log.log_user_message("chat_1", "hello")
    assert event.type == EventType.USER_MESSAGE_SENT.value
    assert log.count() == 0


def test_event_log_filters_and_compression():
    log = EventLog(MemoryBlobBackend(), compression_threshold=2)
    log.log_user_message("c1", "a" * 20000)
    log.log_tool_call(EventType.TOOL_CALL_FAILED, "c1", "calc", {"x": 1}, success=False, error="boom")
    log.log_user_message("c2", "hi")

    stored = log.list(chat_id="c1")
    assert stored[0].data["message"].endswith("... [truncated]")
    assert [e.type for e in log.list(type=[EventType.TOOL_CALL_FAILED])] == ["tool_call_failed"]
    assert log.chat_ids() == ["c1", "c2"]

    data = log._load()
    assert log._compress(data) == 2
    assert data[0]["compressed"] is True
    assert "summary" in data[0]["data"]
    assert data[-1].get("compressed") is False

    assert log.delete_by_chat("c1") == 2
    assert log.count() == 1


def test_file_backend_persists_across_instances():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        TaskLedger(FileBlobBackend(root)).create_task("persisted")
        ledger = TaskLedger(FileBlobBackend(root))
        assert [t.title for t in ledger.list()] == ["persisted"]
        raw = json.loads((root / "agentify_tasks.json").read_text(encoding="utf-8"))
        assert raw[0]["title"] == "persisted"


def test_corrupted_blob_raises_storage_error():
    backend = MemoryBlobBackend()
    backend.write("agentify_tasks", "{not json")
    with pytest.raises(StorageError) as exc:
        TaskLedger(backend).list()
    assert exc.value.code == "STG_READ_FAILED"


def test_event_compression_never_grows_small_events():
    log = EventLog(MemoryBlobBackend(), compression_threshold=4)
    for _ in range(10):
        log.log_thinking(EventType.THINKING_STOPPED, "c1")
    data = log._load()
    before = len(log._dumps(data))
    assert log._compress(data) == 0
    assert len(log._dumps(data)) == before


def test_event_log_quota_failure_compresses_and_retries():
    backend = MemoryBlobBackend()
    log = EventLog(backend, compression_threshold=4)
    for i in range(10):
        if i % 2 == 0:
            log.log_tool_call(EventType.TOOL_CALL_COMPLETED, "c1", "calc", {"x": i}, success=True, result="r" * 300)
        else:
            log.log_thinking(EventType.THINKING_STOPPED, "c1")
    size_before = backend.size(log.storage_key)
    backend.quota_bytes = size_before + 50

    added = log.log_user_message("c1", "x" * 200)
    events = log.list()
    assert log.count() == 11
    assert events[-1].id == added.id
    assert backend.size(log.storage_key) < size_before
    # 大的工具事件只剩摘要，本身很小的思考事件保持原样
    assert [e.compressed for e in events[:9]] == [True, False] * 4 + [True]
    assert events[0].data == {"summary": "Tool calc executed"}
    assert events[1].data == {"action": None, "metadata": {}}
    assert events[-1].data["message"] == "x" * 200


def test_chat_history_quota_failure_compresses_oldest_chats():
    backend = MemoryBlobBackend()
    store = ChatHistoryStore(backend)
    for i in range(22):
        store.append(f"chat_{i}", Message(role="user", content=f"{i}:" + "m" * 300))
    ids_before = {c: [m.message_id for m in store.get_history(c).messages] for c in store.chat_ids()}
    size_before = backend.size(store.storage_key)
    backend.quota_bytes = size_before + 50

    store.append("chat_22", Message(role="user", content="n" * 300))
    assert store.count() == 23
    assert backend.size(store.storage_key) < size_before
    for chat_id, message_ids in ids_before.items():
        assert [m.message_id for m in store.get_history(chat_id).messages] == message_ids

    # 超过阈值 20 时只压缩最久未更新的会话，保留最新的 10 个
    for i in range(13):
        record = store.get_history(f"chat_{i}")
        assert record.metadata.compressed is True
        assert record.messages[0].content.endswith("... [compressed]")
        assert record.messages[0].content.startswith(f"{i}:")
    for i in range(13, 23):
        record = store.get_history(f"chat_{i}")
        assert record.metadata.compressed is False
        assert not record.messages[0].content.endswith("... [compressed]")


def test_event_timeline_tokens_and_age_deletion():
    log = EventLog(MemoryBlobBackend())
    log.log_user_message("c1", "hi")
    token = log.log_token("c1", "tok", position=3)
    log.log_user_message("c2", "other")

    assert token.data == {"token": "tok", "tokenLength": 3, "position": 3}
    timeline = log.chat_timeline("c1")
    assert [t["summary"] for t in timeline] == ["User sent message (2 chars)", "assistant_token_received"]

    assert log.delete_older_than("2000-01-01T00:00:00Z") == 0
    assert log.delete_older_than("2999-01-01T00:00:00Z") == 3
    assert log.count() == 0
