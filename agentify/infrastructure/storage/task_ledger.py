"""任务台账：每轮编排（含工具回填轮次）对应一条 Task 记录。"""

import csv
import io
import json
import time
from collections import Counter
from typing import Any, Dict, List, Optional
from uuid import uuid4

from agentify.domain.exceptions import StorageError, ValidationError
from agentify.domain.models import Task, parse_timestamp, utcnow
from agentify.infrastructure.storage.bounded_store import ListRecordStore


COMPRESSED_SUFFIX = "... [compressed]"
_KEEP_CHARS = 100


def generate_task_id() -> str:
    return f"task_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


class TaskLedger(ListRecordStore):
    storage_key = "agentify_tasks"
    default_cap = 1000
    default_compression_threshold = 500

    def append(self, task: Task) -> Task:
        """追加一条任务，缺失的 id / 时间戳在这里补齐。"""

        if not task.id:
            task.id = generate_task_id()
        now = utcnow()
        task.created_at = task.created_at or now
        task.updated_at = now
        tasks = self._load()
        tasks.append(task.to_dict())
        self._save(tasks)
        return task

    def create_task(
        self,
        title: str,
        type: str = "chat",
        chat_id: Optional[str] = None,
        input: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Task:
        task = Task(
            id=generate_task_id(),
            title=title,
            type=type,
            chat_id=chat_id,
            input=input,
            description=description,
            metadata=dict(metadata or {}),
        )
        return self.append(task)

    def update(self, task_id: str, **patch: Any) -> Task:
        tasks = self._load()
        for index, data in enumerate(tasks):
            if data.get("id") == task_id:
                break
        else:
            raise StorageError(code="STG_NOT_FOUND", message=f"Task not found: {task_id}", http_status=404)
        unknown = set(patch) - set(Task.__dataclass_fields__)
        if unknown:
            raise ValidationError(
                code="SYS_INVALID_PARAMETER",
                message=f"Unknown task fields: {', '.join(sorted(unknown))}",
            )
        updated = dict(data)
        updated.update(patch)
        updated["updated_at"] = utcnow()
        tasks[index] = updated
        self._save(tasks)
        return Task.from_dict(updated)

    def update_status(self, task_id: str, status: str, **patch: Any) -> Task:
        if status == "running":
            patch.setdefault("started_at", utcnow())
        elif status in ("completed", "failed"):
            patch.setdefault("ended_at", utcnow())
        return self.update(task_id, status=status, **patch)

    def list(
        self,
        status: Optional[str] = None,
        type: Optional[str] = None,
        chat_id: Optional[str] = None,
        since: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Task]:
        tasks = [Task.from_dict(d) for d in self._load()]
        if status:
            tasks = [t for t in tasks if t.status == status]
        if type:
            tasks = [t for t in tasks if t.type == type]
        if chat_id:
            tasks = [t for t in tasks if t.chat_id == chat_id]
        if since:
            since_dt = parse_timestamp(since)
            tasks = [t for t in tasks if parse_timestamp(t.created_at) >= since_dt]
        if limit:
            tasks = tasks[-limit:]
        return tasks

    def get_task(self, task_id: str) -> Task:
        for data in self._load():
            if data.get("id") == task_id:
                return Task.from_dict(data)
        raise StorageError(code="STG_NOT_FOUND", message=f"Task not found: {task_id}", http_status=404)

    def delete_task(self, task_id: str) -> bool:
        tasks = self._load()
        remaining = [d for d in tasks if d.get("id") != task_id]
        if len(remaining) == len(tasks):
            return False
        self._save(remaining)
        return True

    def count(self) -> int:
        return len(self._load())

    def _compress_record(self, record: Dict[str, Any]) -> bool:
        changed = False
        for name in ("input", "output"):
            value = record.get(name)
            if isinstance(value, str) and len(value) > _KEEP_CHARS + len(COMPRESSED_SUFFIX):
                record[name] = value[:_KEEP_CHARS] + COMPRESSED_SUFFIX
                changed = True
        if changed:
            record["compressed"] = True
        return changed

    def stats(self) -> Dict[str, Any]:
        result = super().stats()
        tasks = self._load()
        result.update(
            status_counts=dict(Counter(t.get("status") for t in tasks)),
            type_counts=dict(Counter(t.get("type") for t in tasks)),
            oldest=tasks[0].get("created_at") if tasks else None,
            newest=tasks[-1].get("created_at") if tasks else None,
        )
        return result

    def export(self, fmt: str = "json") -> str:
        tasks = self.list()
        fmt = fmt.lower()
        if fmt == "csv":
            buf = io.StringIO()
            writer = csv.writer(buf, lineterminator="\n")
            writer.writerow(["id", "type", "status", "chat_id", "created_at", "duration_ms"])
            for t in tasks:
                writer.writerow([t.id, t.type, t.status, t.chat_id or "", t.created_at, t.duration_ms or ""])
            return buf.getvalue().rstrip("\n")
        if fmt == "text":
            blocks = []
            for t in tasks:
                lines = [
                    f"Task: {t.id}",
                    f"Title: {t.title}",
                    f"Type: {t.type}",
                    f"Status: {t.status}",
                    f"Time: {t.created_at}",
                    f"Duration: {f'{t.duration_ms}ms' if t.duration_ms is not None else 'N/A'}",
                ]
                if t.error:
                    lines.append(f"Error: {json.dumps(t.error, ensure_ascii=False)}")
                lines.append("=" * 60)
                blocks.append("\n".join(lines))
            return "\n\n".join(blocks)
        return json.dumps([t.to_dict() for t in tasks], ensure_ascii=False, indent=2)
