"""有界记录存储的公共策略。

TaskLedger / EventLog / ChatHistoryStore 共享同一套写入策略：

1. 每次变更都读出整个 blob，在内存中修改，再整体写回（没有局部写）。
2. 写入前按数量上限做 FIFO 裁剪（无损、便宜）。
3. 后端因字节配额拒绝写入时，对超过压缩阈值的旧记录做一次有损压缩，然后重试一次。
4. 重试仍失败则抛出 StorageQuotaExceeded，调用方手里的内存记录依然有效，只是未持久化。

子类只需要描述“容器长什么样”以及“单条记录如何压缩”。
"""

import json
import logging
from typing import Any, Dict, Generic, List, Optional, TypeVar

from agentify.domain.exceptions import StorageError, StorageQuotaExceeded
from agentify.infrastructure.logging.logger import log_with_context
from agentify.infrastructure.storage.backends import BlobBackend, MemoryBlobBackend, QuotaExceededError
from agentify.utils.formatters import format_bytes


C = TypeVar("C")


class BoundedRecordStore(Generic[C]):
    """基于单个 blob 的有界存储基类。

    Attributes:
        storage_key: 后端中的固定 key。
        cap: 记录数量硬上限。
        compression_threshold: 超过该数量时才会压缩旧记录，压缩时保留最新的一半阈值。
    """

    storage_key = "records"
    default_cap = 1000
    default_compression_threshold = 500

    def __init__(
        self,
        backend: Optional[BlobBackend] = None,
        cap: Optional[int] = None,
        compression_threshold: Optional[int] = None,
        storage_key: Optional[str] = None,
    ):
        self._backend = backend if backend is not None else MemoryBlobBackend()
        self.cap = cap or self.default_cap
        self.compression_threshold = (
            compression_threshold if compression_threshold is not None else self.default_compression_threshold
        )
        if storage_key:
            self.storage_key = storage_key
        self._log_ctx: Dict[str, Any] = {"store": type(self).__name__, "storage_key": self.storage_key}

    # ---- 容器钩子，由子类实现 ----

    def _empty(self) -> C:
        raise NotImplementedError

    def _count(self, data: C) -> int:
        raise NotImplementedError

    def _trim(self, data: C) -> int:
        """按数量上限裁剪，返回被移除的记录数。"""
        raise NotImplementedError

    def _compress(self, data: C) -> int:
        """压缩旧记录，返回被压缩的记录数。"""
        raise NotImplementedError

    # ---- blob 读写 ----

    def _load(self) -> C:
        text = self._backend.read(self.storage_key)
        if not text:
            return self._empty()
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise StorageError(
                code="STG_READ_FAILED",
                message=f"Corrupted blob under {self.storage_key!r}: {e}",
                storage_key=self.storage_key,
            )
        if not isinstance(data, type(self._empty())):
            raise StorageError(
                code="STG_READ_FAILED",
                message=f"Unexpected blob shape under {self.storage_key!r}",
                storage_key=self.storage_key,
            )
        return data

    def _save(self, data: C) -> None:
        trimmed = self._trim(data)
        if trimmed:
            log_with_context(logging.INFO, "Trimmed records over cap", self._log_ctx, trimmed=trimmed, cap=self.cap)
        try:
            self._backend.write(self.storage_key, self._dumps(data))
            return
        except QuotaExceededError as e:
            log_with_context(logging.WARNING, "Storage quota exceeded, compressing", self._log_ctx, error=e.message)
        compressed = self._compress(data)
        log_with_context(logging.INFO, "Compressed old records", self._log_ctx, compressed=compressed)
        try:
            self._backend.write(self.storage_key, self._dumps(data))
        except QuotaExceededError as e:
            raise StorageQuotaExceeded(
                code="STG_QUOTA_EXCEEDED",
                message="Storage quota exceeded even after compression",
                http_status=507,
                storage_key=self.storage_key,
                count=self._count(data),
                compressed=compressed,
                needed=e.extra.get("needed"),
                quota=e.extra.get("quota"),
            )

    @staticmethod
    def _dumps(data: Any) -> str:
        return json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=str)

    # ---- 公共操作 ----

    def clear(self) -> None:
        self._backend.remove(self.storage_key)

    def bytes_used(self) -> int:
        return self._backend.size(self.storage_key)

    def stats(self) -> Dict[str, Any]:
        data = self._load()
        used = self.bytes_used()
        return {
            "count": self._count(data),
            "cap": self.cap,
            "bytes_used": used,
            "bytes_formatted": format_bytes(used),
        }


class ListRecordStore(BoundedRecordStore[List[Dict[str, Any]]]):
    """记录按插入顺序保存在一个列表里（最旧在前）。"""

    def _empty(self) -> List[Dict[str, Any]]:
        return []

    def _count(self, data: List[Dict[str, Any]]) -> int:
        return len(data)

    def _trim(self, data: List[Dict[str, Any]]) -> int:
        overflow = len(data) - self.cap
        if overflow <= 0:
            return 0
        del data[:overflow]
        return overflow

    def _compress(self, data: List[Dict[str, Any]]) -> int:
        if len(data) <= self.compression_threshold:
            return 0
        keep = self.compression_threshold // 2
        count = 0
        for record in data[: len(data) - keep]:
            if self._compress_record(record):
                count += 1
        return count

    def _compress_record(self, record: Dict[str, Any]) -> bool:
        raise NotImplementedError
