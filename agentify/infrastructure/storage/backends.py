"""持久化后端：按 key 保存一整块序列化文本。

语义与浏览器 localStorage 一致：
- 每个 key 对应一个完整的 blob，写入即整体替换；
- 所有 key 共享一个总字节配额，超出时写入被拒绝并抛出 QuotaExceededError，
  原有内容保持不变。
"""

import os
from pathlib import Path
from typing import Dict, List, Optional, Protocol
from uuid import uuid4

from agentify.domain.exceptions import StorageError


class QuotaExceededError(StorageError):
    """后端拒绝写入：总字节数将超过配额。"""

    def __init__(self, key: str, needed: int, quota: int):
        super().__init__(
            code="STG_BACKEND_QUOTA",
            message=f"Writing {key!r} needs {needed} bytes, quota is {quota}",
            key=key,
            needed=needed,
            quota=quota,
        )


class BlobBackend(Protocol):
    def read(self, key: str) -> Optional[str]:
        ...

    def write(self, key: str, text: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def size(self, key: str) -> int:
        ...


def _byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


class MemoryBlobBackend:
    """进程内后端，主要用于测试与无需落盘的场景。"""

    def __init__(self, quota_bytes: Optional[int] = None):
        self.quota_bytes = quota_bytes
        self._data: Dict[str, str] = {}
        self.write_attempts = 0

    def read(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def write(self, key: str, text: str) -> None:
        self.write_attempts += 1
        if self.quota_bytes is not None:
            others = sum(_byte_len(v) for k, v in self._data.items() if k != key)
            needed = others + _byte_len(text)
            if needed > self.quota_bytes:
                raise QuotaExceededError(key, needed, self.quota_bytes)
        self._data[key] = text

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def size(self, key: str) -> int:
        return _byte_len(self._data.get(key, ""))

    def keys(self) -> List[str]:
        return list(self._data)


class FileBlobBackend:
    """基于目录的后端：每个 key 一个 JSON 文件，通过临时文件 + os.replace 原子替换。"""

    def __init__(self, root: str | Path, quota_bytes: Optional[int] = None):
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self.quota_bytes = quota_bytes

    def _path(self, key: str) -> Path:
        return self._root / f"{key}.json"

    def read(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(code="STG_READ_FAILED", message=str(e), key=key)

    def write(self, key: str, text: str) -> None:
        path = self._path(key)
        if self.quota_bytes is not None:
            others = sum(p.stat().st_size for p in self._root.glob("*.json") if p != path)
            needed = others + _byte_len(text)
            if needed > self.quota_bytes:
                raise QuotaExceededError(key, needed, self.quota_bytes)
        tmp_path = self._root / f"{key}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(text, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(code="STG_WRITE_FAILED", message=str(e), key=key)

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(code="STG_WRITE_FAILED", message=str(e), key=key)

    def size(self, key: str) -> int:
        path = self._path(key)
        return path.stat().st_size if path.exists() else 0
