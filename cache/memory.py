"""
In-memory cache backend.
内存缓存后端。

Thread-safe dict storage. Entries live as long as the instance, so it suits
tests and single-process runs; workers in other processes cannot see it.
线程安全的字典存储，生命周期与实例相同。适用于测试和单进程运行，跨进程不可见。
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from cache.base import Cache

logger = logging.getLogger(__name__)


class MemoryCache(Cache):
    supports_concurrent_writers = True
    process_safe = False

    def __init__(self) -> None:
        self._entries: dict[str, Any] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()  # 保护 _locks 字典本身

    def exists(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Any:
        return self._entries[key]

    def put(self, key: str, value: Any) -> None:
        with self.lock(key):
            self._entries[key] = value
        logger.debug("[Cache] put %s", key[:12])

    def lock(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def keys(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
