"""
Cache - Abstract interface of the content-addressable result store.
Cache —— 内容寻址结果存储的抽象接口。

The scheduler consumes storage only through this interface:
  - exists(key) -> bool
  - get(key)    -> artifact   (KeyError if absent)
  - put(key, artifact)
  - lock(key)   -> context manager serializing writers of one key

Backends declare two capabilities the worker pool checks before enabling
worker-side caching:
  - supports_concurrent_writers: several workers may put() at once
  - process_safe: workers in other processes see the same entries

调度器只通过该接口访问存储。后端需声明两项能力，
WorkerPool 在启用 worker 端缓存前会检查：是否支持并发写、是否跨进程共享。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any


class Cache(ABC):
    """
    Abstract base class for all cache backends.
    所有缓存后端的抽象基类。

    Guarantee required from every backend: a put() followed by a get() of the
    same key returns the written value. put() of the same key by concurrent
    writers must be serialized by the backend itself (see lock()).
    """

    supports_concurrent_writers: bool = False
    process_safe: bool = False

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Whether an entry is stored under `key`."""

    @abstractmethod
    def get(self, key: str) -> Any:
        """
        Return the artifact stored under `key`.
        Raises KeyError if there is none.
        """

    @abstractmethod
    def put(self, key: str, value: Any) -> None:
        """Store `value` under `key`, replacing any previous entry."""

    @abstractmethod
    def lock(self, key: str) -> AbstractContextManager:
        """
        Return a context manager holding the write lock of `key`.
        返回持有 `key` 写锁的上下文管理器。
        """
