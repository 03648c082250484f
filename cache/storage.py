"""
File Cache - Persistent pickle-file storage for built artifacts.
文件缓存 —— 基于 pickle 文件的构建产物持久化存储。

One file per fingerprint, fanned out into two-character subdirectories:
    <root>/ab/abcdef0123....pkl

Writes go to a temporary file in the same directory followed by os.replace(),
so a reader in any process sees either the old entry or the complete new one.
This makes the cache safe for worker-side caching across processes.

每个指纹一个文件，按前两位字符分子目录存放。
写入先落到同目录临时文件，再用 os.replace() 原子替换，
任何进程中的读者要么看到旧条目，要么看到完整的新条目，因此可跨进程并发写。
"""

from __future__ import annotations

import logging
import os
import pickle
import tempfile
import threading
from typing import Any

import config
from cache.base import Cache

logger = logging.getLogger(__name__)


class FileCache(Cache):
    """
    Directory-backed cache; entries survive across runs.
    基于目录的缓存，条目跨运行持久存在。
    """

    supports_concurrent_writers = True
    process_safe = True

    def __init__(self, root: str | None = None):
        self._root = root or config.CACHE_DIR
        os.makedirs(self._root, exist_ok=True)
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @property
    def root(self) -> str:
        return self._root

    # ------------------------------------------------------------------
    # Pickling: locks are per-process and are rebuilt in the worker
    # 序列化：锁属于进程本地资源，在 worker 进程中重建
    # ------------------------------------------------------------------

    def __getstate__(self) -> dict[str, Any]:
        return {"_root": self._root}

    def __setstate__(self, state: dict[str, Any]) -> None:
        self._root = state["_root"]
        self._locks = {}
        self._guard = threading.Lock()

    # ------------------------------------------------------------------
    # Core operations
    # 核心操作
    # ------------------------------------------------------------------

    def _path(self, key: str) -> str:
        return os.path.join(self._root, key[:2], f"{key}.pkl")

    def exists(self, key: str) -> bool:
        return os.path.exists(self._path(key))

    def get(self, key: str) -> Any:
        try:
            with open(self._path(key), "rb") as f:
                return pickle.load(f)
        except FileNotFoundError:
            raise KeyError(key) from None

    def put(self, key: str, value: Any) -> None:
        path = self._path(key)
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        with self.lock(key):
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    pickle.dump(value, f, protocol=pickle.HIGHEST_PROTOCOL)
                os.replace(tmp_path, path)  # 原子替换
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        logger.debug("[Cache] wrote %s", path)

    def lock(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def keys(self) -> list[str]:
        found = []
        for sub in sorted(os.listdir(self._root)):
            sub_dir = os.path.join(self._root, sub)
            if not os.path.isdir(sub_dir):
                continue
            found.extend(name[:-4] for name in sorted(os.listdir(sub_dir)) if name.endswith(".pkl"))
        return found

    def __len__(self) -> int:
        return len(self.keys())
