"""
Cache module - content-addressable result storage.
Cache 模块 —— 内容寻址的结果存储。

Components:
  - base.py:    Cache abstract interface (exists / get / put / lock)
  - memory.py:  MemoryCache, thread-safe in-process store
  - storage.py: FileCache, pickle files with atomic replace
"""

from cache.base import Cache              # 抽象缓存接口
from cache.memory import MemoryCache      # 内存缓存
from cache.storage import FileCache       # 文件缓存

__all__ = ["Cache", "MemoryCache", "FileCache"]
