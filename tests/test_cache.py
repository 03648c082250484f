"""
缓存后端测试 — MemoryCache / FileCache 的存取语义，以及文件缓存跨运行持久化。

运行方式:
    python -m pytest tests/test_cache.py -v
"""

from __future__ import annotations

import os
import pickle

import pytest

from cache.memory import MemoryCache
from cache.storage import FileCache
from dag.scheduler import make
from schema import RunConfig, Target


def _cfg(**overrides) -> RunConfig:
    base = dict(jobs=2, memory_strategy="minimal", worker_variant="transient", backend="thread",
                caching="main", fail_fast=False, retries=0, timeout=None)
    base.update(overrides)
    return RunConfig(**base)


@pytest.fixture(params=["memory", "file"])
def cache(request, tmp_path):
    if request.param == "memory":
        return MemoryCache()
    return FileCache(str(tmp_path / "cache"))


# ======================================================================
# Test 1: 基本存取语义（两种后端共用）
# ======================================================================


class TestCacheContract:

    def test_put_then_get(self, cache):
        assert not cache.exists("abc123")
        cache.put("abc123", {"rows": [1, 2, 3]})
        assert cache.exists("abc123")
        assert cache.get("abc123") == {"rows": [1, 2, 3]}

    def test_missing_key_raises_key_error(self, cache):
        with pytest.raises(KeyError):
            cache.get("nope")

    def test_put_replaces(self, cache):
        cache.put("k1", 1)
        cache.put("k1", 2)
        assert cache.get("k1") == 2
        assert len(cache) == 1

    def test_lock_is_per_key(self, cache):
        assert cache.lock("a") is cache.lock("a")
        assert cache.lock("a") is not cache.lock("b")
        with cache.lock("a"):
            cache.put("b", "other keys are not blocked")

    def test_declares_concurrent_writers(self, cache):
        assert cache.supports_concurrent_writers


# ======================================================================
# Test 2: 文件缓存
# ======================================================================


class TestFileCache:

    def test_layout_and_no_temp_leftovers(self, tmp_path):
        root = tmp_path / "cache"
        fc = FileCache(str(root))
        fc.put("deadbeef", [1])

        assert (root / "de" / "deadbeef.pkl").is_file()
        assert not [p for p in os.listdir(root / "de") if p.endswith(".tmp")], "原子写入不应残留临时文件"
        assert fc.keys() == ["deadbeef"]

    def test_entries_survive_new_instance(self, tmp_path):
        FileCache(str(tmp_path)).put("feed", "value")
        assert FileCache(str(tmp_path)).get("feed") == "value"

    def test_unpicklable_value_leaves_no_entry(self, tmp_path):
        fc = FileCache(str(tmp_path))
        with pytest.raises(Exception):
            fc.put("cafe", lambda: None)
        assert not fc.exists("cafe")

    def test_pickles_for_worker_processes(self, tmp_path):
        fc = FileCache(str(tmp_path))
        fc.lock("x")
        clone = pickle.loads(pickle.dumps(fc))

        assert clone.root == fc.root
        clone.put("beef", 7)
        assert fc.get("beef") == 7
        assert fc.process_safe

    def test_memory_cache_is_process_local(self):
        assert not MemoryCache().process_safe


# ======================================================================
# Test 3: 跨运行的记忆化
# ======================================================================


def _double(deps):
    return deps["base"] * 2


class TestMemoizationAcrossRuns:

    def test_second_run_skips_with_fresh_cache_instance(self, tmp_path):
        calls: list[str] = []

        def base(deps):
            calls.append("base")
            return 21

        def plan():
            return [
                Target(name="base", command=base, command_key="base"),
                Target(name="double", command=_double, deps=["base"]),
            ]

        first = make(plan(), cache=FileCache(str(tmp_path)), run_config=_cfg())
        second = make(plan(), cache=FileCache(str(tmp_path)), run_config=_cfg())

        assert first.built == ["base", "double"]
        assert second.skipped == ["base", "double"]
        assert calls == ["base"], "第二次运行不应重新执行"
        assert FileCache(str(tmp_path)).get(second.targets["double"].fingerprint) == 42

    def test_changed_definition_invalidates(self, tmp_path):
        make([Target(name="base", command=lambda d: 1, command_key="v1")],
             cache=FileCache(str(tmp_path)), run_config=_cfg())
        summary = make([Target(name="base", command=lambda d: 2, command_key="v2")],
                       cache=FileCache(str(tmp_path)), run_config=_cfg())
        assert summary.built == ["base"]
        assert len(FileCache(str(tmp_path))) == 2, "不同指纹的条目并存"

    def test_worker_side_caching_with_file_cache(self, tmp_path):
        cache = FileCache(str(tmp_path))
        summary = make(
            [Target(name="base", command=lambda d: 5, command_key="base"),
             Target(name="double", command=_double, deps=["base"])],
            cache=cache,
            run_config=_cfg(caching="worker"),
        )
        assert summary.ok
        assert cache.get(summary.targets["double"].fingerprint) == 10
