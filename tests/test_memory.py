"""
内存管理器测试 — 三种淘汰策略的不变量：
  - retain_all 从不淘汰
  - minimal 从不淘汰 RUNNING / 即将运行目标的直接依赖
  - lookahead 从不淘汰任何未完成目标仍需要的产物
以及淘汰后从缓存按需重新读取。

运行方式:
    python -m pytest tests/test_memory.py -v
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from cache.memory import MemoryCache
from dag.graph import DependencyGraph
from errors import CacheError, ConfigError
from memory.manager import EvictionPolicy, MemoryManager
from schema import MemoryStrategy, Residency, Target


def _t(name: str, *deps: str) -> Target:
    return Target(name=name, command=lambda d: name, deps=list(deps), command_key=name)


def _build(graph: DependencyGraph, manager: MemoryManager, cache: MemoryCache, name: str) -> None:
    """Simulate one successful build of `name` through the main-side caching path."""
    graph.ready_set()
    graph.mark_running(name)
    fp = graph.fingerprint(name)
    cache.put(fp, f"artifact:{name}")
    manager.store(name, fp, f"artifact:{name}")
    graph.mark_built(name)


def _setup(strategy: str, targets: list[Target]):
    cache = MemoryCache()
    return DependencyGraph(targets), MemoryManager(strategy, cache), cache


# ======================================================================
# Test 1: 各策略不变量
# ======================================================================


class TestStrategies:

    def test_retain_all_never_evicts(self):
        graph, manager, cache = _setup("retain_all", [_t("a"), _t("b", "a"), _t("c", "b")])
        for name in ("a", "b", "c"):
            _build(graph, manager, cache, name)
            assert manager.apply(graph) == set()
        assert all(manager.is_resident(n) for n in "abc")

    def test_minimal_keeps_only_imminent_dependencies(self):
        """a -> b -> c：b 完成、c 就绪后，a 已无用被淘汰，b 保留。"""
        graph, manager, cache = _setup("minimal", [_t("a"), _t("b", "a"), _t("c", "b")])
        _build(graph, manager, cache, "a")
        graph.ready_set()
        graph.mark_running("b")
        assert manager.apply(graph) == set(), "RUNNING 目标 b 的直接依赖 a 不能被淘汰"

        graph.mark_built("b")
        manager.store("b", graph.fingerprint("b"), "artifact:b")
        graph.ready_set()

        assert manager.apply(graph) == {"a"}
        assert manager.residency["a"] == Residency.EVICTED
        assert manager.is_resident("b")

    def test_minimal_evicts_dependencies_of_blocked_targets(self):
        """
        a ──> c <── b   c 还在等 b，minimal 不为 c 保留 a（之后按需重读）。
        """
        graph, manager, cache = _setup("minimal", [_t("a"), _t("b"), _t("c", "a", "b")])
        _build(graph, manager, cache, "a")
        graph.mark_running("b")

        assert manager.apply(graph) == {"a"}

    def test_lookahead_keeps_everything_still_needed(self):
        graph, manager, cache = _setup("lookahead", [_t("a"), _t("b"), _t("c", "a", "b"), _t("d", "a")])
        _build(graph, manager, cache, "a")
        graph.mark_running("b")
        assert manager.apply(graph) == set(), "c、d 仍需要 a"

        graph.mark_built("b")
        manager.store("b", graph.fingerprint("b"), "artifact:b")
        _build(graph, manager, cache, "d")
        assert manager.apply(graph) == {"d"}, "d 无下游，可以淘汰；a、b 仍被 c 需要"

        _build(graph, manager, cache, "c")
        assert manager.apply(graph) == {"a", "b", "c"}, "全部完成后没有产物再被需要"

    @pytest.mark.parametrize("strategy", list(MemoryStrategy))
    def test_protected_artifacts_survive_any_policy(self, strategy):
        graph, manager, cache = _setup(strategy.value, [_t("a"), _t("b", "a")])
        _build(graph, manager, cache, "a")
        graph.ready_set()
        graph.mark_running("b")

        with patch.object(manager, "select_evictions", return_value={"a"}):
            assert manager.apply(graph) == set()
        assert manager.is_resident("a")
        assert EvictionPolicy.protected(graph) == {"a"}


# ======================================================================
# Test 2: 加载与重新读取
# ======================================================================


class BrokenReadCache(MemoryCache):
    def get(self, key):
        raise OSError("unreadable")


class TestLoading:

    def test_evicted_artifact_is_reloaded_from_cache(self):
        graph, manager, cache = _setup("minimal", [_t("a"), _t("b")])
        _build(graph, manager, cache, "a")
        assert manager.apply(graph) == {"a"}

        snapshot = manager.snapshot(["a"])

        assert snapshot == {"a": "artifact:a"}
        assert manager.reloads == 1
        assert manager.is_resident("a")

    def test_cache_only_artifact(self):
        cache = MemoryCache()
        cache.put("k", 42)
        manager = MemoryManager("lookahead", cache)
        manager.mark_cached("x", "k")

        assert not manager.is_resident("x")
        assert manager.load("x") == 42

    def test_read_failure_raises_cache_error(self):
        manager = MemoryManager("minimal", BrokenReadCache())
        manager.mark_cached("x", "k")
        with pytest.raises(CacheError):
            manager.load("x")

    def test_target_without_artifact_loads_none(self):
        manager = MemoryManager("minimal", MemoryCache())
        assert manager.load("failed_but_ignored") is None

    def test_unknown_strategy(self):
        with pytest.raises(ConfigError):
            MemoryManager("lru", MemoryCache())
