"""
Memory Manager - decides which built artifacts stay resident in memory.
内存管理器 —— 决定哪些已构建产物保留在编排进程内存中。

Before each dispatch cycle the manager asks the active eviction policy which
resident artifacts can go. Evicted artifacts are still in the cache and are
re-read on demand when a later target needs them.
每轮调度前，管理器询问当前淘汰策略哪些常驻产物可以释放。
被淘汰的产物仍在缓存中，后续目标需要时按需重新读取。

Strategies:
  - retain_all: never evict (fastest, memory grows without bound)
  - minimal:    keep only the direct dependencies of targets about to run
  - lookahead:  evict only what no unfinished target will ever need again

策略：
  - retain_all: 从不淘汰（最快，内存无上限增长）
  - minimal:    只保留即将运行目标的直接依赖（内存最省，可能重复读缓存）
  - lookahead:  只淘汰所有未完成目标都不再需要的产物（需扫描剩余图，调度开销更高）
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from cache.base import Cache
from errors import CacheError, ConfigError
from schema import MemoryStrategy, Residency, TargetStatus

if TYPE_CHECKING:
    from dag.graph import DependencyGraph

logger = logging.getLogger(__name__)


# ======================================================================
# Eviction policies
# 淘汰策略
# ======================================================================

class EvictionPolicy(ABC):
    """
    Strategy contract: select_evictions(graph, residency) -> names to evict.
    Must never select a direct dependency of a READY or RUNNING target.
    策略契约：绝不能淘汰 READY 或 RUNNING 目标的直接依赖。
    """

    strategy: MemoryStrategy

    @abstractmethod
    def select_evictions(self, graph: DependencyGraph, residency: Mapping[str, Residency]) -> set[str]:
        """Return the resident target names to evict before the next cycle."""

    @staticmethod
    def resident(residency: Mapping[str, Residency]) -> set[str]:
        return {name for name, r in residency.items() if r == Residency.RESIDENT}

    @staticmethod
    def protected(graph: DependencyGraph) -> set[str]:
        """Direct dependencies of READY and RUNNING targets."""
        keep: set[str] = set()
        for t in graph.with_status(TargetStatus.READY, TargetStatus.RUNNING):
            keep.update(graph.dependencies[t.name])
        return keep


class RetainAllPolicy(EvictionPolicy):
    strategy = MemoryStrategy.RETAIN_ALL

    def select_evictions(self, graph: DependencyGraph, residency: Mapping[str, Residency]) -> set[str]:
        return set()


class MinimalPolicy(EvictionPolicy):
    """
    Keep only the direct dependencies of targets about to run: RUNNING ones,
    plus PENDING/READY ones whose dependencies are all satisfied.
    只保留即将运行目标（RUNNING，以及依赖已全部满足的 PENDING/READY）的直接依赖。
    """

    strategy = MemoryStrategy.MINIMAL

    def select_evictions(self, graph: DependencyGraph, residency: Mapping[str, Residency]) -> set[str]:
        keep: set[str] = set()
        for t in graph.remaining():
            deps = graph.dependencies[t.name]
            if t.status == TargetStatus.RUNNING or all(graph.is_satisfied(d) for d in deps):
                keep.update(deps)
        return self.resident(residency) - keep


class LookaheadPolicy(EvictionPolicy):
    """
    Scan every unfinished target and keep whatever any of them still depends
    on. Cost is one pass over the remaining graph per cycle.
    扫描所有未完成目标，保留其中任何一个仍然依赖的产物；每轮需遍历一次剩余图。
    """

    strategy = MemoryStrategy.LOOKAHEAD

    def select_evictions(self, graph: DependencyGraph, residency: Mapping[str, Residency]) -> set[str]:
        needed: set[str] = set()
        for t in graph.remaining():
            needed.update(graph.dependencies[t.name])
        return self.resident(residency) - needed


POLICIES: dict[MemoryStrategy, type[EvictionPolicy]] = {
    MemoryStrategy.RETAIN_ALL: RetainAllPolicy,
    MemoryStrategy.MINIMAL: MinimalPolicy,
    MemoryStrategy.LOOKAHEAD: LookaheadPolicy,
}


# ======================================================================
# Manager
# 管理器
# ======================================================================

class MemoryManager:
    """
    Owns the MemoryState (name -> Residency) and the resident artifacts.
    持有 MemoryState（目标名 -> 驻留状态）以及常驻产物。

    Only the Scheduler's dispatch loop calls into the manager, so no locking
    is needed here.
    """

    def __init__(self, strategy: MemoryStrategy | str, cache: Cache):
        try:
            self.strategy = MemoryStrategy(strategy)
        except ValueError:
            raise ConfigError(f"Unknown memory strategy: {strategy!r}") from None
        self._policy = POLICIES[self.strategy]()
        self._cache = cache
        self.residency: dict[str, Residency] = {}
        self._values: dict[str, Any] = {}
        self._keys: dict[str, str] = {}  # 目标名 -> 缓存指纹
        self.reloads = 0                 # 从缓存重新读取的次数

    # ------------------------------------------------------------------
    # Bookkeeping
    # 记录
    # ------------------------------------------------------------------

    def store(self, name: str, key: str, value: Any) -> None:
        """Record a freshly built artifact as resident."""
        self._keys[name] = key
        self._values[name] = value
        self.residency[name] = Residency.RESIDENT

    def mark_cached(self, name: str, key: str) -> None:
        """Record an artifact that lives only in the cache (cache hit, worker-side caching)."""
        self._keys[name] = key
        self._values.pop(name, None)
        self.residency[name] = Residency.EVICTED

    def is_resident(self, name: str) -> bool:
        return self.residency.get(name) == Residency.RESIDENT

    # ------------------------------------------------------------------
    # Loading
    # 加载
    # ------------------------------------------------------------------

    def load(self, name: str) -> Any:
        """
        Return the artifact of `name`, re-reading it from the cache if evicted.
        Targets that never produced an artifact (failed with ignore_errors)
        yield None.

        返回 `name` 的产物；若已被淘汰则从缓存重新读取。
        从未产生产物的目标（ignore_errors 失败）返回 None。

        Raises:
            CacheError: if the cache read fails.
        """
        if self.is_resident(name):
            return self._values[name]
        key = self._keys.get(name)
        if key is None:
            return None
        try:
            value = self._cache.get(key)
        except Exception as exc:
            raise CacheError(key, exc) from exc
        self._values[name] = value
        self.residency[name] = Residency.RESIDENT
        self.reloads += 1
        logger.debug("[Memory] reloaded %s from cache", name)
        return value

    def snapshot(self, names: Iterable[str]) -> dict[str, Any]:
        """Collect the artifacts of `names` into a fresh dict for one computation."""
        return {name: self.load(name) for name in names}

    # ------------------------------------------------------------------
    # Eviction
    # 淘汰
    # ------------------------------------------------------------------

    def select_evictions(self, graph: DependencyGraph) -> set[str]:
        return self._policy.select_evictions(graph, self.residency)

    def apply(self, graph: DependencyGraph) -> set[str]:
        """
        Evict what the policy selects. Direct dependencies of READY/RUNNING
        targets are always kept, whatever the policy says.
        执行策略选出的淘汰；READY/RUNNING 目标的直接依赖无论如何都会保留。
        """
        selected = self.select_evictions(graph)
        protected = selected & EvictionPolicy.protected(graph)
        if protected:
            logger.warning("[Memory] %s policy tried to evict in-use artifacts: %s",
                           self.strategy.value, sorted(protected))
        evicted = selected - protected
        for name in evicted:
            self._values.pop(name, None)
            self.residency[name] = Residency.EVICTED
        if evicted:
            logger.debug("[Memory] evicted %s", sorted(evicted))
        return evicted
