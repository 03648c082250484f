"""
DependencyGraph - Directed Acyclic Graph over build targets.
DependencyGraph —— 构建目标之上的有向无环图。

The graph holds:
  - targets:      dict of Target keyed by name
  - dependencies: name -> names it depends on
  - dependents:   name -> names that depend on it (reverse edges, used for
                  fast failure propagation)

图中包含：
  - targets:      目标字典，key 为目标名
  - dependencies: 目标 -> 其依赖的目标
  - dependents:   目标 -> 依赖它的目标（反向边，用于快速传播失败）

Key operations:
  - ready_set():        targets whose dependencies are all satisfied
  - topological_sort(): Kahn's algorithm; a cycle raises CycleError at construction
  - mark_failed():      cascade failure to every downstream dependent
  - fingerprint():      content-addressed cache key per target

核心操作：
  - ready_set():        找出所有依赖已满足、可调度的目标
  - topological_sort(): Kahn 算法；构造时若检测到环则抛出 CycleError
  - mark_failed():      失败沿下游依赖级联传播
  - fingerprint():      每个目标的内容寻址缓存键
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Iterable

from dag.fingerprint import compute_fingerprint
from errors import CycleError, DuplicateTargetError, InvalidTransitionError, MissingDependencyError
from schema import Target, TargetStatus

logger = logging.getLogger(__name__)

_TERMINAL = {TargetStatus.BUILT, TargetStatus.FAILED}

# Legal status changes. READY -> BUILT is a cache hit, RUNNING -> READY a
# retry, READY / RUNNING -> PENDING an aborted run; BUILT and FAILED are final.
# 合法状态转移表：READY -> BUILT 为缓存命中，RUNNING -> READY 为重试，
# READY / RUNNING -> PENDING 为中止回退；BUILT 与 FAILED 为终态。
_TRANSITIONS: dict[TargetStatus, frozenset[TargetStatus]] = {
    TargetStatus.PENDING: frozenset({TargetStatus.READY, TargetStatus.FAILED}),
    TargetStatus.READY: frozenset({
        TargetStatus.RUNNING, TargetStatus.BUILT, TargetStatus.FAILED, TargetStatus.PENDING,
    }),
    TargetStatus.RUNNING: frozenset({
        TargetStatus.BUILT, TargetStatus.FAILED, TargetStatus.READY, TargetStatus.PENDING,
    }),
    TargetStatus.BUILT: frozenset(),
    TargetStatus.FAILED: frozenset(),
}


class DependencyGraph:
    """
    Directed acyclic graph of targets. Built once per run.
    目标有向无环图，每次运行构建一次。

    Construction validates the plan (unique names, known dependencies, no
    cycles) before anything can be dispatched. All status changes go through
    the transition table, and `on_transition` observes every change.
    构造时先校验计划（名称唯一、依赖存在、无环），之后才允许任何调度。
    所有状态变更都经过转移表校验，`on_transition` 回调可观察每一次变更。
    """

    def __init__(
        self,
        targets: Iterable[Target],
        on_transition: Callable[[str, TargetStatus, TargetStatus], None] | None = None,
    ):
        self.targets: dict[str, Target] = {}
        for t in targets:
            if t.name in self.targets:
                raise DuplicateTargetError(f"Duplicate target name: '{t.name}'")
            self.targets[t.name] = t

        self.dependencies: dict[str, set[str]] = {name: set() for name in self.targets}
        self.dependents: dict[str, set[str]] = {name: set() for name in self.targets}
        for t in self.targets.values():
            for dep in t.deps:
                if dep not in self.targets:
                    raise MissingDependencyError(t.name, dep)
                self.dependencies[t.name].add(dep)
                self.dependents[dep].add(t.name)

        self._on_transition = on_transition

        # 构造时完成拓扑排序，若有环则在任何调度之前失败
        self._order: list[str] = self.topological_sort()
        self._position = {name: i for i, name in enumerate(self._order)}
        self._fingerprints: dict[str, str] = {}

        # root-cause bookkeeping for failures
        # 失败根因记录：目标 -> 根因目标 / 因果链
        self.failed_by: dict[str, str] = {}
        self.failure_chains: dict[str, list[str]] = {}

    # ------------------------------------------------------------------
    # Queries
    # 查询方法
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self.targets)

    def __contains__(self, name: object) -> bool:
        return name in self.targets

    def dependencies_of(self, name: str) -> list[str]:
        return sorted(self.dependencies[name], key=self._position.__getitem__)

    def dependents_of(self, name: str) -> list[str]:
        return sorted(self.dependents[name], key=self._position.__getitem__)

    def is_satisfied(self, name: str) -> bool:
        """
        A dependency is satisfied once it is BUILT, or FAILED with ignore_errors.
        依赖满足的条件：已 BUILT，或 FAILED 但声明了 ignore_errors。
        """
        t = self.targets[name]
        return t.status == TargetStatus.BUILT or (t.status == TargetStatus.FAILED and t.ignore_errors)

    def ready_set(self) -> list[Target]:
        """
        Return every not-yet-dispatched target (PENDING or READY) whose
        dependencies are all satisfied, in topological order. PENDING ones are
        promoted to READY.

        返回所有依赖已满足、尚未调度（PENDING 或 READY）的目标，按拓扑序排列。
        PENDING 目标会被提升为 READY。
        """
        ready = []
        for name in self._order:
            t = self.targets[name]
            if t.status not in (TargetStatus.PENDING, TargetStatus.READY):
                continue
            if all(self.is_satisfied(d) for d in self.dependencies[name]):
                if t.status == TargetStatus.PENDING:
                    self._set_status(t, TargetStatus.READY)
                ready.append(t)
        return ready

    def with_status(self, *statuses: TargetStatus) -> list[Target]:
        return [self.targets[n] for n in self._order if self.targets[n].status in statuses]

    def remaining(self) -> list[Target]:
        """Targets not yet BUILT or FAILED. 尚未到达终态的目标。"""
        return [self.targets[n] for n in self._order if self.targets[n].status not in _TERMINAL]

    def is_complete(self) -> bool:
        """True if every target reached a terminal state (BUILT or FAILED)."""
        return all(t.status in _TERMINAL for t in self.targets.values())

    def downstream(self, name: str) -> list[str]:
        """
        Return all names transitively depending on `name` (BFS on reverse edges).
        通过 BFS 遍历反向边，返回 `name` 的所有下游目标。
        """
        visited: set[str] = set()
        queue: deque[str] = deque(self.dependents[name])
        while queue:
            nid = queue.popleft()
            if nid in visited:
                continue
            visited.add(nid)
            queue.extend(self.dependents[nid])
        return sorted(visited, key=self._position.__getitem__)

    def failure_chain(self, name: str) -> list[str]:
        """Causal path root -> `name` for a FAILED target, [] otherwise."""
        return list(self.failure_chains.get(name, []))

    # ------------------------------------------------------------------
    # Fingerprints
    # 指纹
    # ------------------------------------------------------------------

    def fingerprint(self, name: str) -> str:
        """
        Fingerprint of `name`, derived from its computation and its
        dependencies' fingerprints. Computed once and memoized.
        """
        if name not in self._fingerprints:
            for nid in self._order:
                if nid in self._fingerprints:
                    continue
                deps = {d: self._fingerprints[d] for d in self.dependencies[nid]}
                self._fingerprints[nid] = compute_fingerprint(self.targets[nid], deps)
                if nid == name:
                    break
        return self._fingerprints[name]

    def dependency_fingerprints(self, name: str) -> dict[str, str]:
        return {d: self.fingerprint(d) for d in self.dependencies[name]}

    # ------------------------------------------------------------------
    # State mutations
    # 状态变更方法
    # ------------------------------------------------------------------

    def can_transition(self, name: str, status: TargetStatus) -> bool:
        return status in _TRANSITIONS[self.targets[name].status]

    def _set_status(self, target: Target, status: TargetStatus) -> None:
        old = target.status
        if status not in _TRANSITIONS[old]:
            raise InvalidTransitionError(
                target.name, old.value, status.value, sorted(s.value for s in _TRANSITIONS[old]),
            )
        target.status = status
        logger.debug("[Graph] %s: %s -> %s", target.name, old.value, status.value)
        if self._on_transition is None:
            return
        try:
            self._on_transition(target.name, old, status)
        except Exception:
            # 观察者回调出错不影响状态变更
            logger.debug("[Graph] transition callback failed for %s", target.name, exc_info=True)

    def mark_running(self, name: str) -> None:
        self._set_status(self.targets[name], TargetStatus.RUNNING)

    def mark_built(self, name: str) -> None:
        self._set_status(self.targets[name], TargetStatus.BUILT)

    def mark_retry(self, name: str) -> None:
        """RUNNING -> READY, the target will be dispatched again."""
        self._set_status(self.targets[name], TargetStatus.READY)

    def mark_pending(self, name: str) -> None:
        """Return an interrupted READY/RUNNING target to PENDING (aborted run)."""
        self._set_status(self.targets[name], TargetStatus.PENDING)

    def mark_failed(self, name: str) -> list[str]:
        """
        Mark `name` FAILED and cascade the failure to every transitive dependent
        still PENDING or READY. Targets declared `ignore_errors` stop the cascade:
        they are FAILED themselves but their dependents treat them as satisfied.

        Returns the names failed by dependency, in topological order.

        将 `name` 标记为 FAILED，并将失败级联到所有仍处于 PENDING / READY 的下游目标。
        声明了 ignore_errors 的目标会截断级联。返回因依赖而失败的目标列表。
        """
        root = self.targets[name]
        self._set_status(root, TargetStatus.FAILED)
        self.failed_by[name] = name
        self.failure_chains[name] = [name]

        if root.ignore_errors:
            logger.info("[Graph] %s FAILED (ignore_errors: dependents proceed)", name)
            return []

        # BFS with parent pointers so each dependent gets a causal chain
        # 带父指针的 BFS，为每个下游目标记录因果链
        cascaded: list[str] = []
        parents: dict[str, str] = {}
        queue: deque[str] = deque()
        for child in self.dependents_of(name):
            parents[child] = name
            queue.append(child)

        while queue:
            nid = queue.popleft()
            t = self.targets[nid]
            if t.status not in (TargetStatus.PENDING, TargetStatus.READY):
                continue
            self._set_status(t, TargetStatus.FAILED)
            self.failed_by[nid] = name
            self.failure_chains[nid] = self.failure_chains[parents[nid]] + [nid]
            cascaded.append(nid)
            logger.info("[Graph] %s FAILED (downstream of %s)", nid, name)
            if t.ignore_errors:
                continue
            for child in self.dependents_of(nid):
                if child not in parents:
                    parents[child] = nid
                    queue.append(child)

        return sorted(cascaded, key=self._position.__getitem__)

    # ------------------------------------------------------------------
    # Graph algorithms
    # 图算法
    # ------------------------------------------------------------------

    def topological_sort(self) -> list[str]:
        """
        Kahn's algorithm. Returns target names in a valid build order.
        Raises CycleError if some targets can never be ordered.

        Kahn 算法 —— 返回目标名的合法构建顺序。
        若存在无法排序的目标（即存在环），抛出 CycleError。
        """
        in_degree: dict[str, int] = {name: len(deps) for name, deps in self.dependencies.items()}
        # 声明顺序作为同层节点的稳定次序
        declared = {name: i for i, name in enumerate(self.targets)}
        queue = deque(name for name in self.targets if in_degree[name] == 0)
        result: list[str] = []

        while queue:
            nid = queue.popleft()
            result.append(nid)
            for child in sorted(self.dependents[nid], key=declared.__getitem__):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if len(result) != len(self.targets):
            leftover = {name for name, deg in in_degree.items() if deg > 0}
            cycle = self._find_cycle(leftover)
            logger.error("[Graph] Cycle detected: %s", " -> ".join(cycle))
            raise CycleError(cycle)
        return result

    def _find_cycle(self, leftover: set[str]) -> list[str]:
        """
        Walk dependency edges inside the unsortable set until a node repeats.
        Every leftover node has at least one leftover dependency, so the walk
        always closes a cycle.
        """
        start = min(leftover)
        path: list[str] = []
        seen: dict[str, int] = {}
        node = start
        while node not in seen:
            seen[node] = len(path)
            path.append(node)
            node = min(d for d in self.dependencies[node] if d in leftover)
        return path[seen[node]:] + [node]

    # ------------------------------------------------------------------
    # Display helpers
    # 展示辅助方法
    # ------------------------------------------------------------------

    def summary(self) -> str:
        """
        One-line summary for logging, e.g. Graph[5 targets: 2 built, 1 running, 2 pending]
        生成单行状态摘要，用于日志输出。
        """
        status_counts: dict[str, int] = {}
        for t in self.targets.values():
            status_counts[t.status.value] = status_counts.get(t.status.value, 0) + 1
        parts = [f"{v} {k}" for k, v in status_counts.items()]
        return f"Graph[{len(self.targets)} targets: {', '.join(parts)}]"
