"""
Error classes for the build scheduler.
构建调度器的异常类型。

Three families:
  - Plan / configuration errors are raised before any dispatch
    (CycleError, MissingDependencyError, DuplicateTargetError, ConfigError).
  - InvalidTransitionError is raised by the graph when the dispatch loop
    attempts an illegal status change.
  - Per-target errors (ComputationError, WorkerCrash, WorkerTimeout, CacheError)
    carry the FailureKind they map to. The worker pool and the Scheduler build
    them from whatever went wrong with a target and hand them back inside a
    WorkerResult, so one broken target never stops the loop.

三类异常：
  - 计划 / 配置错误：在任何调度之前直接抛出。
  - 生命周期错误：调度循环试图进行非法状态转移时由 graph 抛出。
  - 单目标错误：携带对应的 FailureKind，由 WorkerPool / Scheduler 构造后
    以 WorkerResult 的形式返回，单个目标失败不会中断调度循环。
"""

from __future__ import annotations

from schema import FailureKind


class BuildError(Exception):
    """Base exception for the build scheduler. 所有构建异常的基类。"""
    pass


# ----------------------------------------------------------------------
# Plan errors (fatal, detected at graph construction)
# 计划错误（致命，在构图时检测）
# ----------------------------------------------------------------------

class CycleError(BuildError):
    """
    The dependency graph contains a cycle. No target is executed.
    依赖图中存在环，整个运行被中止，不执行任何目标。
    """

    def __init__(self, nodes: list[str]):
        self.nodes = nodes
        super().__init__(f"Dependency cycle detected among targets: {', '.join(nodes)}")


class MissingDependencyError(BuildError):
    """A target declares a dependency that is not part of the plan."""

    def __init__(self, target: str, dependency: str):
        self.target = target
        self.dependency = dependency
        super().__init__(f"Target '{target}' depends on unknown target '{dependency}'")


class DuplicateTargetError(BuildError):
    """Two targets share the same name."""
    pass


class ConfigError(BuildError):
    """Run configuration is invalid. 运行配置非法。"""
    pass


# ----------------------------------------------------------------------
# Lifecycle errors
# 生命周期错误
# ----------------------------------------------------------------------

class InvalidTransitionError(BuildError):
    """
    A target was moved between two states the lifecycle does not connect.
    Signals a bug in the dispatch loop, never a problem with the plan.
    目标状态转移非法：说明调度循环存在缺陷，而非计划本身有误。
    """

    def __init__(self, target: str, current: str, requested: str, allowed: list[str]):
        self.target = target
        self.current = current
        self.requested = requested
        super().__init__(
            f"Target '{target}': cannot go from {current} to {requested} (allowed: {', '.join(allowed) or 'none'})"
        )


# ----------------------------------------------------------------------
# Per-target errors (isolated to the failing target and its dependents)
# 单目标错误（只影响失败目标及其下游）
# ----------------------------------------------------------------------

def _describe(cause: BaseException | str) -> str:
    if isinstance(cause, BaseException):
        return f"{type(cause).__name__}: {cause}"
    return cause


class ComputationError(BuildError):
    """
    A target's command raised.
    目标的计算命令抛出了异常。

    `kind` is the FailureKind recorded for the target; the worker pool and
    the Scheduler turn these errors into failed WorkerResults with it.
    """

    kind = FailureKind.COMPUTATION

    def __init__(self, target: str, cause: BaseException | str):
        self.target = target
        self.cause = cause
        super().__init__(self._format(target, _describe(cause)))

    @staticmethod
    def _format(target: str, detail: str) -> str:
        return f"Target '{target}' failed: {detail}"

    def __reduce__(self):
        # 保证跨进程（ProcessBackend）传回时可以正确反序列化
        return type(self), (self.target, self.cause)


class WorkerCrash(ComputationError):
    """
    The worker executing a target died (e.g. a broken process pool).
    Treated like ComputationError by the Scheduler; kept separate for diagnostics.
    执行目标的 worker 崩溃。调度器按 ComputationError 处理，仅用于诊断区分。
    """

    kind = FailureKind.WORKER_CRASH

    @staticmethod
    def _format(target: str, detail: str) -> str:
        return f"Worker crashed while building '{target}': {detail}"


class WorkerTimeout(ComputationError):
    """The worker did not report back within the configured timeout."""

    kind = FailureKind.WORKER_TIMEOUT

    def __init__(self, target: str, seconds: float | None):
        self.seconds = seconds
        super().__init__(target, f"no result within {seconds}s")

    def __reduce__(self):
        return type(self), (self.target, self.seconds)


class CacheError(BuildError):
    """
    Reading or writing a cache entry failed. Fatal for the affected target,
    since correctness depends on the cache round trip.
    读写缓存失败。对受影响的目标是致命的，因为正确性依赖缓存往返。
    """

    kind = FailureKind.CACHE

    def __init__(self, key: str, cause: BaseException | str):
        self.key = key
        self.cause = cause
        super().__init__(f"Cache failure for key {key[:12]}: {_describe(cause)}")

    def __reduce__(self):
        return type(self), (self.key, self.cause)
