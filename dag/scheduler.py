"""
Scheduler - drives a DependencyGraph to completion.
调度器 —— 驱动 DependencyGraph 直至构建完成。

One dispatch loop, many workers. Each iteration of the loop is one
"dispatch cycle":
单一调度循环 + 多个并行 worker。循环的每次迭代就是一个「调度轮次」：

  1. Compute the ready set (dependencies all satisfied)
  2. Skip targets whose fingerprint is already in the cache (memoized)
  3. Partition the rest into local (hpc=False) and remote targets
  4. Run local targets in-process, in topological order
  5. Submit remote targets to the WorkerPool, at most `jobs` in flight;
     block until at least one finishes when nothing else can progress
  6. Validate + commit each completed result, or fail it and its dependents
  7. Let the MemoryManager evict artifacts before the next cycle

  1. 计算就绪集合（依赖全部满足）
  2. 指纹已在缓存中的目标直接跳过（记忆化）
  3. 其余目标分为本地（hpc=False）与远程两部分
  4. 本地目标在编排进程内按拓扑序同步执行
  5. 远程目标提交给 WorkerPool，在途数量不超过 `jobs`；无法推进时阻塞等待至少一个完成
  6. 校验并提交每个完成的结果；失败则级联标记下游
  7. 下一轮开始前由 MemoryManager 淘汰产物

All graph and residency mutations happen inside this loop, so neither needs
a lock. The Cache is the only state touched concurrently (by workers under
worker-side caching) and serializes its own writers.
所有图状态与驻留状态的修改都只发生在该循环内，因此无需加锁。
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Iterable

from pydantic import ValidationError

from cache.base import Cache
from dag.fingerprint import compute_fingerprint
from dag.graph import DependencyGraph
from errors import CacheError, ComputationError, ConfigError
from memory.manager import MemoryManager
from schema import (
    CachingMode,
    FailureKind,
    FailureRecord,
    ReportStatus,
    RunConfig,
    RunSummary,
    Target,
    TargetReport,
    TargetStatus,
    WorkerResult,
)
from workers.backends import ExecutionBackend, create_backend
from workers.pool import WorkerPool, create_pool, failed_result, run_command

logger = logging.getLogger(__name__)


class Scheduler:
    """
    The orchestrator ("master"): walks the graph, dispatches ready targets,
    commits results through the cache and re-evaluates readiness.
    编排器（master）：遍历依赖图、分派就绪目标、通过缓存提交结果并重新评估就绪状态。
    """

    def __init__(
        self,
        graph: DependencyGraph,
        cache: Cache,
        pool: WorkerPool,
        memory: MemoryManager,
        run_config: RunConfig | None = None,
        on_event: Callable[[str, Any], None] | None = None,
    ):
        self._graph = graph
        self._cache = cache
        self._pool = pool
        self._memory = memory
        self._config = run_config or RunConfig()
        self._on_event = on_event

        self._attempts: dict[str, int] = {}
        self._durations: dict[str, float] = {}
        self._skipped: set[str] = set()
        self._failures: list[FailureRecord] = []
        self._fatal: FailureRecord | None = None  # fail-fast 模式下触发中止的失败

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    # ------------------------------------------------------------------
    # Queries
    # 查询
    # ------------------------------------------------------------------

    def outdated(self) -> list[str]:
        """
        Names of targets the next run would build (fingerprint not in cache).
        Runs nothing.
        返回下次运行需要构建的目标（指纹不在缓存中），不执行任何计算。
        """
        return outdated(self._graph, self._cache)

    # ------------------------------------------------------------------
    # Main loop
    # 主循环
    # ------------------------------------------------------------------

    async def run(self) -> RunSummary:
        """
        Build every target and return the run summary.
        构建所有目标并返回运行汇总。

        With fail_fast the first failure aborts the run: in-flight work is
        cancelled and interrupted targets go back to PENDING. The pool is shut
        down on every exit path.
        """
        started = time.perf_counter()
        in_flight: dict[asyncio.Task[WorkerResult], tuple[str, str]] = {}
        aborted = False
        jobs = self._config.jobs

        self._emit("run_start", {"targets": len(self._graph), "jobs": jobs})
        logger.info("[Scheduler] Starting run: %s", self._graph.summary())

        try:
            await self._pool.start()
            cycle = 0
            while not self._graph.is_complete():
                cycle += 1
                progressed = False
                ready = self._graph.ready_set()

                # --- Skip rule: fingerprint already cached ---
                # --- 跳过规则：指纹已在缓存中 ---
                to_run: list[Target] = []
                for t in ready:
                    if self._try_skip(t):
                        progressed = True
                    elif t.status == TargetStatus.READY:
                        to_run.append(t)
                if self._fatal:
                    aborted = True
                    break

                local = [t for t in to_run if not self._config.hpc_for(t)]
                remote = [t for t in to_run if self._config.hpc_for(t)]

                self._emit("cycle", {
                    "cycle": cycle,
                    "local": [t.name for t in local],
                    "remote": [t.name for t in remote],
                    "in_flight": len(in_flight),
                })

                # --- Local targets: synchronously, in-process ---
                # --- 本地目标：在编排进程内同步执行 ---
                for t in local:
                    self._run_local(t)
                    progressed = True
                    if self._fatal:
                        break
                if self._fatal:
                    aborted = True
                    break

                # --- Remote targets: bounded by `jobs` ---
                # --- 远程目标：在途数量受 `jobs` 限制 ---
                for t in remote:
                    if len(in_flight) >= jobs:
                        break
                    dispatched = self._dispatch(t)
                    if dispatched is not None:
                        task, fingerprint = dispatched
                        in_flight[task] = (t.name, fingerprint)
                    else:
                        progressed = True  # 快照读取失败，目标已标记 FAILED
                    if self._fatal:
                        break
                if self._fatal:
                    aborted = True
                    break

                # --- Collect completions ---
                # --- 收集完成结果 ---
                if in_flight:
                    if progressed:
                        done = {task for task in in_flight if task.done()}
                    else:
                        done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                    for task in done:
                        name, fingerprint = in_flight.pop(task)
                        self._on_result(name, fingerprint, task.result(), committed_by_worker=self._worker_caches)
                        if self._fatal:
                            break
                elif not progressed and not ready:
                    logger.error("[Scheduler] No progress possible at cycle %d. %s", cycle, self._graph.summary())
                    break

                if self._fatal:
                    aborted = True
                    break

                # --- Memory management before the next cycle ---
                # --- 下一轮之前进行内存管理 ---
                evicted = self._memory.apply(self._graph)
                if evicted:
                    self._emit("evicted", {"cycle": cycle, "targets": sorted(evicted)})

                logger.debug("[Scheduler] Cycle %d done. %s", cycle, self._graph.summary())
        except BaseException:
            aborted = True
            raise
        finally:
            if in_flight:
                for task in in_flight:
                    task.cancel()
                await asyncio.gather(*in_flight, return_exceptions=True)
            if aborted:
                self._revert_interrupted()
            await self._pool.shutdown()

        summary = self._build_summary(time.perf_counter() - started, aborted)
        self._emit("run_complete", summary)
        logger.info(
            "[Scheduler] Run finished in %.2fs: %d built, %d skipped, %d failed, %d pending%s",
            summary.duration, len(summary.built), len(summary.skipped),
            len(summary.failed), len(summary.pending), " (aborted)" if aborted else "",
        )
        return summary

    @property
    def _worker_caches(self) -> bool:
        return self._pool.caching == CachingMode.WORKER

    # ------------------------------------------------------------------
    # Dispatch
    # 分派
    # ------------------------------------------------------------------

    def _try_skip(self, target: Target) -> bool:
        """
        Mark `target` BUILT without running it if its fingerprint is cached.
        若指纹已缓存，则不执行直接标记为 BUILT。
        """
        fingerprint = self._graph.fingerprint(target.name)
        try:
            hit = self._cache.exists(fingerprint)
        except Exception as exc:
            self._fail(target.name, FailureKind.CACHE, str(CacheError(fingerprint, exc)))
            return True
        if not hit:
            return False
        self._graph.mark_built(target.name)
        self._skipped.add(target.name)
        self._memory.mark_cached(target.name, fingerprint)
        self._emit("target_skipped", {"target": target})
        logger.info("[Scheduler] %s up to date (cache hit)", target.name)
        return True

    def _prepare(self, target: Target) -> tuple[str, dict[str, Any]] | None:
        """Fingerprint + dependency snapshot, or None if the snapshot failed."""
        fingerprint = self._graph.fingerprint(target.name)
        try:
            deps = self._memory.snapshot(self._graph.dependencies_of(target.name))
        except CacheError as exc:
            self._fail(target.name, FailureKind.CACHE, str(exc))
            return None
        self._graph.mark_running(target.name)
        self._attempts[target.name] = self._attempts.get(target.name, 0) + 1
        return fingerprint, deps

    def _dispatch(self, target: Target) -> tuple[asyncio.Task[WorkerResult], str] | None:
        prepared = self._prepare(target)
        if prepared is None:
            return None
        fingerprint, deps = prepared
        self._emit("target_running", {"target": target, "local": False})
        task = asyncio.create_task(
            self._pool.submit(target, fingerprint, deps, resources=self._config.resources_for(target))
        )
        return task, fingerprint

    def _run_local(self, target: Target) -> None:
        """
        Build an hpc=False target right here, in the orchestrator process.
        hpc=False 的目标直接在编排进程内构建。
        """
        prepared = self._prepare(target)
        if prepared is None:
            return
        fingerprint, deps = prepared
        self._emit("target_running", {"target": target, "local": True})

        started = time.perf_counter()
        try:
            value = run_command(target.command, deps)
        except Exception as exc:
            result = failed_result(target.name, ComputationError(target.name, exc), "local")
        else:
            result = WorkerResult(target=target.name, success=True, value=value, worker_id="local")
        result.duration = time.perf_counter() - started
        self._on_result(target.name, fingerprint, result, committed_by_worker=False)

    # ------------------------------------------------------------------
    # Completion handling
    # 完成处理
    # ------------------------------------------------------------------

    def _on_result(self, name: str, fingerprint: str, result: WorkerResult, committed_by_worker: bool) -> None:
        target = self._graph.targets[name]
        self._durations[name] = self._durations.get(name, 0.0) + result.duration

        if result.success:
            try:
                self._commit(target, fingerprint, result, committed_by_worker)
            except CacheError as exc:
                result = result.model_copy(update={
                    "success": False,
                    "error_kind": exc.kind,
                    "message": str(exc),
                })
            else:
                self._graph.mark_built(name)
                self._emit("target_built", {"target": target, "result": result})
                logger.info("[Scheduler] %s built in %.2fs on %s", name, result.duration, result.worker_id)
                return

        kind = result.error_kind or FailureKind.COMPUTATION
        if self._attempts.get(name, 0) <= self._config.retries:
            self._graph.mark_retry(name)
            self._emit("target_retry", {"target": target, "result": result, "attempt": self._attempts[name]})
            logger.warning("[Scheduler] %s failed (%s), retrying: %s", name, kind.value, result.message)
            return
        self._fail(name, kind, result.message)

    def _commit(self, target: Target, fingerprint: str, result: WorkerResult, committed_by_worker: bool) -> None:
        """
        Persist a successful result and check that the cache now holds it
        under `fingerprint`. Either way the target only counts as BUILT once
        its entry is readable by the next run.
        持久化成功结果，并确认缓存中确实存在该指纹对应的条目。

        The fingerprint is also recomputed from the target and its
        dependencies. Dependency fingerprints are memoized for the run, so
        only a command whose source file was edited mid-run can make it drift.

        Raises:
            CacheError: fingerprint drifted, the write failed, or the cache
                has no entry afterwards.
        """
        current = compute_fingerprint(target, self._graph.dependency_fingerprints(target.name))
        if current != fingerprint:
            raise CacheError(fingerprint, f"fingerprint of '{target.name}' changed during the build")

        if not committed_by_worker:
            try:
                self._cache.put(fingerprint, result.value)
            except Exception as exc:
                raise CacheError(fingerprint, exc) from exc

        try:
            written = self._cache.exists(fingerprint)
        except Exception as exc:
            raise CacheError(fingerprint, exc) from exc
        if not written:
            writer = "worker" if committed_by_worker else "cache"
            raise CacheError(fingerprint, f"{writer} reported '{target.name}' stored but no cache entry exists")

        if committed_by_worker:
            self._memory.mark_cached(target.name, fingerprint)
        else:
            self._memory.store(target.name, fingerprint, result.value)

    def _fail(self, name: str, kind: FailureKind, message: str) -> None:
        """
        Mark `name` FAILED, cascade to its dependents and record every failure.
        标记 `name` 失败，级联到下游目标并记录每一个失败。
        """
        target = self._graph.targets[name]
        cascaded = self._graph.mark_failed(name)

        record = FailureRecord(target=name, kind=kind, message=message, root_cause=name, chain=[name])
        self._failures.append(record)
        self._emit("target_failed", {"target": target, "record": record, "cascaded": cascaded})
        logger.error("[Scheduler] %s FAILED (%s): %s", name, kind.value, message)

        for child in cascaded:
            self._failures.append(FailureRecord(
                target=child,
                kind=FailureKind.DEPENDENCY,
                message=f"upstream target '{name}' failed",
                root_cause=name,
                chain=self._graph.failure_chain(child),
            ))

        if self._config.fail_fast and not target.ignore_errors and self._fatal is None:
            self._fatal = record
            logger.error("[Scheduler] fail_fast: aborting run after %s", name)

    def _revert_interrupted(self) -> None:
        """Aborted run: READY/RUNNING targets go back to PENDING, safe to resume later."""
        for t in self._graph.with_status(TargetStatus.READY, TargetStatus.RUNNING):
            self._graph.mark_pending(t.name)

    # ------------------------------------------------------------------
    # Reporting
    # 汇总报告
    # ------------------------------------------------------------------

    def _build_summary(self, duration: float, aborted: bool) -> RunSummary:
        reports: dict[str, TargetReport] = {}
        for t in self._graph.with_status(*TargetStatus):
            if t.status == TargetStatus.BUILT:
                status = ReportStatus.SKIPPED if t.name in self._skipped else ReportStatus.BUILT
            elif t.status == TargetStatus.FAILED:
                status = ReportStatus.FAILED
            else:
                status = ReportStatus.PENDING
            root = self._graph.failed_by.get(t.name)
            reports[t.name] = TargetReport(
                name=t.name,
                status=status,
                fingerprint=self._graph.fingerprint(t.name),
                duration=self._durations.get(t.name, 0.0),
                failed_by=root if root != t.name else None,
            )
        return RunSummary(targets=reports, failures=list(self._failures), duration=duration, aborted=aborted)

    def _emit(self, event: str, data: Any) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event, data)
        except Exception:
            # UI 回调异常不能影响构建主流程
            logger.debug("[Scheduler] event handler failed for %s", event, exc_info=True)


# ======================================================================
# Convenience entry point
# 便捷入口
# ======================================================================

def outdated(graph: DependencyGraph, cache: Cache) -> list[str]:
    """Targets of `graph` whose fingerprint is missing from `cache`, in build order."""
    return [
        t.name for t in graph.with_status(*TargetStatus)
        if not cache.exists(graph.fingerprint(t.name))
    ]


def resolve_run_config(run_config: RunConfig | dict[str, Any] | None) -> RunConfig:
    """
    Accept a RunConfig, a plain dict of overrides, or None (environment defaults).
    Invalid values raise ConfigError.
    """
    if isinstance(run_config, RunConfig):
        return run_config
    try:
        return RunConfig.model_validate(run_config or {})
    except ValidationError as exc:
        raise ConfigError(f"Invalid run configuration: {exc}") from exc


def make(
    targets: Iterable[Target] | DependencyGraph,
    cache: Cache | None = None,
    run_config: RunConfig | dict[str, Any] | None = None,
    backend: ExecutionBackend | None = None,
    on_event: Callable[[str, Any], None] | None = None,
) -> RunSummary:
    """
    Build a plan end to end and return its summary.
    端到端构建一个计划并返回运行汇总。

    The graph is validated first, so a cyclic plan raises CycleError before
    any worker is spawned or any cache entry is written.
    先校验依赖图：有环的计划会在创建任何 worker、写入任何缓存之前抛出 CycleError。
    """
    run_config = resolve_run_config(run_config)

    if isinstance(targets, DependencyGraph):
        graph = targets
    else:
        def _transition(name: str, old: TargetStatus, new: TargetStatus) -> None:
            if on_event is not None:
                on_event("target_transition", {"target": name, "from": old.value, "to": new.value})

        graph = DependencyGraph(targets, on_transition=_transition)

    if cache is None:
        from cache.storage import FileCache
        cache = FileCache()

    pool = create_pool(
        run_config.worker_variant,
        backend or create_backend(run_config.backend),
        run_config.jobs,
        cache,
        caching=run_config.caching,
        timeout=run_config.timeout,
        worker_resources=run_config.worker_resources,
    )
    memory = MemoryManager(run_config.memory_strategy, cache)
    scheduler = Scheduler(graph, cache, pool, memory, run_config=run_config, on_event=on_event)
    return asyncio.run(scheduler.run())
