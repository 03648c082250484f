"""
Worker Pool - dispatches targets to execution backends with bounded concurrency.
Worker 池 —— 以有界并发将目标分派给执行后端。

Two variants share one capability set {start, submit, shutdown}:
两种变体共享同一组能力 {start, submit, shutdown}：

  PersistentWorkerPool
    Spawns `jobs` long-lived workers at start. Submissions go on a queue and
    any idle worker pulls the next one, so process start-up cost is paid once.
    A worker that crashes or times out is torn down and replaced.
    启动时创建 `jobs` 个常驻 worker，提交进入队列，空闲 worker 拉取下一个。
    崩溃或超时的 worker 会被销毁并替换。

  TransientWorkerPool
    Spawns one worker per submission, tailored to the target's resource
    descriptor, and terminates it immediately afterwards.
    每次提交创建一个 worker（可按目标定制资源），完成后立即销毁。

Guarantees of both variants:
  - at most `jobs` submissions execute at once
  - crashes and timeouts come back as failed WorkerResults, never dropped
  - every submission resolves exactly once

Caching delegation: with CachingMode.WORKER the worker stores the artifact in
the cache itself and returns no value; with CachingMode.MAIN the artifact is
returned and the Scheduler commits it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import BrokenExecutor
from types import MappingProxyType
from typing import Any, Callable, Mapping

from cache.base import Cache
from errors import CacheError, ComputationError, ConfigError, WorkerCrash, WorkerTimeout
from schema import CachingMode, Target, WorkerConfig, WorkerResult, WorkerVariant
from workers.backends import ExecutionBackend, WorkerHandle

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Worker-side entry points (module level so ProcessBackend can pickle them)
# worker 端入口函数（定义在模块级，便于 ProcessBackend 序列化）
# ----------------------------------------------------------------------

def run_command(command: Callable[..., Any], deps: dict[str, Any]) -> Any:
    """
    Run a target's command against a private, read-only view of its inputs.
    每次执行都拿到独立的只读依赖快照，worker 之间没有共享的可变状态。
    """
    return command(MappingProxyType(deps))


def run_and_store(command: Callable[..., Any], deps: dict[str, Any], cache: Cache, key: str) -> None:
    """Worker-side caching: build, then write the artifact straight to the cache."""
    value = command(MappingProxyType(deps))
    try:
        cache.put(key, value)
    except Exception as exc:
        raise CacheError(key, f"{type(exc).__name__}: {exc}") from exc
    return None


def failed_result(
    target: str,
    error: ComputationError | CacheError,
    worker_id: str | None = None,
    duration: float = 0.0,
) -> WorkerResult:
    """
    The WorkerResult reporting `error`: its FailureKind and its message.
    将单目标错误转换为失败的 WorkerResult。
    """
    return WorkerResult(
        target=target,
        success=False,
        error_kind=error.kind,
        message=str(error),
        duration=duration,
        worker_id=worker_id,
    )


# ----------------------------------------------------------------------
# Base class
# 基类
# ----------------------------------------------------------------------

class WorkerPool(ABC):
    """
    Abstract worker pool. The Scheduler only ever talks to this interface.
    抽象 worker 池，调度器只通过该接口与 worker 交互，从不直接访问 worker。
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        jobs: int,
        cache: Cache,
        caching: CachingMode = CachingMode.MAIN,
        timeout: float | None = None,
        worker_resources: dict[str, float] | None = None,
    ):
        if jobs < 1:
            raise ConfigError(f"jobs must be >= 1, got {jobs}")
        self._backend = backend
        self._jobs = jobs
        self._cache = cache
        self._caching = caching
        self._timeout = timeout
        self._worker_resources = dict(worker_resources or {})
        self._check_caching_support()

    @property
    def jobs(self) -> int:
        return self._jobs

    @property
    def caching(self) -> CachingMode:
        return self._caching

    def _check_caching_support(self) -> None:
        """
        Worker-side caching needs a cache every worker can write concurrently.
        worker 端缓存要求所有 worker 能并发写入同一存储。
        """
        if self._caching != CachingMode.WORKER:
            return
        if not self._cache.supports_concurrent_writers:
            raise ConfigError(
                f"Worker-side caching requires a cache with concurrent writers; "
                f"{type(self._cache).__name__} does not support them"
            )
        if not self._backend.shares_memory and not self._cache.process_safe:
            raise ConfigError(
                f"Worker-side caching with {type(self._backend).__name__} requires a cache shared "
                f"across processes; {type(self._cache).__name__} is process-local"
            )

    async def start(self) -> None:
        """Prepare workers. Variants without up-front workers do nothing."""

    @abstractmethod
    async def submit(
        self,
        target: Target,
        fingerprint: str,
        deps: Mapping[str, Any],
        resources: dict[str, float] | None = None,
    ) -> WorkerResult:
        """
        Build `target` on some worker and return the outcome.
        在某个 worker 上构建 `target` 并返回结果。
        """

    @abstractmethod
    async def shutdown(self) -> None:
        """Tear down every worker. Safe to call more than once."""

    # ------------------------------------------------------------------
    # Shared execution path
    # 共享的执行路径
    # ------------------------------------------------------------------

    async def _execute(
        self,
        handle: WorkerHandle,
        target: Target,
        fingerprint: str,
        deps: Mapping[str, Any],
    ) -> tuple[WorkerResult, bool]:
        """
        Run one submission on `handle`. Returns the result and whether the
        worker is still usable (False after a crash or timeout).
        在 `handle` 上执行一次提交，返回结果以及 worker 是否仍可复用。
        """
        if self._caching == CachingMode.WORKER:
            fn, args = run_and_store, (target.command, dict(deps), self._cache, fingerprint)
        else:
            fn, args = run_command, (target.command, dict(deps))

        started = time.perf_counter()
        task = asyncio.ensure_future(handle.submit(fn, *args))
        try:
            done, _ = await asyncio.wait({task}, timeout=self._timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        elapsed = time.perf_counter() - started

        # worker 是否仍可复用：崩溃或超时后不可复用
        error: ComputationError | CacheError
        healthy = True
        if not done:
            task.cancel()
            logger.warning("[Pool] %s timed out after %.1fs on %s", target.name, self._timeout, handle.worker_id)
            error, healthy = WorkerTimeout(target.name, self._timeout), False
        else:
            try:
                value = task.result()
            except BrokenExecutor as exc:
                logger.error("[Pool] worker %s crashed while building %s", handle.worker_id, target.name)
                error, healthy = WorkerCrash(target.name, exc), False
            except CacheError as exc:
                error = exc
            except Exception as exc:
                error = ComputationError(target.name, exc)
            else:
                return WorkerResult(
                    target=target.name, success=True, value=value, duration=elapsed, worker_id=handle.worker_id,
                ), True

        return failed_result(target.name, error, handle.worker_id, elapsed), healthy

    def _crash_result(self, target: Target, worker_id: str | None, message: str) -> WorkerResult:
        return failed_result(target.name, WorkerCrash(target.name, message), worker_id)


# ----------------------------------------------------------------------
# Persistent workers
# 常驻 worker
# ----------------------------------------------------------------------

class PersistentWorkerPool(WorkerPool):
    """
    `jobs` long-lived workers pulling submissions from a shared queue.
    `jobs` 个常驻 worker 从共享队列中拉取提交。
    """

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._handles: list[WorkerHandle | None] = []
        self._tasks: list[asyncio.Task[None]] = []
        self._queue: asyncio.Queue | None = None
        self._generation = 0  # 每次重建 worker 时递增，用于生成唯一 worker_id

    async def start(self) -> None:
        if self._queue is not None:
            return
        self._queue = asyncio.Queue()
        for slot in range(self._jobs):
            self._handles.append(self._spawn(slot))
            self._tasks.append(asyncio.create_task(self._worker_loop(slot)))
        logger.info("[Pool] started %d persistent workers", self._jobs)

    def _spawn(self, slot: int) -> WorkerHandle | None:
        self._generation += 1
        config = WorkerConfig(worker_id=f"worker-{slot + 1}.{self._generation}", resources=dict(self._worker_resources))
        try:
            return self._backend.spawn_worker(config)
        except Exception:
            logger.exception("[Pool] failed to spawn %s", config.worker_id)
            return None

    async def submit(
        self,
        target: Target,
        fingerprint: str,
        deps: Mapping[str, Any],
        resources: dict[str, float] | None = None,
    ) -> WorkerResult:
        # persistent workers are spawned once, per-target resources cannot be tailored
        await self.start()
        assert self._queue is not None
        future: asyncio.Future[WorkerResult] = asyncio.get_running_loop().create_future()
        await self._queue.put((target, fingerprint, deps, future))
        return await future

    async def _worker_loop(self, slot: int) -> None:
        assert self._queue is not None
        while True:
            target, fingerprint, deps, future = await self._queue.get()
            if future.done():
                continue  # 提交方已取消

            handle = self._handles[slot]
            if handle is None:
                handle = self._handles[slot] = self._spawn(slot)
            if handle is None:
                future.set_result(self._crash_result(target, None, "could not spawn worker"))
                continue

            try:
                result, healthy = await self._execute(handle, target, fingerprint, deps)
            except asyncio.CancelledError:
                if not future.done():
                    future.set_result(self._crash_result(target, handle.worker_id, "pool shut down during build"))
                raise
            if not future.done():
                future.set_result(result)

            if not healthy:
                # 崩溃或超时的 worker 不再复用，销毁后按需重建
                handle.terminate()
                self._handles[slot] = self._spawn(slot)

    async def shutdown(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        # 仍在队列中的提交也必须得到结果（恰好一次）
        if self._queue is not None:
            while not self._queue.empty():
                target, _, _, future = self._queue.get_nowait()
                if not future.done():
                    future.set_result(self._crash_result(target, None, "pool shut down before dispatch"))

        for handle in self._handles:
            if handle is not None:
                handle.terminate()
        self._handles.clear()
        self._queue = None
        logger.info("[Pool] persistent workers shut down")


# ----------------------------------------------------------------------
# Transient workers
# 一次性 worker
# ----------------------------------------------------------------------

class TransientWorkerPool(WorkerPool):
    """
    One fresh worker per submission, at most `jobs` alive at a time.
    每次提交创建一个新 worker，同一时刻最多 `jobs` 个存活。
    """

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._slots = asyncio.Semaphore(self._jobs)
        self._live: set[WorkerHandle] = set()
        self._spawned = 0

    async def submit(
        self,
        target: Target,
        fingerprint: str,
        deps: Mapping[str, Any],
        resources: dict[str, float] | None = None,
    ) -> WorkerResult:
        async with self._slots:
            self._spawned += 1
            worker_id = f"{target.name}#{self._spawned}"
            config = WorkerConfig(
                worker_id=worker_id,
                resources=dict(resources if resources is not None else target.resources),
            )
            try:
                handle = self._backend.spawn_worker(config)
            except Exception as exc:
                logger.exception("[Pool] failed to spawn %s", worker_id)
                return self._crash_result(target, worker_id, f"could not spawn worker: {exc}")

            self._live.add(handle)
            try:
                result, _ = await self._execute(handle, target, fingerprint, deps)
            finally:
                handle.terminate()
                self._live.discard(handle)
            return result

    async def shutdown(self) -> None:
        for handle in list(self._live):
            handle.terminate()
        self._live.clear()
        logger.info("[Pool] transient workers shut down")


_POOLS: dict[WorkerVariant, type[WorkerPool]] = {
    WorkerVariant.PERSISTENT: PersistentWorkerPool,
    WorkerVariant.TRANSIENT: TransientWorkerPool,
}


def create_pool(
    variant: WorkerVariant | str,
    backend: ExecutionBackend,
    jobs: int,
    cache: Cache,
    caching: CachingMode = CachingMode.MAIN,
    timeout: float | None = None,
    worker_resources: dict[str, float] | None = None,
) -> WorkerPool:
    """
    Build the pool variant selected by configuration.
    根据配置创建对应的 worker 池变体。
    """
    try:
        pool_cls = _POOLS[WorkerVariant(variant)]
    except ValueError:
        raise ConfigError(f"Unknown worker variant: {variant!r}") from None
    return pool_cls(
        backend,
        jobs,
        cache,
        caching=CachingMode(caching),
        timeout=timeout,
        worker_resources=worker_resources,
    )
