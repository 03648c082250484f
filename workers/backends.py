"""
Execution Backends - where a worker actually runs.
执行后端 —— worker 实际运行的位置。

A backend spawns WorkerHandles; a handle runs submitted callables one at a
time and can be terminated. The pool never cares whether the handle is a
thread, a local process or a cluster job, which keeps cluster submission a
pluggable concern layered on top.

后端负责创建 WorkerHandle；每个 handle 一次运行一个提交的可调用对象，并可被销毁。
WorkerPool 不关心 handle 是线程、本地进程还是集群作业，集群提交因此保持为可插拔的外部扩展。

Reference backends:
  - ThreadBackend:  each worker is a dedicated single-thread executor
  - ProcessBackend: each worker is a dedicated single-process executor
                    (spawn start method, callables must be picklable).
                    Terminating it kills the child process, even mid-task.

Plan files are executed under generated module names (see
`load_source_module`). Spawned workers load the same files on start-up so
commands defined there unpickle on the worker side.
计划文件以生成的模块名执行；spawn 出的 worker 启动时加载相同的文件，
保证其中定义的命令可以在 worker 端反序列化。
"""

from __future__ import annotations

import asyncio
import functools
import importlib.util
import logging
import multiprocessing as mp
import sys
from abc import ABC, abstractmethod
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from types import ModuleType
from typing import Any, Callable

from errors import ConfigError
from schema import WorkerBackendKind, WorkerConfig

logger = logging.getLogger(__name__)

# seconds to wait for a terminated child before killing it
# 终止子进程后等待的秒数，超时则强制 kill
_TERMINATE_GRACE = 2.0

# module name -> source path of every file loaded with load_source_module
# 通过 load_source_module 加载的模块：模块名 -> 源文件路径
_SOURCE_MODULES: dict[str, str] = {}


def load_source_module(name: str, path: str) -> ModuleType:
    """
    Execute the Python file at `path` as module `name` and register it in
    sys.modules. Process workers spawned afterwards load it too.
    将 `path` 处的文件作为模块 `name` 执行并注册到 sys.modules；之后创建的进程 worker 也会加载它。
    """
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Could not load module from {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        del sys.modules[name]
        raise
    _SOURCE_MODULES[name] = path
    return module


def _preload_source_modules(modules: dict[str, str]) -> None:
    """ProcessPoolExecutor initializer: runs in the child before any task."""
    for name, path in modules.items():
        if name in sys.modules:
            continue
        try:
            load_source_module(name, path)
        except (OSError, ImportError):
            # 仅影响引用该文件中命令的目标，它们会在反序列化时失败
            logger.warning("[Backend] could not load %s from %s in worker", name, path, exc_info=True)


class WorkerHandle(ABC):
    """
    A live execution context owned by the WorkerPool.
    由 WorkerPool 独占持有的执行上下文。
    """

    def __init__(self, config: WorkerConfig):
        self.config = config

    @property
    def worker_id(self) -> str:
        return self.config.worker_id

    @abstractmethod
    async def submit(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run fn(*args) on this worker and return its result (or raise its error)."""

    @abstractmethod
    def terminate(self) -> None:
        """Tear the worker down. Outstanding work is abandoned."""


class ExecutionBackend(ABC):
    """
    Abstract factory for workers.
    worker 的抽象工厂。

    `shares_memory` tells the pool whether workers live in the orchestrator's
    address space, which decides what kind of cache worker-side caching needs.
    """

    shares_memory: bool = True

    @abstractmethod
    def spawn_worker(self, config: WorkerConfig) -> WorkerHandle:
        """Create and return a ready-to-use worker."""


# ----------------------------------------------------------------------
# concurrent.futures based handles
# 基于 concurrent.futures 的 handle
# ----------------------------------------------------------------------

class ExecutorHandle(WorkerHandle):
    """
    Wraps a one-slot concurrent.futures executor as a worker.
    将单槽位的 concurrent.futures 执行器包装为 worker。
    """

    def __init__(self, config: WorkerConfig, executor: Executor):
        super().__init__(config)
        self._executor = executor
        self._running: Future | None = None

    @property
    def busy(self) -> bool:
        """True while a submitted callable has not finished on the executor."""
        return self._running is not None and not self._running.done()

    async def submit(self, fn: Callable[..., Any], *args: Any) -> Any:
        # wrap_future 把同步计算包装为可等待对象，避免阻塞事件循环
        self._running = self._executor.submit(functools.partial(fn, *args))
        return await asyncio.wrap_future(self._running)

    def terminate(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.debug("[Backend] worker %s terminated", self.worker_id)


class ThreadBackend(ExecutionBackend):
    """Workers are threads of the orchestrator process."""

    shares_memory = True

    def spawn_worker(self, config: WorkerConfig) -> WorkerHandle:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=config.worker_id)
        logger.debug("[Backend] spawned thread worker %s resources=%s", config.worker_id, config.resources)
        return ExecutorHandle(config, executor)


class ProcessHandle(ExecutorHandle):
    """
    A single-process executor whose child is killed on terminate().
    Executor shutdown alone waits for a busy child to finish its task.
    单进程执行器；terminate() 会直接结束子进程，即使它正在执行任务。
    """

    _executor: ProcessPoolExecutor

    def terminate(self) -> None:
        if self.busy:
            self._kill_children()
        super().terminate()

    def _kill_children(self) -> None:
        # _processes 在 shutdown() 之后被置为 None
        children = list((self._executor._processes or {}).values())
        for proc in children:
            if proc.is_alive():
                logger.info("[Backend] worker %s: terminating busy child pid %s", self.worker_id, proc.pid)
                proc.terminate()
        for proc in children:
            proc.join(_TERMINATE_GRACE)
            if proc.is_alive():
                logger.warning("[Backend] worker %s: pid %s ignored SIGTERM, killing", self.worker_id, proc.pid)
                proc.kill()
                proc.join()


class ProcessBackend(ExecutionBackend):
    """
    Workers are separate Python processes.
    Crashed processes surface as BrokenProcessPool on the next result.
    worker 是独立的 Python 进程；进程崩溃会以 BrokenProcessPool 的形式暴露。
    """

    shares_memory = False

    def __init__(self, start_method: str = "spawn"):
        self._ctx = mp.get_context(start_method)

    def spawn_worker(self, config: WorkerConfig) -> WorkerHandle:
        executor = ProcessPoolExecutor(
            max_workers=1,
            mp_context=self._ctx,
            initializer=_preload_source_modules,
            initargs=(dict(_SOURCE_MODULES),),
        )
        logger.debug("[Backend] spawned process worker %s resources=%s", config.worker_id, config.resources)
        return ProcessHandle(config, executor)


_BACKENDS: dict[WorkerBackendKind, type[ExecutionBackend]] = {
    WorkerBackendKind.THREAD: ThreadBackend,
    WorkerBackendKind.PROCESS: ProcessBackend,
}


def create_backend(kind: WorkerBackendKind | str) -> ExecutionBackend:
    try:
        return _BACKENDS[WorkerBackendKind(kind)]()
    except ValueError:
        raise ConfigError(f"Unknown worker backend: {kind!r}") from None
