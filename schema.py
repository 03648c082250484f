"""
Pydantic data models for the build scheduler.
Defines the core data structures shared by the graph, scheduler, worker pool
and memory manager.
构建调度器的 Pydantic 数据模型。
定义了贯穿 graph、scheduler、workers、memory 各层的核心数据结构。
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, Field

import config


# ======================================================================
# Enumerations
# 枚举类型
# ======================================================================

class TargetStatus(str, Enum):
    """
    Target lifecycle states. DependencyGraph enforces the legal transitions
    (see its transition table).
    目标生命周期状态，合法转移由 DependencyGraph 的转移表强制管理。
    """
    PENDING = "pending"   # 等待前置依赖完成
    READY = "ready"       # 依赖已满足，等待调度
    RUNNING = "running"   # 已提交给 worker 或正在本地执行
    BUILT = "built"       # 已构建（终态）
    FAILED = "failed"     # 失败（终态，自身失败或上游失败）


class Residency(str, Enum):
    """Where a built artifact currently lives. 已构建产物当前所在位置。"""
    RESIDENT = "resident"  # 保留在编排进程内存中
    EVICTED = "evicted"    # 已从内存淘汰，需要时从缓存重新读取


class MemoryStrategy(str, Enum):
    """
    Which artifacts stay in memory between dispatch cycles.
    调度轮次之间哪些产物保留在内存中。
    """
    RETAIN_ALL = "retain_all"  # 从不淘汰：最快，内存无上限
    MINIMAL = "minimal"        # 只保留即将运行目标的直接依赖
    LOOKAHEAD = "lookahead"    # 淘汰所有未完成目标都不再需要的产物


class WorkerVariant(str, Enum):
    PERSISTENT = "persistent"  # 常驻 worker，复用处理多个目标
    TRANSIENT = "transient"    # 每个目标一个 worker，用完即销毁


class WorkerBackendKind(str, Enum):
    THREAD = "thread"
    PROCESS = "process"


class CachingMode(str, Enum):
    """
    Who performs the final Cache.put for a built target.
    由谁执行最终的 Cache.put。
    """
    MAIN = "main"      # 调度器（编排进程）写缓存
    WORKER = "worker"  # worker 直接写缓存，要求缓存支持并发写


class FailureKind(str, Enum):
    """Diagnostic classification of a target failure. 失败原因分类（仅用于诊断）。"""
    COMPUTATION = "computation"
    WORKER_CRASH = "worker_crash"
    WORKER_TIMEOUT = "worker_timeout"
    CACHE = "cache"
    DEPENDENCY = "dependency"  # 上游失败导致的级联失败


class ReportStatus(str, Enum):
    """Final per-target status shown in the run summary."""
    BUILT = "built"
    SKIPPED = "skipped"  # 缓存命中，未执行
    FAILED = "failed"
    PENDING = "pending"  # fail-fast 中止时尚未完成


# ======================================================================
# Plan models
# 计划模型
# ======================================================================

class Target(BaseModel):
    """
    A single unit of computation with declared dependencies.
    带有依赖声明的单个计算单元。

    `command` receives a read-only mapping of dependency name -> artifact and
    returns the target's artifact. Only DependencyGraph mutates `status`.
    `command` 接收只读的「依赖名 -> 产物」映射，返回本目标的产物。
    """
    name: str = Field(description="Unique target name")                             # 目标唯一名称
    command: Callable[..., Any] = Field(description="Computation producing the artifact")  # 计算函数
    deps: list[str] = Field(default_factory=list, description="Names of prerequisite targets")  # 前置依赖
    resources: dict[str, float] = Field(
        default_factory=dict,
        description="Resource request forwarded to the execution backend, e.g. {'cores': 4}",
    )
    hpc: bool = Field(default=True, description="False forces in-process execution")  # False 表示必须在编排进程内执行
    ignore_errors: bool = Field(
        default=False,
        description="Failure is recorded but not propagated to dependents (make's '-' prefix)",
    )
    command_key: str | None = Field(
        default=None,
        description="Explicit identity of the computation for fingerprinting",
    )
    status: TargetStatus = TargetStatus.PENDING


# ======================================================================
# Run configuration
# 运行配置
# ======================================================================

class RunConfig(BaseModel):
    """
    Everything the Scheduler needs to know about one run.
    Defaults come from the environment (see config.py).
    单次运行的完整配置，默认值来自环境变量（见 config.py）。
    """
    jobs: int = Field(default_factory=lambda: config.BUILD_JOBS, ge=1)
    memory_strategy: MemoryStrategy = Field(default_factory=lambda: MemoryStrategy(config.MEMORY_STRATEGY))
    worker_variant: WorkerVariant = Field(default_factory=lambda: WorkerVariant(config.WORKER_VARIANT))
    backend: WorkerBackendKind = Field(default_factory=lambda: WorkerBackendKind(config.WORKER_BACKEND))
    caching: CachingMode = Field(default_factory=lambda: CachingMode(config.CACHING_MODE))
    fail_fast: bool = Field(default_factory=lambda: config.FAIL_FAST)
    retries: int = Field(default_factory=lambda: config.BUILD_RETRIES, ge=0)
    timeout: float | None = Field(default_factory=lambda: config.WORKER_TIMEOUT or None)

    hpc_overrides: dict[str, bool] = Field(default_factory=dict)                 # 按目标覆盖 hpc 标志
    resource_overrides: dict[str, dict[str, float]] = Field(default_factory=dict)  # 按目标覆盖资源需求
    worker_resources: dict[str, float] = Field(
        default_factory=dict,
        description="Resource descriptor used when spawning persistent workers",
    )

    def hpc_for(self, target: Target) -> bool:
        return self.hpc_overrides.get(target.name, target.hpc)

    def resources_for(self, target: Target) -> dict[str, float]:
        return self.resource_overrides.get(target.name, target.resources)


class WorkerConfig(BaseModel):
    """Spawn request for one worker. 单个 worker 的创建参数。"""
    worker_id: str = Field(description="Unique id, e.g. 'worker-1.3' or 'model#2'")
    resources: dict[str, float] = Field(
        default_factory=dict,
        description="Resource descriptor forwarded unchanged to the execution backend",
    )  # 资源描述，原样转交给后端


# ======================================================================
# Execution results
# 执行结果模型
# ======================================================================

class WorkerResult(BaseModel):
    """
    Outcome of one submission to the worker pool. Exactly one per submission.
    单次提交给 WorkerPool 的执行结果，每次提交恰好产生一个。
    """
    target: str
    success: bool
    value: Any = None                        # 产物（worker 端缓存模式下为 None）
    error_kind: FailureKind | None = None
    message: str = ""
    duration: float = 0.0                    # 执行耗时（秒）
    worker_id: str | None = None


class FailureRecord(BaseModel):
    """
    One failed target and what caused it.
    一个失败目标及其根因。
    """
    target: str
    kind: FailureKind
    message: str = ""
    root_cause: str = Field(description="Target whose own failure triggered this one")  # 触发级联失败的根因目标
    chain: list[str] = Field(default_factory=list, description="Causal path root -> target")  # 因果链：根因 -> 本目标


class TargetReport(BaseModel):
    name: str
    status: ReportStatus
    fingerprint: str | None = None
    duration: float = 0.0
    failed_by: str | None = None  # 级联失败时记录根因目标


class RunSummary(BaseModel):
    """
    Reported at the end of every run.
    每次运行结束时生成的汇总报告。
    """
    targets: dict[str, TargetReport] = Field(default_factory=dict)
    failures: list[FailureRecord] = Field(default_factory=list)
    duration: float = 0.0   # 墙钟时间（秒）
    aborted: bool = False   # fail-fast 导致的中止

    def with_status(self, status: ReportStatus) -> list[str]:
        return [name for name, r in self.targets.items() if r.status == status]

    @property
    def built(self) -> list[str]:
        return self.with_status(ReportStatus.BUILT)

    @property
    def skipped(self) -> list[str]:
        return self.with_status(ReportStatus.SKIPPED)

    @property
    def failed(self) -> list[str]:
        return self.with_status(ReportStatus.FAILED)

    @property
    def pending(self) -> list[str]:
        return self.with_status(ReportStatus.PENDING)

    @property
    def ok(self) -> bool:
        """True when every target ended up built or skipped."""
        return not self.aborted and all(
            r.status in (ReportStatus.BUILT, ReportStatus.SKIPPED) for r in self.targets.values()
        )
