"""
Buildmaster - command line entry point.
Buildmaster —— 命令行入口。

Loads a Python plan file, builds it with the dependency-aware scheduler and
renders progress with a rich console UI: one line per dispatch cycle, a line
per target outcome, and a summary table at the end.
加载 Python 计划文件，用依赖感知调度器构建，并通过 Rich 控制台实时展示：
每个调度轮次一行、每个目标结果一行，结束时输出汇总表格。

Usage / 用法:
    python main.py plans/demo.py -j 4 --memory minimal
    python main.py plans/demo.py --outdated
"""

from __future__ import annotations

import argparse
import hashlib
import logging
import os
import sys
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

import config
from cache.storage import FileCache
from dag.graph import DependencyGraph
from dag.scheduler import make, outdated, resolve_run_config
from errors import BuildError
from schema import (
    CachingMode,
    FailureRecord,
    MemoryStrategy,
    RunSummary,
    Target,
    WorkerBackendKind,
    WorkerResult,
    WorkerVariant,
)
from workers.backends import load_source_module

console = Console()

# Report status -> Rich style mapping
# 目标最终状态 -> Rich 样式映射
_STATUS_STYLES = {
    "built": "green",
    "skipped": "dim",
    "failed": "red",
    "pending": "yellow",
}


# ======================================================================
# UI Event Handler - Pretty-prints scheduler events
# UI 事件处理器 —— 美化打印调度器事件
# ======================================================================

def on_event(event: str, data: Any) -> None:
    """
    Handle events from the Scheduler and display them.
    处理来自 Scheduler 的事件并在控制台展示。
    """

    if event == "run_start":
        console.print()
        console.print(Panel(
            f"[bold]{data['targets']}[/bold] targets, jobs=[bold]{data['jobs']}[/bold]",
            title="[bold blue]Build[/bold blue]",
            border_style="blue",
        ))

    elif event == "cycle":
        # 调度轮次：显示本轮本地与远程目标
        if not data["local"] and not data["remote"]:
            return
        parts = []
        if data["local"]:
            parts.append(f"local: [cyan]{', '.join(data['local'])}[/cyan]")
        if data["remote"]:
            parts.append(f"remote: [cyan]{', '.join(data['remote'])}[/cyan]")
        console.print(
            f"\n  [bold yellow]--- Cycle {data['cycle']} ---[/bold yellow] "
            f"{'  '.join(parts)}  [dim](in flight: {data['in_flight']})[/dim]"
        )

    elif event == "target_skipped":
        target: Target = data["target"]
        console.print(f"    [dim]== {target.name} up to date[/dim]")

    elif event == "target_running":
        target: Target = data["target"]
        where = "in-process" if data["local"] else "worker"
        console.print(f"    [yellow]>> {target.name}[/yellow] [dim]({where})[/dim]")

    elif event == "target_built":
        target: Target = data["target"]
        result: WorkerResult = data["result"]
        console.print(
            f"    [green]<< {target.name} built[/green] "
            f"[dim]{result.duration:.2f}s on {result.worker_id}[/dim]"
        )

    elif event == "target_retry":
        target: Target = data["target"]
        result: WorkerResult = data["result"]
        console.print(f"    [magenta]<< {target.name} retry #{data['attempt']}:[/magenta] {result.message}")

    elif event == "target_failed":
        record: FailureRecord = data["record"]
        console.print(f"    [red]<< {record.target} FAILED ({record.kind.value}).[/red]")
        console.print(Panel(record.message[:500], title=f"{record.target} Error", border_style="red"))
        if data["cascaded"]:
            console.print(f"      [dim]also failed: {', '.join(data['cascaded'])}[/dim]")

    elif event == "evicted":
        console.print(f"    [dim]evicted from memory: {', '.join(data['targets'])}[/dim]")

    elif event == "target_transition":
        pass  # 状态转移事件：已由 running/built/failed 事件隐式处理，此处静默

    elif event == "run_complete":
        _print_summary(data)


def _print_summary(summary: RunSummary) -> None:
    table = Table(title="Build Summary", border_style="cyan", show_lines=False)
    table.add_column("Target", style="cyan")
    table.add_column("Status", width=8)
    table.add_column("Time", justify="right", width=8)
    table.add_column("Fingerprint", style="dim", width=14)
    table.add_column("Failed by", style="dim")
    for report in summary.targets.values():
        style = _STATUS_STYLES[report.status.value]
        table.add_row(
            report.name,
            f"[{style}]{report.status.value}[/{style}]",
            f"{report.duration:.2f}s",
            (report.fingerprint or "")[:12],
            report.failed_by or "-",
        )
    console.print()
    console.print(table)

    style = "green" if summary.ok else "red"
    verdict = "OK" if summary.ok else ("ABORTED" if summary.aborted else "FAILED")
    console.print(Panel(
        f"Verdict: [{style}]{verdict}[/{style}]  |  "
        f"{len(summary.built)} built, {len(summary.skipped)} skipped, "
        f"{len(summary.failed)} failed, {len(summary.pending)} pending  |  {summary.duration:.2f}s",
        border_style=style,
    ))
    # 逐条列出根因失败（级联失败只显示因果链）
    for record in summary.failures:
        if record.target == record.root_cause:
            console.print(f"  [red]{record.target}[/red]: {record.message}")
        else:
            console.print(f"  [dim]{record.target}: {' -> '.join(record.chain)}[/dim]")


# ======================================================================
# Plan loading
# 计划加载
# ======================================================================

def load_plan(path: str) -> list[Target]:
    """
    Execute a plan file and return its targets.
    The file must define `plan` (a list of Target) or a `get_plan()` function.
    执行计划文件并返回目标列表；文件需定义 `plan` 列表或 `get_plan()` 函数。

    The file runs as its own module, named after its absolute path, so two
    plans sharing a basename (or named like one of our modules) never see
    each other. Process workers load the same file, which lets them unpickle
    the commands it defines.
    """
    if not os.path.isfile(path):
        raise BuildError(f"Plan file not found: {path}")
    full_path = os.path.abspath(path)
    digest = hashlib.sha256(full_path.encode("utf-8")).hexdigest()[:12]
    try:
        module = load_source_module(f"_buildmaster_plan_{digest}", full_path)
    except (ImportError, SyntaxError) as exc:
        raise BuildError(f"Cannot load plan file {path}: {exc}") from exc

    if hasattr(module, "get_plan"):
        return list(module.get_plan())
    if hasattr(module, "plan"):
        return list(module.plan)
    raise BuildError(f"Plan file {path} defines neither 'plan' nor 'get_plan()'")


# ======================================================================
# Main
# 主函数
# ======================================================================

def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging with rich handler.
    使用 Rich 处理器配置日志系统；verbose=True 时启用 DEBUG 级别。
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dependency-aware build scheduler")
    parser.add_argument("plan", help="Python file defining `plan` or `get_plan()`")
    parser.add_argument("-j", "--jobs", type=int, default=config.BUILD_JOBS, help="Max targets in flight")
    parser.add_argument("--memory", choices=[m.value for m in MemoryStrategy], default=config.MEMORY_STRATEGY)
    parser.add_argument("--workers", choices=[v.value for v in WorkerVariant], default=config.WORKER_VARIANT)
    parser.add_argument("--backend", choices=[b.value for b in WorkerBackendKind], default=config.WORKER_BACKEND)
    parser.add_argument("--caching", choices=[c.value for c in CachingMode], default=config.CACHING_MODE)
    parser.add_argument("--fail-fast", action="store_true", default=config.FAIL_FAST, help="Abort on first failure")
    parser.add_argument("--retries", type=int, default=config.BUILD_RETRIES, help="Re-submissions before FAILED")
    parser.add_argument("--timeout", type=float, default=config.WORKER_TIMEOUT, help="Seconds per target, 0 = none")
    parser.add_argument("--cache-dir", default=config.CACHE_DIR, help="File cache directory")
    parser.add_argument("--outdated", action="store_true", help="List targets that would be built, then exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    """
    程序入口：解析命令行参数，构建计划，返回退出码（0=全部成功，1=存在失败）。
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        targets = load_plan(args.plan)
        run_config = resolve_run_config({
            "jobs": args.jobs,
            "memory_strategy": args.memory,
            "worker_variant": args.workers,
            "backend": args.backend,
            "caching": args.caching,
            "fail_fast": args.fail_fast,
            "retries": args.retries,
            "timeout": args.timeout or None,
        })
        cache = FileCache(args.cache_dir)

        if args.outdated:
            # 只计算指纹并查询缓存，不创建任何 worker
            stale = outdated(DependencyGraph(targets), cache)
            for name in stale:
                console.print(name)
            if not stale:
                console.print("[dim]Everything is up to date.[/dim]")
            return 0

        summary = make(targets, cache=cache, run_config=run_config, on_event=on_event)
    except BuildError as exc:
        console.print(f"\n[red]Error: {exc}[/red]")
        return 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Build interrupted.[/yellow]")
        return 1

    return 0 if summary.ok else 1


if __name__ == "__main__":
    sys.exit(main())
