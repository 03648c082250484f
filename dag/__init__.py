"""
DAG module - Core engine for build graph execution.
DAG 模块 —— 构建图执行的核心引擎。

Components:
  - graph.py:         DependencyGraph data structure and graph operations
  - fingerprint.py:   Content-addressed cache keys
  - scheduler.py:     Dispatch loop (ready set -> cache skip -> local / remote)

模块组成：
  - graph.py:         DependencyGraph 数据结构与图算法（拓扑排序、就绪检测、失败传播）
  - fingerprint.py:   内容寻址缓存键
  - scheduler.py:     调度循环（就绪集合 -> 缓存跳过 -> 本地 / 远程分派）
"""

from dag.graph import DependencyGraph                   # 构建目标有向无环图
from dag.scheduler import Scheduler, make               # 调度器与便捷入口
