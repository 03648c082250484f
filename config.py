"""
Configuration module for the build scheduler.
Loads settings from environment variables or .env file.
构建调度器配置模块。
从环境变量或 .env 文件加载所有配置项。
"""

import os
from dotenv import load_dotenv

load_dotenv()  # 自动读取项目根目录的 .env 文件（若存在），优先级低于系统环境变量

# --- Concurrency ---
# --- 并发参数 ---
BUILD_JOBS = int(os.getenv("BUILD_JOBS", "2"))                # 同时在途的目标数上限（jobs）
BUILD_RETRIES = int(os.getenv("BUILD_RETRIES", "0"))          # 失败后重新提交的次数，0 表示不重试
WORKER_TIMEOUT = float(os.getenv("WORKER_TIMEOUT", "0"))      # 单次提交的超时秒数，0 表示不限制

# --- Workers ---
# --- Worker 池 ---
WORKER_VARIANT = os.getenv("WORKER_VARIANT", "persistent")  # "persistent"=常驻 worker | "transient"=每个目标一个 worker
WORKER_BACKEND = os.getenv("WORKER_BACKEND", "thread")      # "thread"=线程执行 | "process"=子进程执行

# --- Caching ---
# --- 缓存 ---
CACHING_MODE = os.getenv("CACHING_MODE", "main")  # "main"=调度器写缓存 | "worker"=worker 直接写缓存
CACHE_DIR = os.path.expanduser(os.getenv("CACHE_DIR", "~/.buildmaster/cache"))  # 文件缓存目录

# --- Memory ---
# --- 内存策略 ---
MEMORY_STRATEGY = os.getenv("MEMORY_STRATEGY", "lookahead")  # "retain_all" | "minimal" | "lookahead"

# --- Failure policy ---
# --- 失败策略 ---
FAIL_FAST = os.getenv("FAIL_FAST", "false").lower() == "true"  # 首个失败即中止整个运行
