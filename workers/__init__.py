from .backends import ExecutionBackend, ProcessBackend, ThreadBackend, WorkerHandle, create_backend, load_source_module
from .pool import PersistentWorkerPool, TransientWorkerPool, WorkerPool, create_pool

__all__ = [
    "ExecutionBackend",
    "ThreadBackend",
    "ProcessBackend",
    "load_source_module",
    "WorkerHandle",
    "create_backend",
    "WorkerPool",
    "PersistentWorkerPool",
    "TransientWorkerPool",
    "create_pool",
]
