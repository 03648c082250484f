from .manager import (
    EvictionPolicy,
    LookaheadPolicy,
    MemoryManager,
    MinimalPolicy,
    RetainAllPolicy,
)

__all__ = ["MemoryManager", "EvictionPolicy", "RetainAllPolicy", "MinimalPolicy", "LookaheadPolicy"]
