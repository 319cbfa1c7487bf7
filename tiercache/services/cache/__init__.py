"""
Cache services: read/write strategies, write-behind queue, invalidation
graph and the CacheService facade.
"""

from .cache_service import CacheService
from .events import WriteEventBus, WriteObserver
from .invalidation import InvalidationGraph
from .strategies import CacheAsideStrategy, CacheStrategy, WriteThroughStrategy
from .write_behind import FlushScheduler, WriteBehindStrategy, WriteQueue

__all__ = [
    "CacheService",
    "WriteEventBus",
    "WriteObserver",
    "InvalidationGraph",
    "CacheAsideStrategy",
    "CacheStrategy",
    "WriteThroughStrategy",
    "FlushScheduler",
    "WriteBehindStrategy",
    "WriteQueue",
]
