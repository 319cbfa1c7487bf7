"""
tiercache - multi-tier caching for asyncio services.

An in-process LRU/TTL tier, a namespaced Redis tier, cache-aside,
write-through and write-behind policies, dependency/tag invalidation
and operation metrics behind a single ``CacheService``.
"""

from .core.clock import Clock, ManualClock
from .core.config import CacheSettings, WriteMode, get_settings
from .domain.cache import (
    CacheConfigurationError,
    CacheException,
    CacheOptions,
    CacheResult,
    CacheSource,
    CapacityEviction,
    CircuitOpenError,
    FlushResult,
    SerializationError,
    StoreTimeoutError,
    TransientStoreError,
    TTL,
    WriteEvent,
    WriteEventKind,
    WriteFailure,
)
from .infrastructure.memory import BoundedCache
from .infrastructure.redis import RemoteStoreClient
from .monitoring import MetricsCollector, MetricsSnapshot
from .services.cache import CacheService, InvalidationGraph

__version__ = "0.1.0"

__all__ = [
    "Clock",
    "ManualClock",
    "CacheSettings",
    "WriteMode",
    "get_settings",
    "CacheConfigurationError",
    "CacheException",
    "CacheOptions",
    "CacheResult",
    "CacheSource",
    "CapacityEviction",
    "CircuitOpenError",
    "FlushResult",
    "SerializationError",
    "StoreTimeoutError",
    "TransientStoreError",
    "TTL",
    "WriteEvent",
    "WriteEventKind",
    "WriteFailure",
    "BoundedCache",
    "RemoteStoreClient",
    "MetricsCollector",
    "MetricsSnapshot",
    "CacheService",
    "InvalidationGraph",
]
