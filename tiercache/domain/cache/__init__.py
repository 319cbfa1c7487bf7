"""
Cache Domain Module

Entities, value objects, error taxonomy and the store contract
shared by every cache tier.
"""

from .entities import (
    CacheEntry,
    CacheResult,
    FlushResult,
    Loader,
    MetricSample,
    WriteEvent,
    WriteOp,
    Writer,
)
from .exceptions import (
    CacheConfigurationError,
    CacheException,
    CapacityEviction,
    CircuitOpenError,
    SerializationError,
    StoreTimeoutError,
    TransientStoreError,
    WriteFailure,
)
from .repository_interfaces import CacheStore
from .value_objects import (
    CacheKey,
    CacheOperation,
    CacheOptions,
    CacheSource,
    CacheTag,
    DEFAULT_OPTIONS,
    TTL,
    WriteEventKind,
    WriteOpState,
)

__all__ = [
    "CacheEntry",
    "CacheResult",
    "FlushResult",
    "Loader",
    "MetricSample",
    "WriteEvent",
    "WriteOp",
    "Writer",
    "CacheConfigurationError",
    "CacheException",
    "CapacityEviction",
    "CircuitOpenError",
    "SerializationError",
    "StoreTimeoutError",
    "TransientStoreError",
    "WriteFailure",
    "CacheStore",
    "CacheKey",
    "CacheOperation",
    "CacheOptions",
    "CacheSource",
    "CacheTag",
    "DEFAULT_OPTIONS",
    "TTL",
    "WriteEventKind",
    "WriteOpState",
]
