"""
Cache Domain Entities

Core domain entities for cache management.
Encapsulates the lifecycle rules of entries, queued writes and samples.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Union
from uuid import UUID, uuid4

from .value_objects import (
    CacheOperation,
    CacheSource,
    WriteEventKind,
    WriteOpState,
)

Writer = Callable[[Any], Union[Any, Awaitable[Any]]]
Loader = Callable[[], Union[Any, Awaitable[Any]]]


@dataclass
class CacheEntry:
    """
    In-process cache entry.

    Owned by a single BoundedCache; mutated on every get/set.
    """

    key: str
    value: Any
    created_at: float
    ttl: float = 0.0
    access_order: int = 0
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        """Check if the entry has outlived its TTL. TTL 0 never expires."""
        if self.ttl <= 0:
            return False
        return now - self.created_at >= self.ttl

    def remaining(self, now: float) -> Optional[float]:
        """Seconds left before expiry, ``None`` for unbounded entries."""
        if self.ttl <= 0:
            return None
        return max(0.0, self.ttl - (now - self.created_at))

    def touch(self, order: int) -> None:
        """Record access to the entry."""
        self.access_order = order
        self.access_count += 1


@dataclass
class WriteOp:
    """
    Queued write-behind operation.

    Created by ``WriteBehindStrategy.set``; destroyed on commit or once
    its retries are exhausted.
    """

    key: str
    payload: Any
    writer: Writer
    enqueued_at: float
    op_id: UUID = field(default_factory=uuid4)
    retry_count: int = 0
    state: WriteOpState = WriteOpState.QUEUED
    last_error: Optional[BaseException] = None
    # Set once a newer value for the key was committed; never retried after that.
    superseded: bool = False

    @property
    def attempts(self) -> int:
        """Attempts made so far (a committed op counts its final attempt)."""
        if self.state == WriteOpState.COMMITTED:
            return self.retry_count + 1
        return self.retry_count

    def begin_attempt(self) -> None:
        self.state = WriteOpState.ATTEMPTING

    def commit(self) -> None:
        self.state = WriteOpState.COMMITTED
        self.last_error = None

    def fail(self, error: BaseException, max_retries: int) -> bool:
        """Record a failed attempt.

        Returns True when the op may be retried, False once it is abandoned.
        """
        self.retry_count += 1
        self.last_error = error
        if self.retry_count > max_retries:
            self.state = WriteOpState.ABANDONED
            return False
        self.state = WriteOpState.QUEUED
        return True

    def abandon(self, error: Optional[BaseException] = None) -> None:
        self.state = WriteOpState.ABANDONED
        if error is not None:
            self.last_error = error

    @property
    def is_terminal(self) -> bool:
        return self.state in (WriteOpState.COMMITTED, WriteOpState.ABANDONED)


@dataclass(frozen=True)
class WriteEvent:
    """Outcome of a write-behind attempt, published to observers."""

    kind: WriteEventKind
    key: str
    op_id: UUID
    attempt: int
    error: Optional[BaseException] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class MetricSample:
    """Single observation kept in the metrics rolling window."""

    operation: CacheOperation
    latency_ms: float
    timestamp: float
    key: Optional[str] = None


@dataclass(frozen=True)
class CacheResult:
    """Value returned by a read together with where it came from."""

    value: Any
    source: CacheSource

    @property
    def from_cache(self) -> bool:
        return self.source in (CacheSource.CACHE, CacheSource.CACHE_STALE)


@dataclass
class FlushResult:
    """Counts reported by a synchronous write-behind drain."""

    processed: int = 0
    remaining: int = 0
    committed: int = 0
    abandoned_keys: List[str] = field(default_factory=list)
