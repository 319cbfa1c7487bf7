"""
Write-Behind Strategy

The store is written synchronously; the origin write is queued and
committed later by a flush loop. Failed origin writes are retried up to
``max_retries`` times and then abandoned with a ``WriteFailure`` event.
The original caller is never blocked or failed by the origin.
"""

import asyncio
import threading
from collections import OrderedDict
from typing import Any, Dict, List, Optional

import structlog
from opentelemetry import trace

from ...core.clock import Clock, system_clock
from ...domain.cache.entities import FlushResult, WriteEvent, WriteOp, Writer
from ...domain.cache.exceptions import (
    CacheConfigurationError,
    CacheException,
    SerializationError,
    WriteFailure,
)
from ...domain.cache.repository_interfaces import CacheStore
from ...domain.cache.value_objects import (
    DEFAULT_OPTIONS,
    CacheOptions,
    WriteEventKind,
    WriteOpState,
)
from ...monitoring.metrics import MetricsCollector
from .callbacks import invoke
from .events import WriteEventBus
from .strategies import CacheStrategy

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


class WriteQueue:
    """
    Keyed pending-write queue, last write wins.

    A key has at most one pending op. Ops handed out by ``take`` are
    tracked as in flight until completed or requeued; a key in flight is
    not handed out again, so two writes for one key never race at the
    origin.
    """

    def __init__(self):
        self._pending: "OrderedDict[str, WriteOp]" = OrderedDict()
        self._in_flight: Dict[str, WriteOp] = {}
        self._lock = threading.Lock()

    def put(self, op: WriteOp) -> Optional[WriteOp]:
        """Queue an op, returning the pending op it replaced, if any."""
        with self._lock:
            replaced = self._pending.pop(op.key, None)
            self._pending[op.key] = op
        return replaced

    def take(self, limit: int) -> List[WriteOp]:
        """Move up to ``limit`` pending ops into flight, oldest first."""
        batch: List[WriteOp] = []
        with self._lock:
            for key in list(self._pending):
                if len(batch) >= limit:
                    break
                if key in self._in_flight:
                    continue
                op = self._pending.pop(key)
                op.begin_attempt()
                self._in_flight[key] = op
                batch.append(op)
        return batch

    def complete(self, op: WriteOp) -> None:
        with self._lock:
            if self._in_flight.get(op.key) is op:
                del self._in_flight[op.key]

    def requeue(self, op: WriteOp) -> bool:
        """Return an in-flight op to the queue.

        False when a newer write for the key arrived meanwhile or the op
        was superseded by an immediate commit; the newer value wins and
        this op is dropped.
        """
        with self._lock:
            if self._in_flight.get(op.key) is op:
                del self._in_flight[op.key]
            if op.superseded or op.key in self._pending:
                return False
            op.state = WriteOpState.QUEUED
            self._pending[op.key] = op
            return True

    def supersede(self, key: str) -> Optional[WriteOp]:
        """Drop the pending op for ``key`` and mark its in-flight op superseded.

        Returns the in-flight op, if any, so the caller can wait for it to
        settle before writing a newer value to the origin.
        """
        with self._lock:
            pending = self._pending.pop(key, None)
            if pending is not None:
                pending.superseded = True
            in_flight = self._in_flight.get(key)
            if in_flight is not None:
                in_flight.superseded = True
            return in_flight

    def clear(self) -> List[WriteOp]:
        """Remove and return every pending and in-flight op."""
        with self._lock:
            ops = list(self._in_flight.values()) + list(self._pending.values())
            self._in_flight.clear()
            self._pending.clear()
        return ops

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def pending_keys(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending) + len(self._in_flight)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._pending or key in self._in_flight


class WriteBehindStrategy(CacheStrategy):
    """
    Store now, origin later.

    ``set`` writes the store and enqueues a ``WriteOp``; ``flush_once``
    commits up to ``batch_size`` ops concurrently. With
    ``immediate=True`` the origin write happens in the same call and its
    error propagates.
    """

    name = "write_behind"

    def __init__(
        self,
        store: CacheStore,
        metrics: Optional[MetricsCollector] = None,
        default_ttl: float = 0.0,
        max_retries: int = 3,
        batch_size: int = 100,
        write_timeout: Optional[float] = None,
        events: Optional[WriteEventBus] = None,
        clock: Optional[Clock] = None,
    ):
        if max_retries < 0:
            raise CacheConfigurationError(
                "max_retries cannot be negative",
                config_key="max_retries",
                config_value=max_retries,
            )
        if batch_size < 1:
            raise CacheConfigurationError(
                "batch_size must be at least 1",
                config_key="batch_size",
                config_value=batch_size,
            )
        super().__init__(store, metrics=metrics, default_ttl=default_ttl)
        self.max_retries = max_retries
        self.batch_size = batch_size
        self.write_timeout = write_timeout
        self.events = events or WriteEventBus()
        self.clock = clock or system_clock
        self.queue = WriteQueue()
        # key -> event set once the in-flight attempt for that key finished
        self._settled: Dict[str, asyncio.Event] = {}
        self._stats = {
            "enqueued": 0,
            "superseded": 0,
            "committed": 0,
            "retried": 0,
            "abandoned": 0,
            "store_errors": 0,
        }

    async def set(
        self,
        key: str,
        value: Any,
        writer: Optional[Writer] = None,
        options: Optional[CacheOptions] = None,
    ) -> None:
        options = options or DEFAULT_OPTIONS
        with tracer.start_as_current_span("write_behind.set") as span:
            span.set_attribute("cache.key", key)
            span.set_attribute("cache.immediate", options.immediate)

            if writer is not None and options.immediate:
                # Older values for the key must neither land after this one
                # nor be retried over it.
                in_flight = self.queue.supersede(key)
                if in_flight is not None:
                    await self._wait_settled(in_flight)
                stored = await invoke(writer, value, timeout=self.write_timeout)
                if stored is not None:
                    value = stored
                await self._store_write_logged(key, value, options)
                return

            await self._store_write_logged(key, value, options)
            if writer is None:
                return

            op = WriteOp(key=key, payload=value, writer=writer, enqueued_at=self.clock.now())
            replaced = self.queue.put(op)
            self._stats["enqueued"] += 1
            if replaced is not None:
                self._stats["superseded"] += 1
                logger.debug("Queued write superseded", key=key, op_id=str(replaced.op_id))

    async def _store_write_logged(self, key: str, value: Any, options: CacheOptions) -> None:
        try:
            await self._store_write(key, value, options)
        except SerializationError:
            raise
        except CacheException as e:
            self._stats["store_errors"] += 1
            logger.warning("Write-behind store write failed", key=key, error=e.message)

    def _take(self, limit: int) -> List[WriteOp]:
        batch = self.queue.take(limit)
        for op in batch:
            self._settled[op.key] = asyncio.Event()
        return batch

    def _release(self, op: WriteOp, settled: Optional[asyncio.Event] = None) -> None:
        current = self._settled.get(op.key)
        if settled is None:
            settled = current
        if settled is None:
            return
        if current is settled:
            del self._settled[op.key]
        settled.set()

    async def _wait_settled(self, op: WriteOp) -> None:
        settled = self._settled.get(op.key)
        if settled is None:
            return
        logger.debug("Waiting for superseded write to settle", key=op.key, op_id=str(op.op_id))
        await settled.wait()

    async def flush_once(self) -> int:
        """Attempt one batch of queued writes; returns how many were attempted."""
        batch = self._take(self.batch_size)
        if not batch:
            return 0
        with tracer.start_as_current_span("write_behind.flush") as span:
            span.set_attribute("write_behind.batch_size", len(batch))
            await asyncio.gather(*(self._attempt(op) for op in batch))
        return len(batch)

    async def _attempt(self, op: WriteOp) -> Optional[WriteOpState]:
        """Run one origin write; returns the terminal state or ``None`` if requeued."""
        # A requeued op can be taken again before this attempt unwinds.
        settled = self._settled.get(op.key)
        try:
            return await self._attempt_once(op)
        finally:
            self._release(op, settled)

    async def _attempt_once(self, op: WriteOp) -> Optional[WriteOpState]:
        try:
            await invoke(op.writer, op.payload, timeout=self.write_timeout)
        except asyncio.CancelledError:
            self.queue.requeue(op)
            raise
        except Exception as e:
            return await self._handle_failure(op, e)

        op.commit()
        self.queue.complete(op)
        self._stats["committed"] += 1
        await self.events.publish(
            WriteEvent(kind=WriteEventKind.COMMITTED, key=op.key, op_id=op.op_id, attempt=op.attempts)
        )
        return WriteOpState.COMMITTED

    async def _handle_failure(self, op: WriteOp, error: Exception) -> Optional[WriteOpState]:
        if op.fail(error, self.max_retries):
            if not self.queue.requeue(op):
                self._stats["superseded"] += 1
                logger.debug(
                    "Failed write superseded by newer value",
                    key=op.key,
                    immediate_commit=op.superseded,
                )
                return None
            self._stats["retried"] += 1
            logger.info(
                "Origin write failed, will retry",
                key=op.key,
                attempt=op.retry_count,
                max_retries=self.max_retries,
                error=repr(error),
                error_type=type(error).__name__,
            )
            await self.events.publish(
                WriteEvent(
                    kind=WriteEventKind.RETRYING,
                    key=op.key,
                    op_id=op.op_id,
                    attempt=op.retry_count,
                    error=error,
                )
            )
            return None

        self.queue.complete(op)
        await self._abandon(op, WriteFailure(op.key, op.retry_count, error))
        return WriteOpState.ABANDONED

    async def _abandon(self, op: WriteOp, failure: WriteFailure) -> None:
        op.abandon(failure.last_error)
        self._stats["abandoned"] += 1
        await self.events.publish(
            WriteEvent(
                kind=WriteEventKind.ABANDONED,
                key=op.key,
                op_id=op.op_id,
                attempt=failure.attempts,
                error=failure,
            )
        )

    async def force_flush(self, deadline: Optional[float] = None) -> FlushResult:
        """
        Drain the queue synchronously.

        Args:
            deadline: Seconds allowed for draining, ``None`` for no limit

        Returns:
            FlushResult with ops that reached a terminal state and ops
            abandoned because the deadline passed
        """
        result = FlushResult()

        async def _drain() -> None:
            while True:
                batch = self._take(self.batch_size)
                if not batch:
                    if self.queue.in_flight_count() == 0 and self.queue.pending_count() == 0:
                        return
                    # Another flusher still owns some keys.
                    await asyncio.sleep(0.01)
                    continue
                states = await asyncio.gather(*(self._attempt(op) for op in batch))
                for op, state in zip(batch, states):
                    if state is None:
                        continue
                    result.processed += 1
                    if state == WriteOpState.COMMITTED:
                        result.committed += 1
                    else:
                        result.abandoned_keys.append(op.key)

        with tracer.start_as_current_span("write_behind.force_flush") as span:
            try:
                if deadline is None:
                    await _drain()
                else:
                    await asyncio.wait_for(_drain(), timeout=deadline)
            except asyncio.TimeoutError:
                leftover = self.queue.clear()
                for op in leftover:
                    self._release(op)
                    failure = WriteFailure(
                        op.key, op.retry_count, op.last_error, reason="shutdown_deadline"
                    )
                    await self._abandon(op, failure)
                    result.abandoned_keys.append(op.key)
                result.remaining = len(leftover)
                logger.warning(
                    "Write-behind drain hit deadline",
                    deadline=deadline,
                    remaining=result.remaining,
                )

            span.set_attribute("write_behind.processed", result.processed)
            span.set_attribute("write_behind.remaining", result.remaining)

        logger.info(
            "Write-behind queue drained",
            processed=result.processed,
            committed=result.committed,
            remaining=result.remaining,
        )
        return result

    def stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "pending": self.queue.pending_count(),
            "in_flight": self.queue.in_flight_count(),
            "max_retries": self.max_retries,
            "batch_size": self.batch_size,
        }


class FlushScheduler:
    """
    Runs ``flush_once`` on a fixed interval.

    ``stop`` lets the current batch finish; a batch still running after
    ``graceful_timeout`` is cancelled and its ops go back to the queue.
    """

    def __init__(self, strategy: WriteBehindStrategy, interval: float = 1.0):
        if interval <= 0:
            raise CacheConfigurationError(
                "Flush interval must be positive", config_key="interval", config_value=interval
            )
        self.strategy = strategy
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info("Write-behind flush scheduler started", interval=self.interval)

    async def tick(self) -> int:
        """Run one flush immediately."""
        self.ticks += 1
        return await self.strategy.flush_once()

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.tick()
            except Exception as e:
                logger.error("Write-behind flush failed", error=str(e))

    async def stop(self, graceful_timeout: float = 5.0) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=graceful_timeout)
        except asyncio.TimeoutError:
            logger.warning("Flush scheduler did not stop in time, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Write-behind flush scheduler stopped")
