"""
Cache Read/Write Strategies

Cache-aside and write-through policies over a ``CacheStore``. The
write-behind policy lives in ``write_behind`` because it owns a queue
and a scheduler.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from ...domain.cache.entities import CacheResult, Loader, Writer
from ...domain.cache.exceptions import CacheException, SerializationError, TransientStoreError
from ...domain.cache.repository_interfaces import CacheStore
from ...domain.cache.value_objects import (
    DEFAULT_OPTIONS,
    CacheOperation,
    CacheOptions,
    CacheSource,
)
from ...monitoring.metrics import MetricsCollector
from .callbacks import invoke

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


class CacheStrategy(ABC):
    """
    Shared read path and bookkeeping for every policy.

    Reads: store hit → ``cache``; miss or ``force_refresh`` → loader →
    store write → ``origin``. A failed store read with
    ``fallback_on_error`` serves the store's stale copy (``cache_stale``)
    or, failing that, the loader's result.
    """

    name = "base"

    def __init__(
        self,
        store: CacheStore,
        metrics: Optional[MetricsCollector] = None,
        default_ttl: float = 0.0,
    ):
        self.store = store
        self.metrics = metrics
        self.default_ttl = default_ttl

    def _ttl(self, options: CacheOptions) -> float:
        return self.default_ttl if options.ttl is None else options.ttl

    def _record(self, operation: CacheOperation, started: float, key: Optional[str] = None) -> None:
        if self.metrics is not None:
            self.metrics.record(operation, (time.perf_counter() - started) * 1000.0, key)

    async def get(
        self,
        key: str,
        loader: Optional[Loader] = None,
        options: Optional[CacheOptions] = None,
    ) -> CacheResult:
        options = options or DEFAULT_OPTIONS
        with tracer.start_as_current_span(f"{self.name}.get") as span:
            span.set_attribute("cache.key", key)
            started = time.perf_counter()

            if not options.force_refresh:
                try:
                    value = await self.store.get(key)
                except TransientStoreError as e:
                    self._record(CacheOperation.ERROR, started, key)
                    span.record_exception(e)
                    if not options.fallback_on_error:
                        span.set_status(Status(StatusCode.ERROR, e.message))
                        raise
                    return await self._fallback(key, loader, e, span)

                if value is not None:
                    self._record(CacheOperation.HIT, started, key)
                    span.set_attribute("cache.source", CacheSource.CACHE.value)
                    return CacheResult(value, CacheSource.CACHE)

            self._record(CacheOperation.MISS, started, key)
            if loader is None:
                span.set_attribute("cache.source", CacheSource.MISS.value)
                return CacheResult(None, CacheSource.MISS)

            value = await self._load(key, loader, span)
            if value is not None:
                await self._populate(key, value, options)
            span.set_attribute("cache.source", CacheSource.ORIGIN.value)
            return CacheResult(value, CacheSource.ORIGIN)

    async def _fallback(
        self, key: str, loader: Optional[Loader], error: TransientStoreError, span: Any
    ) -> CacheResult:
        stale = await self.store.get_stale(key)
        if stale is not None:
            logger.warning(
                "Serving stale value after store read failure",
                key=key,
                error=error.message,
            )
            span.set_attribute("cache.source", CacheSource.CACHE_STALE.value)
            return CacheResult(stale, CacheSource.CACHE_STALE)

        if loader is None:
            raise error

        logger.warning(
            "Store read failed and no stale value exists, loading from origin",
            key=key,
            error=error.message,
        )
        value = await self._load(key, loader, span)
        span.set_attribute("cache.source", CacheSource.ORIGIN.value)
        return CacheResult(value, CacheSource.ORIGIN)

    async def _load(self, key: str, loader: Loader, span: Any) -> Any:
        started = time.perf_counter()
        try:
            return await invoke(loader)
        except Exception as e:
            self._record(CacheOperation.ERROR, started, key)
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            logger.warning("Loader failed", key=key, error=repr(e))
            raise

    async def _populate(self, key: str, value: Any, options: CacheOptions) -> None:
        """Write a freshly loaded value; a store failure only costs the next read."""
        started = time.perf_counter()
        try:
            await self.store.set(key, value, self._ttl(options))
        except SerializationError:
            self._record(CacheOperation.ERROR, started, key)
            raise
        except CacheException as e:
            self._record(CacheOperation.ERROR, started, key)
            logger.warning("Failed to cache loaded value", key=key, error=e.message)
            return
        self._record(CacheOperation.SET, started, key)

    async def _store_write(self, key: str, value: Any, options: CacheOptions) -> None:
        started = time.perf_counter()
        try:
            await self.store.set(key, value, self._ttl(options))
        except CacheException:
            self._record(CacheOperation.ERROR, started, key)
            raise
        self._record(CacheOperation.SET, started, key)

    async def delete(self, key: str) -> bool:
        started = time.perf_counter()
        try:
            deleted = await self.store.delete(key)
        except CacheException:
            self._record(CacheOperation.ERROR, started, key)
            raise
        self._record(CacheOperation.DELETE, started, key)
        return deleted > 0

    @abstractmethod
    async def set(
        self,
        key: str,
        value: Any,
        writer: Optional[Writer] = None,
        options: Optional[CacheOptions] = None,
    ) -> None:
        pass


class CacheAsideStrategy(CacheStrategy):
    """
    Lazy loading: the caller owns the origin, the cache is filled on miss.

    ``set`` without a writer stores the value. With a writer the origin is
    written first and the cached copy dropped, so the next read reloads it.
    """

    name = "cache_aside"

    async def set(
        self,
        key: str,
        value: Any,
        writer: Optional[Writer] = None,
        options: Optional[CacheOptions] = None,
    ) -> None:
        options = options or DEFAULT_OPTIONS
        with tracer.start_as_current_span("cache_aside.set") as span:
            span.set_attribute("cache.key", key)
            if writer is None:
                await self._store_write(key, value, options)
                return
            await invoke(writer, value)
            await self.delete(key)


class WriteThroughStrategy(CacheStrategy):
    """
    Origin first, then the store.

    The store is only written once the origin accepted the value, so the
    cache never serves data that was not durably committed.
    """

    name = "write_through"

    async def set(
        self,
        key: str,
        value: Any,
        writer: Optional[Writer] = None,
        options: Optional[CacheOptions] = None,
    ) -> None:
        options = options or DEFAULT_OPTIONS
        with tracer.start_as_current_span("write_through.set") as span:
            span.set_attribute("cache.key", key)
            if writer is not None:
                try:
                    stored = await invoke(writer, value)
                except Exception as e:
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    logger.warning("Origin write failed, cache not updated", key=key, error=str(e))
                    raise
                if stored is not None:
                    value = stored
            await self._store_write(key, value, options)
