"""
Cache Service

Facade used by request-handling code. Wires the cache tiers, the three
write policies, the invalidation graph and the metrics collector from
one settings object; nothing here is a module-level singleton.
"""

import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog
from opentelemetry import trace
from redis.asyncio import Redis

from ...core.clock import Clock, system_clock
from ...core.config import CacheSettings, WriteMode
from ...domain.cache.entities import CacheResult, FlushResult, Loader, Writer
from ...domain.cache.repository_interfaces import CacheStore
from ...domain.cache.value_objects import DEFAULT_OPTIONS, CacheKey, CacheOptions, CacheTag
from ...infrastructure.memory.bounded_cache import BoundedCache
from ...infrastructure.redis.circuit_breaker import CircuitBreakerConfig, StoreCircuitBreaker
from ...infrastructure.redis.connection_factory import RemoteStoreConfig
from ...infrastructure.redis.store_client import RemoteStoreClient
from ...infrastructure.repositories.cache_repository import LocalCacheStore, TieredCacheStore
from ...monitoring.metrics import MetricsCollector, MetricsSnapshot
from .events import WriteEventBus, WriteObserver
from .invalidation import InvalidationGraph
from .strategies import CacheAsideStrategy, CacheStrategy, WriteThroughStrategy
from .write_behind import FlushScheduler, WriteBehindStrategy

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

# Upper bound for letting an in-progress flush batch finish at shutdown.
STOP_GRACE_SECONDS = 5.0


class CacheService:
    """
    Multi-tier cache facade.

    Reads follow the cache-aside path. Writes without a writer go straight
    to the store; with a writer they follow ``write_mode`` (or the
    per-call ``mode``). ``start`` / ``shutdown`` own every background task.
    """

    def __init__(
        self,
        store: CacheStore,
        metrics: Optional[MetricsCollector] = None,
        events: Optional[WriteEventBus] = None,
        default_ttl: float = 0.0,
        write_mode: WriteMode = WriteMode.WRITE_THROUGH,
        max_retries: int = 3,
        batch_size: int = 100,
        flush_interval: float = 1.0,
        write_timeout: Optional[float] = None,
        shutdown_deadline: Optional[float] = None,
        local_cache: Optional[BoundedCache] = None,
        remote: Optional[RemoteStoreClient] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.clock = clock or system_clock
        self.metrics = metrics or MetricsCollector(clock=self.clock)
        self.events = events or WriteEventBus()
        self.default_ttl = default_ttl
        self.write_mode = write_mode
        self.shutdown_deadline = shutdown_deadline
        self.local_cache = local_cache
        self.remote = remote

        self.cache_aside = CacheAsideStrategy(store, metrics=self.metrics, default_ttl=default_ttl)
        self.write_through = WriteThroughStrategy(
            store, metrics=self.metrics, default_ttl=default_ttl
        )
        self.write_behind = WriteBehindStrategy(
            store,
            metrics=self.metrics,
            default_ttl=default_ttl,
            max_retries=max_retries,
            batch_size=batch_size,
            write_timeout=write_timeout,
            events=self.events,
            clock=self.clock,
        )
        self.scheduler = FlushScheduler(self.write_behind, interval=flush_interval)
        self.graph = InvalidationGraph(store, metrics=self.metrics)
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: CacheSettings,
        redis: Optional[Redis] = None,
        clock: Optional[Clock] = None,
    ) -> "CacheService":
        """Build the tiers described by ``settings``.

        ``redis`` overrides the client the connection factory would create.
        """
        clock = clock or system_clock
        local = BoundedCache(
            capacity=settings.LOCAL_CAPACITY,
            default_ttl=settings.DEFAULT_TTL_SECONDS,
            clock=clock,
            sweep_interval=settings.LOCAL_SWEEP_INTERVAL_SECONDS,
        )

        remote: Optional[RemoteStoreClient] = None
        if settings.REDIS_ENABLED or redis is not None:
            breaker = None
            if settings.CIRCUIT_BREAKER_ENABLED:
                breaker = StoreCircuitBreaker(
                    CircuitBreakerConfig(
                        failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
                        recovery_timeout=settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
                        success_threshold=settings.CIRCUIT_BREAKER_SUCCESS_THRESHOLD,
                    ),
                    clock=clock,
                )
            remote = RemoteStoreClient(
                RemoteStoreConfig.from_settings(settings),
                redis=redis,
                circuit_breaker=breaker,
            )
            # The local tier becomes the last-known-good mirror.
            store: CacheStore = TieredCacheStore(
                remote, local, stale_ttl=settings.STALE_TTL_SECONDS
            )
        else:
            store = LocalCacheStore(local)

        return cls(
            store,
            metrics=MetricsCollector(
                window_size=settings.METRICS_WINDOW_SIZE,
                max_tracked_keys=settings.METRICS_MAX_TRACKED_KEYS,
                clock=clock,
            ),
            events=WriteEventBus(maxsize=settings.EVENT_QUEUE_SIZE),
            default_ttl=settings.DEFAULT_TTL_SECONDS,
            write_mode=settings.WRITE_MODE,
            max_retries=settings.WRITE_BEHIND_MAX_RETRIES,
            batch_size=settings.WRITE_BEHIND_BATCH_SIZE,
            flush_interval=settings.flush_interval_seconds,
            write_timeout=settings.WRITE_BEHIND_WRITE_TIMEOUT,
            shutdown_deadline=settings.SHUTDOWN_DEADLINE_SECONDS,
            local_cache=local,
            remote=remote,
            clock=clock,
        )

    def strategy_for(self, mode: Optional[WriteMode] = None) -> CacheStrategy:
        mode = WriteMode(mode or self.write_mode)
        if mode == WriteMode.CACHE_ASIDE:
            return self.cache_aside
        if mode == WriteMode.WRITE_BEHIND:
            return self.write_behind
        return self.write_through

    async def get(
        self,
        key: str,
        loader: Optional[Loader] = None,
        options: Optional[CacheOptions] = None,
    ) -> CacheResult:
        CacheKey(key)
        return await self.cache_aside.get(key, loader, options)

    async def set(
        self,
        key: str,
        value: Any,
        writer: Optional[Writer] = None,
        options: Optional[CacheOptions] = None,
        mode: Optional[WriteMode] = None,
    ) -> None:
        CacheKey(key)
        options = options or DEFAULT_OPTIONS
        strategy = self.strategy_for(mode) if writer is not None else self.cache_aside
        await strategy.set(key, value, writer=writer, options=options)
        # A plain overwrite drops whatever dependencies the old value declared.
        self.graph.unregister(key)

    async def set_with_dependencies(
        self,
        key: str,
        value: Any,
        dependencies: Iterable[str] = (),
        tags: Iterable[str] = (),
        options: Optional[CacheOptions] = None,
    ) -> None:
        CacheKey(key)
        await self.graph.set_with_dependencies(
            key,
            value,
            dependencies=dependencies,
            tags=tags,
            strategy=self.cache_aside,
            options=options,
        )

    async def delete(self, key: str) -> bool:
        CacheKey(key)
        deleted = await self.cache_aside.delete(key)
        self.graph.unregister(key)
        return deleted

    async def invalidate(self, key: str) -> List[str]:
        CacheKey(key)
        return await self.graph.invalidate(key)

    async def invalidate_by_tag(self, tag: str) -> List[str]:
        CacheTag(tag)
        return await self.graph.invalidate_by_tag(tag)

    async def invalidate_by_pattern(self, pattern: str) -> List[str]:
        if not pattern:
            raise ValueError("Pattern cannot be empty")
        return await self.graph.invalidate_by_pattern(pattern)

    def subscribe(self, observer: WriteObserver) -> Callable[[], None]:
        """Observe write-behind outcomes; returns an unsubscribe callable."""
        return self.events.subscribe(observer)

    def stats(self) -> MetricsSnapshot:
        snapshot = self.metrics.snapshot()
        extra: Dict[str, Any] = {
            "write_behind": self.write_behind.stats(),
            "invalidation": self.graph.stats(),
            "events": {
                "published": self.events.published,
                "pending": self.events.pending(),
                "dropped": self.events.dropped,
            },
        }
        if self.local_cache is not None:
            extra["local"] = self.local_cache.stats()
        if self.remote is not None and self.remote.circuit_breaker is not None:
            extra["circuit_breaker"] = self.remote.circuit_breaker.get_status()
        snapshot.extra = extra
        return snapshot

    async def health_check(self) -> Dict[str, Any]:
        with tracer.start_as_current_span("cache_service.health_check"):
            status: Dict[str, Any] = {"status": "healthy", "started": self._started}
            if self.remote is not None:
                remote = await self.remote.health_check()
                status["remote"] = remote
                if remote["status"] != "healthy":
                    status["status"] = "degraded"
            status["write_behind_pending"] = len(self.write_behind.queue)
            return status

    async def start(self) -> None:
        """Connect the remote tier and start the background tasks."""
        if self._started:
            return
        if self.remote is not None:
            await self.remote.connect()
        if self.local_cache is not None:
            await self.local_cache.start()
        await self.scheduler.start()
        self._started = True
        logger.info(
            "Cache service started",
            write_mode=WriteMode(self.write_mode).value,
            remote=self.remote is not None,
        )

    async def shutdown(self, deadline: Optional[float] = None) -> FlushResult:
        """Stop background tasks and drain queued writes within ``deadline`` seconds."""
        deadline = deadline if deadline is not None else self.shutdown_deadline
        started = time.monotonic()
        with tracer.start_as_current_span("cache_service.shutdown") as span:
            if deadline is None:
                await self.scheduler.stop()
                result = await self.write_behind.force_flush()
            else:
                # Stopping the scheduler and draining share one budget.
                await self.scheduler.stop(graceful_timeout=min(STOP_GRACE_SECONDS, deadline))
                remaining = max(0.0, deadline - (time.monotonic() - started))
                result = await self.write_behind.force_flush(remaining)
            if self.local_cache is not None:
                await self.local_cache.stop()
            await self.store.close()
            self._started = False
            span.set_attribute("cache.flush_processed", result.processed)
            span.set_attribute("cache.flush_remaining", result.remaining)
        logger.info(
            "Cache service stopped",
            processed=result.processed,
            remaining=result.remaining,
        )
        return result

    async def __aenter__(self) -> "CacheService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
