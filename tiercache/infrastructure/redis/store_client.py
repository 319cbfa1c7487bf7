"""
Remote Store Client

Redis-backed ``CacheStore``. Every key is prefixed with the configured
namespace, every value goes through the serializer, and every call is
bounded by the operation timeout.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from redis.asyncio import Redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    RedisError,
    TimeoutError as RedisTimeoutError,
)

from ...domain.cache.exceptions import (
    CacheException,
    StoreTimeoutError,
    TransientStoreError,
)
from ...domain.cache.repository_interfaces import CacheStore
from ...domain.cache.value_objects import TTL, as_glob
from .circuit_breaker import StoreCircuitBreaker
from .connection_factory import RemoteStoreConfig, create_redis_client, verify_connection
from .serialization import JsonSerializer, Serializer

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")


class RemoteStoreClient(CacheStore):
    """
    Namespaced Redis store.

    Store failures surface as ``TransientStoreError`` (connection loss,
    timeouts, open circuit) or ``CacheException`` for other Redis errors.
    Encoding problems raise ``SerializationError`` before any I/O.
    """

    def __init__(
        self,
        config: Optional[RemoteStoreConfig] = None,
        redis: Optional[Redis] = None,
        serializer: Optional[Serializer] = None,
        circuit_breaker: Optional[StoreCircuitBreaker] = None,
    ):
        self.config = config or RemoteStoreConfig()
        self.redis = redis if redis is not None else create_redis_client(self.config)
        self.serializer = serializer or JsonSerializer()
        self.circuit_breaker = circuit_breaker
        self._prefix = f"{self.config.namespace}:"

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _strip(self, raw_key: Any) -> str:
        if isinstance(raw_key, bytes):
            raw_key = raw_key.decode("utf-8")
        return raw_key[len(self._prefix):]

    async def connect(self) -> None:
        """Verify the server answers before the store is used."""
        await verify_connection(self.redis, attempts=self.config.connect_retries)

    async def _execute(
        self,
        operation: str,
        func: Callable[[], Awaitable[T]],
        key: Optional[str] = None,
    ) -> T:
        if self.circuit_breaker is not None:
            return await self.circuit_breaker.call(self._run, operation, func, key)
        return await self._run(operation, func, key)

    async def _run(
        self,
        operation: str,
        func: Callable[[], Awaitable[T]],
        key: Optional[str] = None,
    ) -> T:
        timeout = self.config.operation_timeout
        with tracer.start_as_current_span(f"store.{operation}") as span:
            span.set_attribute("cache.operation", operation)
            if key is not None:
                span.set_attribute("cache.key", key)
            try:
                return await asyncio.wait_for(func(), timeout=timeout)
            except asyncio.TimeoutError as e:
                span.set_status(Status(StatusCode.ERROR, "timeout"))
                logger.warning(
                    "Store operation timed out",
                    extra={"operation": operation, "key": key, "timeout": timeout},
                )
                raise StoreTimeoutError(operation, timeout, key=key) from e
            except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                logger.warning(
                    "Store unavailable",
                    extra={"operation": operation, "key": key, "error": str(e)},
                )
                raise TransientStoreError(
                    message=f"Store operation '{operation}' failed: {e}",
                    operation=operation,
                    key=key,
                    original_error=e,
                ) from e
            except RedisError as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                logger.error(
                    "Store operation failed",
                    extra={"operation": operation, "key": key, "error": str(e)},
                )
                raise CacheException(
                    message=f"Store operation '{operation}' failed: {e}",
                    error_code="CACHE_STORE_ERROR",
                    details={"operation": operation, "key": key},
                ) from e

    async def get(self, key: str) -> Optional[Any]:
        data = await self._execute("get", lambda: self.redis.get(self._key(key)), key)
        if data is None:
            return None
        return self.serializer.loads(data, key)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        payload = self.serializer.dumps(value, key)
        px = TTL.of(ttl).as_milliseconds()
        await self._execute(
            "set", lambda: self.redis.set(self._key(key), payload, px=px), key
        )

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        raw = [self._key(key) for key in keys]
        return int(await self._execute("delete", lambda: self.redis.delete(*raw)))

    async def exists(self, key: str) -> bool:
        count = await self._execute(
            "exists", lambda: self.redis.exists(self._key(key)), key
        )
        return bool(count)

    async def mget(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        if not keys:
            return {}
        raw = [self._key(key) for key in keys]
        values = await self._execute("mget", lambda: self.redis.mget(raw))
        return {
            key: self.serializer.loads(data, key)
            for key, data in zip(keys, values)
            if data is not None
        }

    async def mset(self, mapping: Mapping[str, Any], ttl: Optional[float] = None) -> None:
        if not mapping:
            return
        payloads = {key: self.serializer.dumps(value, key) for key, value in mapping.items()}
        px = TTL.of(ttl).as_milliseconds()

        async def _write() -> None:
            async with self.redis.pipeline(transaction=True) as pipe:
                for key, payload in payloads.items():
                    pipe.set(self._key(key), payload, px=px)
                await pipe.execute()

        await self._execute("mset", _write)

    async def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        px = TTL.of(ttl).as_milliseconds()
        raw = self._key(key)

        async def _incr() -> int:
            value = await self.redis.incrby(raw, amount)
            if px is not None and value == amount:
                # Counter was just created by this call.
                await self.redis.pexpire(raw, px)
            return int(value)

        return await self._execute("increment", _incr, key)

    async def expire(self, key: str, ttl: float) -> bool:
        px = TTL.of(ttl).as_milliseconds()
        raw = self._key(key)
        if px is None:
            async def _persist() -> bool:
                if not await self.redis.exists(raw):
                    return False
                await self.redis.persist(raw)
                return True

            return await self._execute("expire", _persist, key)
        return bool(await self._execute("expire", lambda: self.redis.pexpire(raw, px), key))

    async def ttl(self, key: str) -> Optional[float]:
        remaining = await self._execute("ttl", lambda: self.redis.pttl(self._key(key)), key)
        if remaining == -2:
            return None
        if remaining == -1:
            return 0.0
        return remaining / 1000.0

    async def scan_by_prefix(self, pattern: str) -> List[str]:
        match = self._key(as_glob(pattern))

        async def _scan() -> List[str]:
            return [self._strip(raw) async for raw in self.redis.scan_iter(match=match, count=500)]

        return await self._execute("scan", _scan)

    async def ping(self) -> bool:
        return bool(await self._execute("ping", self.redis.ping))

    async def health_check(self) -> Dict[str, Any]:
        """Connectivity and latency of the remote tier."""
        start = time.perf_counter()
        status: Dict[str, Any] = {"namespace": self.config.namespace}
        try:
            await self.ping()
            status["status"] = "healthy"
        except CacheException as e:
            status["status"] = "unhealthy"
            status["error"] = e.message
        status["latency_ms"] = round((time.perf_counter() - start) * 1000, 3)
        if self.circuit_breaker is not None:
            status["circuit_breaker"] = self.circuit_breaker.get_status()
        return status

    async def close(self) -> None:
        await self.redis.aclose()
        logger.info("Remote store connection closed")
