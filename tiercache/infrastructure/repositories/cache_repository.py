"""
Cache Store Repositories

``CacheStore`` implementations built from the concrete tiers:

- LocalCacheStore: the in-process BoundedCache behind the async store contract
- TieredCacheStore: a primary (usually Redis) tier with an in-process
  last-known-good mirror used for stale reads when the primary fails
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional

from opentelemetry import trace

from ...domain.cache.repository_interfaces import CacheStore
from ..memory.bounded_cache import BoundedCache

tracer = trace.get_tracer(__name__)


class LocalCacheStore(CacheStore):
    """BoundedCache exposed through the async store contract.

    Used as the only tier when no remote store is configured.
    """

    def __init__(self, cache: BoundedCache):
        self.cache = cache

    async def get(self, key: str) -> Optional[Any]:
        return self.cache.get(key)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self.cache.set(key, value, ttl)

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.cache.delete(key))

    async def exists(self, key: str) -> bool:
        return self.cache.has(key)

    async def mget(self, keys: Iterable[str]) -> Dict[str, Any]:
        found = {}
        for key in keys:
            value = self.cache.get(key)
            if value is not None:
                found[key] = value
        return found

    async def mset(self, mapping: Mapping[str, Any], ttl: Optional[float] = None) -> None:
        for key, value in mapping.items():
            self.cache.set(key, value, ttl)

    async def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        return self.cache.increment(key, amount, ttl)

    async def expire(self, key: str, ttl: float) -> bool:
        return self.cache.expire(key, ttl)

    async def ttl(self, key: str) -> Optional[float]:
        return self.cache.ttl_remaining(key)

    async def scan_by_prefix(self, pattern: str) -> List[str]:
        return self.cache.keys_matching(pattern)


class TieredCacheStore(CacheStore):
    """
    Primary store plus an in-process mirror of last-known-good values.

    Every successful read or write through the primary is copied into the
    mirror with ``stale_ttl``; deletes remove both copies. The mirror is
    never consulted on the normal read path, only through ``get_stale``.
    """

    def __init__(
        self,
        primary: CacheStore,
        mirror: BoundedCache,
        stale_ttl: float = 0.0,
    ):
        self.primary = primary
        self.mirror = mirror
        self.stale_ttl = stale_ttl

    def _remember(self, key: str, value: Any) -> None:
        if value is not None:
            self.mirror.set(key, value, self.stale_ttl)

    async def get(self, key: str) -> Optional[Any]:
        value = await self.primary.get(key)
        self._remember(key, value)
        return value

    async def get_stale(self, key: str) -> Optional[Any]:
        with tracer.start_as_current_span("tiered_store.get_stale") as span:
            value = self.mirror.peek(key)
            span.set_attribute("cache.stale_hit", value is not None)
            return value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        await self.primary.set(key, value, ttl)
        self._remember(key, value)

    async def delete(self, *keys: str) -> int:
        # Mirror first: an invalidated key must not stay readable via get_stale.
        for key in keys:
            self.mirror.delete(key)
        return await self.primary.delete(*keys)

    async def exists(self, key: str) -> bool:
        return await self.primary.exists(key)

    async def mget(self, keys: Iterable[str]) -> Dict[str, Any]:
        found = await self.primary.mget(keys)
        for key, value in found.items():
            self._remember(key, value)
        return found

    async def mset(self, mapping: Mapping[str, Any], ttl: Optional[float] = None) -> None:
        await self.primary.mset(mapping, ttl)
        for key, value in mapping.items():
            self._remember(key, value)

    async def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        return await self.primary.increment(key, amount, ttl)

    async def expire(self, key: str, ttl: float) -> bool:
        return await self.primary.expire(key, ttl)

    async def ttl(self, key: str) -> Optional[float]:
        return await self.primary.ttl(key)

    async def scan_by_prefix(self, pattern: str) -> List[str]:
        return await self.primary.scan_by_prefix(pattern)

    async def close(self) -> None:
        await self.primary.close()
