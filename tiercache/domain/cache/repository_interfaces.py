"""
Cache Repository Interfaces

Abstract store contract shared by every cache tier.
Strategies and the invalidation graph depend on this interface only.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional


class CacheStore(ABC):
    """
    Abstract key-value store used by the cache strategies.

    Keys are caller keys; namespacing and serialization are the
    implementation's concern. TTLs are seconds, 0 or ``None`` meaning
    no expiry.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the stored value or ``None`` on a miss."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value, replacing any previous one."""
        pass

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys and return how many existed."""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def mget(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return the hits among ``keys``; misses are omitted."""
        pass

    @abstractmethod
    async def mset(self, mapping: Mapping[str, Any], ttl: Optional[float] = None) -> None:
        pass

    @abstractmethod
    async def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        """Atomically add to a counter; ``ttl`` applies when the key is created."""
        pass

    @abstractmethod
    async def expire(self, key: str, ttl: float) -> bool:
        pass

    @abstractmethod
    async def ttl(self, key: str) -> Optional[float]:
        """Remaining seconds, 0 for no expiry, ``None`` when missing."""
        pass

    @abstractmethod
    async def scan_by_prefix(self, pattern: str) -> List[str]:
        """Keys matching a prefix or glob pattern."""
        pass

    async def get_stale(self, key: str) -> Optional[Any]:
        """Last-known-good value for ``key`` when the primary read failed.

        Stores without a stale tier have nothing to offer.
        """
        return None

    async def close(self) -> None:
        """Release connections held by the store."""
        return None
