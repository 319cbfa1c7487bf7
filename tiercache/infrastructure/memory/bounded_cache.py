"""
Bounded in-process cache.

Capacity-bounded LRU store with per-entry TTL. Expiry is checked lazily
on every access; an optional background sweep only reclaims memory held
by cold keys.
"""

import asyncio
import fnmatch
import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple

from ...core.clock import Clock, system_clock
from ...domain.cache.entities import CacheEntry
from ...domain.cache.exceptions import CacheConfigurationError, CapacityEviction
from ...domain.cache.value_objects import as_glob

logger = logging.getLogger(__name__)

EvictionListener = Callable[[CapacityEviction], None]


class BoundedCache:
    """
    LRU cache with TTL expiry.

    Entries live in an ``OrderedDict`` ordered from least to most recently
    used. All structural changes happen under one instance-wide lock; no
    callback is ever invoked while it is held.
    """

    def __init__(
        self,
        capacity: int,
        default_ttl: float = 0.0,
        clock: Optional[Clock] = None,
        on_evict: Optional[EvictionListener] = None,
        sweep_interval: Optional[float] = None,
    ):
        if capacity is None or capacity < 0:
            raise CacheConfigurationError(
                "Capacity cannot be negative",
                config_key="capacity",
                config_value=capacity,
            )
        if default_ttl is None or default_ttl < 0:
            raise CacheConfigurationError(
                "TTL cannot be negative",
                config_key="default_ttl",
                config_value=default_ttl,
            )
        if sweep_interval is not None and sweep_interval <= 0:
            raise CacheConfigurationError(
                "Sweep interval must be positive",
                config_key="sweep_interval",
                config_value=sweep_interval,
            )

        self.capacity = capacity
        self.default_ttl = default_ttl
        self.clock = clock or system_clock
        self.sweep_interval = sweep_interval

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._order = 0
        self._listeners: List[EvictionListener] = []
        if on_evict:
            self._listeners.append(on_evict)

        self._sweep_task: Optional[asyncio.Task] = None
        self._stats = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
            "evictions": 0,
            "expirations": 0,
        }

    # Core operations

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Insert or replace ``key`` as the most recently used entry.

        Replacing an entry restarts its expiry: the old entry object, and
        with it the old deadline, is discarded.
        """
        entry_ttl = self.default_ttl if ttl is None else ttl
        if entry_ttl < 0:
            raise CacheConfigurationError(
                "TTL cannot be negative", config_key="ttl", config_value=ttl
            )

        with self._lock:
            evicted = self._insert(key, value, entry_ttl)

        self._notify_evictions(evicted)

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for ``key`` and mark it most recently used."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                self._stats["misses"] += 1
                return default

            self._order += 1
            entry.touch(self._order)
            self._entries.move_to_end(key)
            self._stats["hits"] += 1
            return entry.value

    def peek(self, key: str, default: Any = None) -> Any:
        """Return the value without touching LRU order or hit counters."""
        with self._lock:
            entry = self._live_entry(key)
            return default if entry is None else entry.value

    def has(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self._stats["deletes"] += 1
            return not entry.is_expired(self.clock.now())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    # TTL and counter helpers

    def ttl_remaining(self, key: str) -> Optional[float]:
        """Remaining lifetime: ``None`` when missing, 0 for no expiry."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            remaining = entry.remaining(self.clock.now())
            return 0.0 if remaining is None else remaining

    def expire(self, key: str, ttl: float) -> bool:
        """Give an existing entry a new TTL counted from now."""
        if ttl < 0:
            raise CacheConfigurationError(
                "TTL cannot be negative", config_key="ttl", config_value=ttl
            )
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return False
            entry.created_at = self.clock.now()
            entry.ttl = ttl
            return True

    def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        """Add to an integer entry, creating it with ``ttl`` when missing."""
        entry_ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            entry = self._live_entry(key)
            if entry is not None:
                if isinstance(entry.value, bool) or not isinstance(entry.value, int):
                    raise ValueError(f"Value at '{key}' is not an integer")
                entry.value += amount
                self._order += 1
                entry.touch(self._order)
                self._entries.move_to_end(key)
                return entry.value

            evicted = self._insert(key, amount, entry_ttl)

        self._notify_evictions(evicted)
        return amount

    def keys(self) -> List[str]:
        """Live keys from least to most recently used."""
        with self._lock:
            now = self.clock.now()
            return [k for k, e in self._entries.items() if not e.is_expired(now)]

    def keys_matching(self, pattern: str) -> List[str]:
        """Live keys matching a glob pattern (a bare string is a prefix)."""
        glob = as_glob(pattern)
        return [k for k in self.keys() if fnmatch.fnmatchcase(k, glob)]

    def items(self) -> List[Tuple[str, Any]]:
        with self._lock:
            now = self.clock.now()
            return [
                (k, e.value) for k, e in self._entries.items() if not e.is_expired(now)
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    # Eviction and expiry

    def add_eviction_listener(self, listener: EvictionListener) -> None:
        self._listeners.append(listener)

    def sweep_expired(self) -> int:
        """Remove every expired entry now. Returns how many were removed."""
        with self._lock:
            now = self.clock.now()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._stats["expirations"] += len(expired)

        if expired:
            logger.debug(
                "Swept expired cache entries",
                extra={"count": len(expired), "remaining": len(self)},
            )
        return len(expired)

    def _live_entry(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for ``key`` unless expired; expired ones are dropped.

        Caller must hold the lock.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self.clock.now()):
            del self._entries[key]
            self._stats["expirations"] += 1
            return None
        return entry

    def _insert(self, key: str, value: Any, ttl: float) -> List[CapacityEviction]:
        """Place a fresh entry at the most recently used end.

        Caller must hold the lock.
        """
        self._order += 1
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=self.clock.now(),
            ttl=ttl,
            access_order=self._order,
        )
        self._stats["sets"] += 1
        return self._evict_overflow()

    def _evict_overflow(self) -> List[CapacityEviction]:
        """Pop least recently used entries until within capacity.

        Caller must hold the lock.
        """
        evicted = []
        while len(self._entries) > self.capacity:
            key, entry = self._entries.popitem(last=False)
            self._stats["evictions"] += 1
            evicted.append(
                CapacityEviction(key=key, value=entry.value, capacity=self.capacity)
            )
        return evicted

    def _notify_evictions(self, evicted: List[CapacityEviction]) -> None:
        for notice in evicted:
            logger.debug(
                "Evicted cache entry",
                extra={"key": notice.key, "capacity": notice.capacity},
            )
            for listener in self._listeners:
                try:
                    listener(notice)
                except Exception as e:
                    logger.warning(
                        f"Eviction listener failed: {e}",
                        extra={"key": notice.key},
                        exc_info=True,
                    )

    # Background sweep lifecycle

    async def start(self) -> None:
        """Start the background expiry sweep, if an interval is configured."""
        if self.sweep_interval is None or self._sweep_task is not None:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Bounded cache sweep started",
            extra={"interval": self.sweep_interval, "capacity": self.capacity},
        )

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None
        logger.info("Bounded cache sweep stopped")

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                self.sweep_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Cache sweep loop error: {e}", exc_info=True)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._stats["hits"] + self._stats["misses"]
            return {
                **self._stats,
                "size": len(self._entries),
                "capacity": self.capacity,
                "hit_rate": self._stats["hits"] / lookups if lookups else 0.0,
            }
