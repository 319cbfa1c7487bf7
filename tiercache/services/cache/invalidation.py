"""
Invalidation Graph

Tracks which cached keys depend on which, and which keys carry which
tags, so that invalidating one key removes everything derived from it.
"""

import fnmatch
import threading
import time
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog
from opentelemetry import trace

from ...domain.cache.repository_interfaces import CacheStore
from ...domain.cache.value_objects import (
    DEFAULT_OPTIONS,
    CacheKey,
    CacheOperation,
    CacheOptions,
    CacheTag,
    as_glob,
)
from ...monitoring.metrics import MetricsCollector
from .strategies import CacheStrategy

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


class InvalidationGraph:
    """
    Dependency edges and tag membership with cascading invalidation.

    ``_dependents`` maps a dependency to the keys built on it;
    ``_dependencies`` is its reverse. ``_tag_keys`` / ``_key_tags`` do the
    same for tags. The lock guards these four maps only and is never held
    across store I/O.
    """

    def __init__(self, store: CacheStore, metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.metrics = metrics
        self._dependents: Dict[str, Set[str]] = {}
        self._dependencies: Dict[str, Set[str]] = {}
        self._tag_keys: Dict[str, Set[str]] = {}
        self._key_tags: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()
        self.cycles_detected = 0

    async def set_with_dependencies(
        self,
        key: str,
        value: Any,
        dependencies: Iterable[str] = (),
        tags: Iterable[str] = (),
        ttl: Optional[float] = None,
        strategy: Optional[CacheStrategy] = None,
        options: Optional[CacheOptions] = None,
    ) -> None:
        """Store ``value`` then record its dependency edges and tags.

        Edges are only recorded once the store write succeeded.
        """
        dependencies = [str(CacheKey(dep)) for dep in dependencies]
        tags = [str(CacheTag(tag)) for tag in tags]
        options = options or DEFAULT_OPTIONS
        if ttl is not None:
            options = options.model_copy(update={"ttl": ttl})

        with tracer.start_as_current_span("invalidation.set_with_dependencies") as span:
            span.set_attribute("cache.key", key)
            span.set_attribute("cache.dependency_count", len(dependencies))
            span.set_attribute("cache.tag_count", len(tags))
            if strategy is not None:
                await strategy.set(key, value, options=options)
            else:
                await self.store.set(key, value, options.ttl)
            self.register(key, dependencies, tags)

    def register(self, key: str, dependencies: Iterable[str] = (), tags: Iterable[str] = ()) -> None:
        """Replace the outgoing edges and tags of ``key``.

        Keys that depend on ``key`` are kept: overwriting a value does not
        change what was built on top of it.
        """
        dependencies = set(dependencies)
        tags = set(tags)
        if key in dependencies:
            logger.warning("Ignoring self-dependency", key=key)
            dependencies.discard(key)

        with self._lock:
            self._drop_outgoing(key)
            for dep in dependencies:
                self._dependents.setdefault(dep, set()).add(key)
            if dependencies:
                self._dependencies[key] = dependencies
            for tag in tags:
                self._tag_keys.setdefault(tag, set()).add(key)
            if tags:
                self._key_tags[key] = tags

    def unregister(self, key: str) -> None:
        """Forget the edges and tags declared by ``key``."""
        with self._lock:
            self._drop_outgoing(key)

    def _drop_outgoing(self, key: str) -> None:
        for dep in self._dependencies.pop(key, ()):
            dependents = self._dependents.get(dep)
            if dependents is not None:
                dependents.discard(key)
                if not dependents:
                    del self._dependents[dep]
        for tag in self._key_tags.pop(key, ()):
            members = self._tag_keys.get(tag)
            if members is not None:
                members.discard(key)
                if not members:
                    del self._tag_keys[tag]

    def _closure(self, roots: List[str]) -> List[str]:
        """Every key reachable from ``roots`` along dependent edges, each once.

        Iterative DFS; an edge back into the current path is a cycle,
        reported and otherwise ignored.
        """
        order: List[str] = []
        visited: Set[str] = set()
        cycles: List[str] = []

        with self._lock:
            for root in roots:
                if root in visited:
                    continue
                visited.add(root)
                order.append(root)
                on_path = {root}
                stack = [(root, iter(sorted(self._dependents.get(root, ()))))]
                while stack:
                    node, children = stack[-1]
                    child = next(children, None)
                    if child is None:
                        stack.pop()
                        on_path.discard(node)
                        continue
                    if child in on_path:
                        cycles.append(f"{node}->{child}")
                        continue
                    if child in visited:
                        continue
                    visited.add(child)
                    order.append(child)
                    on_path.add(child)
                    stack.append((child, iter(sorted(self._dependents.get(child, ())))))

        if cycles:
            self.cycles_detected += 1
            logger.warning(
                "Dependency cycle detected during invalidation",
                roots=roots,
                back_edges=cycles,
            )
        return order

    def _prune(self, keys: Iterable[str]) -> None:
        """Remove every edge and tag membership that references ``keys``."""
        with self._lock:
            for key in keys:
                self._drop_outgoing(key)
                for dependent in self._dependents.pop(key, ()):
                    deps = self._dependencies.get(dependent)
                    if deps is not None:
                        deps.discard(key)
                        if not deps:
                            del self._dependencies[dependent]

    async def _invalidate_roots(self, roots: List[str], span: Any) -> List[str]:
        started = time.perf_counter()
        keys = self._closure(roots)
        if keys:
            await self.store.delete(*keys)
            self._prune(keys)
        span.set_attribute("cache.invalidated_count", len(keys))
        if self.metrics is not None:
            latency = (time.perf_counter() - started) * 1000.0
            for key in keys:
                self.metrics.record(CacheOperation.DELETE, latency, key)
        return keys

    async def invalidate(self, key: str) -> List[str]:
        """Delete ``key`` and everything that depends on it, transitively."""
        with tracer.start_as_current_span("invalidation.invalidate") as span:
            span.set_attribute("cache.key", key)
            keys = await self._invalidate_roots([key], span)
            logger.debug("Invalidated key", key=key, cascade=len(keys) - 1)
            return keys

    async def invalidate_by_tag(self, tag: str) -> List[str]:
        """Invalidate every key carrying ``tag`` and drop the tag."""
        with tracer.start_as_current_span("invalidation.invalidate_by_tag") as span:
            span.set_attribute("cache.tag", tag)
            with self._lock:
                members = sorted(self._tag_keys.get(tag, ()))
            keys = await self._invalidate_roots(members, span)
            with self._lock:
                self._tag_keys.pop(tag, None)
            logger.info("Invalidated tag", tag=tag, keys=len(keys))
            return keys

    async def invalidate_by_pattern(self, pattern: str) -> List[str]:
        """Invalidate store keys matching a prefix or glob, plus their dependents.

        Registered keys that match are included even when the store no
        longer holds them, so their dependents still cascade.
        """
        with tracer.start_as_current_span("invalidation.invalidate_by_pattern") as span:
            span.set_attribute("cache.pattern", pattern)
            glob = as_glob(pattern)
            matched = set(await self.store.scan_by_prefix(pattern))
            with self._lock:
                known = set(self._dependencies) | set(self._dependents) | set(self._key_tags)
            matched.update(key for key in known if fnmatch.fnmatchcase(key, glob))
            keys = await self._invalidate_roots(sorted(matched), span)
            logger.info("Invalidated pattern", pattern=pattern, keys=len(keys))
            return keys

    def dependents_of(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._dependents.get(key, ()))

    def dependencies_of(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._dependencies.get(key, ()))

    def keys_for_tag(self, tag: str) -> Set[str]:
        with self._lock:
            return set(self._tag_keys.get(tag, ()))

    def tags_of(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._key_tags.get(key, ()))

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "tracked_keys": len(set(self._dependencies) | set(self._key_tags)),
                "dependency_edges": sum(len(v) for v in self._dependents.values()),
                "tags": len(self._tag_keys),
                "tag_memberships": sum(len(v) for v in self._tag_keys.values()),
                "cycles_detected": self.cycles_detected,
            }
