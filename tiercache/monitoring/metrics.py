"""
Cache Metrics Collector

Records every cache operation with its latency and reports hit rate,
latency percentiles and hot/slow keys. Purely observational: nothing in
here influences cache behaviour and nothing in here raises.
"""

import math
import threading
import time
from collections import OrderedDict, deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Tuple

import structlog
from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from ..core.clock import Clock, system_clock
from ..domain.cache.entities import MetricSample
from ..domain.cache.value_objects import CacheOperation

logger = structlog.get_logger(__name__)

TOP_KEYS = 10


@dataclass
class KeyStats:
    """Per-key request counters."""

    requests: int = 0
    total_latency_ms: float = 0.0
    max_latency_ms: float = 0.0

    @property
    def avg_latency_ms(self) -> float:
        if self.requests == 0:
            return 0.0
        return self.total_latency_ms / self.requests


@dataclass
class MetricsSnapshot:
    """Point-in-time view of the collector."""

    counts: Dict[str, int]
    hit_rate: float
    p50_ms: float
    p95_ms: float
    p99_ms: float
    samples: int
    invalid_samples: int
    hot_keys: List[Tuple[str, int]] = field(default_factory=list)
    slow_keys: List[Tuple[str, float]] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "counts": dict(self.counts),
            "hit_rate": self.hit_rate,
            "latency_ms": {"p50": self.p50_ms, "p95": self.p95_ms, "p99": self.p99_ms},
            "samples": self.samples,
            "invalid_samples": self.invalid_samples,
            "hot_keys": [{"key": k, "requests": n} for k, n in self.hot_keys],
            "slow_keys": [{"key": k, "avg_latency_ms": ms} for k, ms in self.slow_keys],
            **self.extra,
        }


def percentile(sorted_values: List[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list (0.0 when empty)."""
    if not sorted_values:
        return 0.0
    rank = max(1, math.ceil(pct / 100.0 * len(sorted_values)))
    return sorted_values[min(rank, len(sorted_values)) - 1]


class OperationTimer:
    """Handle yielded by ``MetricsCollector.track``.

    The operation may be changed before the block exits, e.g. a read
    that turns out to be a miss.
    """

    def __init__(self, operation: CacheOperation):
        self.operation = operation


class MetricsCollector:
    """
    Rolling-window cache metrics.

    Latencies are kept in a bounded deque; per-key counters are bounded
    by ``max_tracked_keys`` with the least recently seen key dropped first.
    """

    def __init__(
        self,
        window_size: int = 10_000,
        max_tracked_keys: int = 10_000,
        clock: Optional[Clock] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.window_size = max(1, int(window_size))
        self.max_tracked_keys = max(1, int(max_tracked_keys))
        self.clock = clock or system_clock
        self._lock = threading.Lock()
        self._samples: Deque[MetricSample] = deque(maxlen=self.window_size)
        self._counts: Dict[str, int] = {op.value: 0 for op in CacheOperation}
        self._keys: "OrderedDict[str, KeyStats]" = OrderedDict()
        self._invalid_samples = 0
        self._setup_prometheus_metrics(registry)

    def _setup_prometheus_metrics(self, registry: Optional[CollectorRegistry]) -> None:
        """Setup Prometheus metrics on a private registry."""
        self.registry = registry or CollectorRegistry()

        self.prom_operations_total = Counter(
            "tiercache_operations_total",
            "Total number of cache operations",
            ["operation"],
            registry=self.registry,
        )

        self.prom_operation_duration_seconds = Histogram(
            "tiercache_operation_duration_seconds",
            "Cache operation latency in seconds",
            buckets=[0.0001, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
            registry=self.registry,
        )

    def record(self, operation: Any, latency_ms: Any, key: Optional[str] = None) -> None:
        """Record one operation. Malformed input is counted, never raised."""
        try:
            op = CacheOperation(operation)
            latency = float(latency_ms)
            if math.isnan(latency) or math.isinf(latency) or latency < 0:
                raise ValueError(f"invalid latency {latency_ms!r}")
        except (TypeError, ValueError):
            with self._lock:
                self._invalid_samples += 1
            logger.debug(
                "Ignoring malformed metric sample",
                operation=repr(operation),
                latency_ms=repr(latency_ms),
            )
            return

        if key is not None and not isinstance(key, str):
            key = str(key)

        sample = MetricSample(
            operation=op, latency_ms=latency, timestamp=self.clock.now(), key=key
        )
        with self._lock:
            self._samples.append(sample)
            self._counts[op.value] += 1
            if key is not None:
                self._track_key(key, latency)

        try:
            self.prom_operations_total.labels(operation=op.value).inc()
            self.prom_operation_duration_seconds.observe(latency / 1000.0)
        except Exception as e:
            logger.warning("Failed to update Prometheus metrics", error=str(e))

    def _track_key(self, key: str, latency: float) -> None:
        stats = self._keys.get(key)
        if stats is None:
            stats = KeyStats()
            self._keys[key] = stats
            if len(self._keys) > self.max_tracked_keys:
                self._keys.popitem(last=False)
        else:
            self._keys.move_to_end(key)
        stats.requests += 1
        stats.total_latency_ms += latency
        stats.max_latency_ms = max(stats.max_latency_ms, latency)

    @asynccontextmanager
    async def track(
        self, operation: CacheOperation, key: Optional[str] = None
    ) -> AsyncIterator[OperationTimer]:
        """Time a block and record it; an exception records an error."""
        timer = OperationTimer(operation)
        start = time.perf_counter()
        try:
            yield timer
        except Exception:
            timer.operation = CacheOperation.ERROR
            raise
        finally:
            self.record(timer.operation, (time.perf_counter() - start) * 1000.0, key)

    def hit_rate(self) -> float:
        with self._lock:
            hits = self._counts[CacheOperation.HIT.value]
            misses = self._counts[CacheOperation.MISS.value]
        total = hits + misses
        return hits / total if total else 0.0

    def hot_keys(self, limit: int = TOP_KEYS) -> List[Tuple[str, int]]:
        """Keys with the most requests."""
        with self._lock:
            ranked = sorted(self._keys.items(), key=lambda item: -item[1].requests)
        return [(key, stats.requests) for key, stats in ranked[:limit]]

    def slow_keys(self, limit: int = TOP_KEYS) -> List[Tuple[str, float]]:
        """Keys with the highest average latency."""
        with self._lock:
            ranked = sorted(self._keys.items(), key=lambda item: -item[1].avg_latency_ms)
        return [(key, round(stats.avg_latency_ms, 3)) for key, stats in ranked[:limit]]

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            latencies = sorted(sample.latency_ms for sample in self._samples)
            counts = dict(self._counts)
            invalid = self._invalid_samples

        hits = counts[CacheOperation.HIT.value]
        misses = counts[CacheOperation.MISS.value]
        lookups = hits + misses

        return MetricsSnapshot(
            counts=counts,
            hit_rate=hits / lookups if lookups else 0.0,
            p50_ms=percentile(latencies, 50),
            p95_ms=percentile(latencies, 95),
            p99_ms=percentile(latencies, 99),
            samples=len(latencies),
            invalid_samples=invalid,
            hot_keys=self.hot_keys(),
            slow_keys=self.slow_keys(),
        )

    def reset(self) -> None:
        """Clear counters, samples and per-key stats."""
        with self._lock:
            self._samples.clear()
            self._counts = {op.value: 0 for op in CacheOperation}
            self._keys.clear()
            self._invalid_samples = 0
        logger.info("Cache metrics reset")

    def export_prometheus(self) -> bytes:
        """Prometheus text exposition of the private registry."""
        return generate_latest(self.registry)
