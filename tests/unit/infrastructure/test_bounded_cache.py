"""
Unit tests for the bounded in-process cache.

LRU ordering, lazy TTL expiry, eviction notices and the background sweep.
"""

import asyncio

import pytest

from tiercache.core.clock import ManualClock
from tiercache.domain.cache.exceptions import CacheConfigurationError, CapacityEviction
from tiercache.infrastructure.memory.bounded_cache import BoundedCache


class TestLRUEviction:
    """Test capacity-bounded LRU eviction."""

    def test_capacity_two_scenario(self, clock):
        """Third insert evicts the first key."""
        cache = BoundedCache(capacity=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)

        assert cache.get("a") is None
        assert cache.get("b") == 2
        assert cache.get("c") == 3

    def test_n_plus_one_evicts_least_recently_accessed(self, clock):
        """Only the least recently accessed key becomes a miss."""
        capacity = 5
        cache = BoundedCache(capacity=capacity, clock=clock)
        for i in range(capacity):
            cache.set(f"k{i}", i)

        # k0 is touched, so k1 is now the least recently used
        assert cache.get("k0") == 0
        cache.set("new", "value")

        assert cache.get("k1") is None
        for key in ["k0", "k2", "k3", "k4", "new"]:
            assert cache.get(key) is not None
        assert len(cache) == capacity

    def test_size_never_exceeds_capacity(self, clock):
        cache = BoundedCache(capacity=3, clock=clock)
        for i in range(50):
            cache.set(f"key{i}", i)
            assert len(cache) <= 3

    def test_overwrite_moves_to_most_recent(self, clock):
        cache = BoundedCache(capacity=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        cache.set("c", 3)

        assert cache.get("b") is None
        assert cache.get("a") == 10

    def test_ties_follow_insertion_order(self, clock):
        """Untouched bulk-loaded keys are evicted oldest first."""
        cache = BoundedCache(capacity=3, clock=clock)
        for key in ["x", "y", "z"]:
            cache.set(key, key)
        cache.set("w", "w")
        cache.set("v", "v")

        assert cache.keys() == ["z", "w", "v"]

    def test_has_and_peek_do_not_reorder(self, clock):
        cache = BoundedCache(capacity=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.has("a")
        assert cache.peek("a") == 1
        cache.set("c", 3)

        assert "a" not in cache
        assert cache.peek("b") == 2

    def test_zero_capacity_stores_nothing(self, clock):
        cache = BoundedCache(capacity=0, clock=clock)
        cache.set("a", 1)

        assert cache.get("a") is None
        assert len(cache) == 0

    def test_eviction_listener_receives_notice(self, clock):
        notices = []
        cache = BoundedCache(capacity=1, clock=clock, on_evict=notices.append)
        cache.set("a", 1)
        cache.set("b", 2)

        assert notices == [CapacityEviction(key="a", value=1, capacity=1)]
        assert cache.stats()["evictions"] == 1

    def test_failing_listener_does_not_break_set(self, clock):
        def broken(notice):
            raise RuntimeError("listener down")

        cache = BoundedCache(capacity=1, clock=clock, on_evict=broken)
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.get("b") == 2


class TestTTLExpiry:
    """Test lazy TTL expiry."""

    def test_expires_after_ttl(self, clock):
        cache = BoundedCache(capacity=10, clock=clock)
        cache.set("k", "v", ttl=0.1)

        clock.advance(0.05)
        assert cache.get("k") == "v"

        clock.advance(0.1)
        assert cache.get("k") is None
        assert cache.stats()["expirations"] == 1

    def test_zero_ttl_never_expires(self, clock):
        cache = BoundedCache(capacity=10, clock=clock)
        cache.set("k", "v", ttl=0)

        clock.advance(10**9)
        assert cache.get("k") == "v"
        assert cache.ttl_remaining("k") == 0.0

    def test_default_ttl_applies(self, clock):
        cache = BoundedCache(capacity=10, default_ttl=5, clock=clock)
        cache.set("k", "v")

        clock.advance(5)
        assert cache.get("k") is None

    def test_overwrite_restarts_expiry(self, clock):
        """A fresh write is not removed by the previous entry's deadline."""
        cache = BoundedCache(capacity=10, clock=clock)
        cache.set("k", "old", ttl=1)
        clock.advance(0.9)
        cache.set("k", "new", ttl=1)
        clock.advance(0.5)

        assert cache.get("k") == "new"

    def test_has_removes_expired_entry(self, clock):
        cache = BoundedCache(capacity=10, clock=clock)
        cache.set("k", "v", ttl=1)
        clock.advance(2)

        assert not cache.has("k")
        assert len(cache) == 0

    def test_round_trip_preserves_value(self, clock):
        cache = BoundedCache(capacity=10, clock=clock)
        value = {"id": 7, "tags": ["a", "b"], "nested": {"ok": True}}
        cache.set("doc", value, ttl=30)

        assert cache.get("doc") == value

    def test_ttl_remaining_and_expire(self, clock):
        cache = BoundedCache(capacity=10, clock=clock)
        cache.set("k", "v", ttl=10)
        clock.advance(4)

        assert cache.ttl_remaining("k") == pytest.approx(6)
        assert cache.expire("k", 20)
        assert cache.ttl_remaining("k") == pytest.approx(20)
        assert not cache.expire("missing", 5)
        assert cache.ttl_remaining("missing") is None

    def test_sweep_removes_cold_expired_entries(self, clock):
        cache = BoundedCache(capacity=10, clock=clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2, ttl=100)
        clock.advance(5)

        assert cache.sweep_expired() == 1
        assert len(cache) == 1
        assert cache.keys() == ["long"]


class TestCounterAndPatterns:
    """Test increment and pattern helpers."""

    def test_increment_creates_and_adds(self, clock):
        cache = BoundedCache(capacity=10, clock=clock)

        assert cache.increment("hits") == 1
        assert cache.increment("hits", 5) == 6

    def test_increment_rejects_non_integer(self, clock):
        cache = BoundedCache(capacity=10, clock=clock)
        cache.set("name", "text")

        with pytest.raises(ValueError):
            cache.increment("name")

    def test_keys_matching_prefix_and_glob(self, clock):
        cache = BoundedCache(capacity=10, clock=clock)
        for key in ["user:1", "user:2", "order:1"]:
            cache.set(key, key)

        assert sorted(cache.keys_matching("user:")) == ["user:1", "user:2"]
        assert cache.keys_matching("*:1") == ["user:1", "order:1"]


class TestConstruction:
    """Test invalid construction arguments."""

    def test_negative_capacity(self):
        with pytest.raises(CacheConfigurationError):
            BoundedCache(capacity=-1)

    def test_negative_default_ttl(self):
        with pytest.raises(CacheConfigurationError):
            BoundedCache(capacity=1, default_ttl=-1)

    def test_negative_ttl_on_set(self):
        cache = BoundedCache(capacity=1)
        with pytest.raises(CacheConfigurationError):
            cache.set("k", "v", ttl=-5)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            BoundedCache(capacity=-1)


class TestSweepLifecycle:
    """Test the background sweep task."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        clock = ManualClock()
        cache = BoundedCache(capacity=10, clock=clock, sweep_interval=0.01)
        cache.set("k", "v", ttl=1)
        clock.advance(2)

        await cache.start()
        assert cache.running
        for _ in range(50):
            if len(cache) == 0:
                break
            await asyncio.sleep(0.01)
        await cache.stop()

        assert len(cache) == 0
        assert not cache.running

    @pytest.mark.asyncio
    async def test_start_without_interval_is_noop(self, clock):
        cache = BoundedCache(capacity=10, clock=clock)
        await cache.start()

        assert not cache.running
