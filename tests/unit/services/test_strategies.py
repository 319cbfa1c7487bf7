"""
Unit tests for the cache-aside and write-through strategies.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from tiercache.domain.cache.exceptions import SerializationError, TransientStoreError
from tiercache.domain.cache.value_objects import CacheOptions, CacheSource
from tiercache.infrastructure.memory.bounded_cache import BoundedCache
from tiercache.infrastructure.repositories.cache_repository import TieredCacheStore
from tiercache.services.cache.strategies import CacheAsideStrategy, WriteThroughStrategy


@pytest.fixture
def failing_primary():
    """Primary store whose reads fail with a transient error."""
    primary = AsyncMock()
    primary.get = AsyncMock(side_effect=TransientStoreError("store down", operation="get"))
    return primary


class TestCacheAside:
    """Test the cache-aside read path."""

    @pytest.mark.asyncio
    async def test_miss_loads_and_populates(self, local_store, metrics):
        strategy = CacheAsideStrategy(local_store, metrics=metrics, default_ttl=60)
        loader = AsyncMock(return_value={"id": 1})

        first = await strategy.get("user:1", loader)
        second = await strategy.get("user:1", loader)

        assert first.value == {"id": 1}
        assert first.source == CacheSource.ORIGIN
        assert second.source == CacheSource.CACHE
        loader.assert_awaited_once()
        assert metrics.snapshot().counts["hit"] == 1
        assert metrics.snapshot().counts["miss"] == 1

    @pytest.mark.asyncio
    async def test_sync_loader(self, local_store):
        strategy = CacheAsideStrategy(local_store)
        loader = MagicMock(return_value=42)

        result = await strategy.get("answer", loader)

        assert result.value == 42
        loader.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_force_refresh_skips_cache(self, local_store):
        strategy = CacheAsideStrategy(local_store)
        await local_store.set("k", "old")

        result = await strategy.get("k", AsyncMock(return_value="new"), CacheOptions(force_refresh=True))

        assert result.value == "new"
        assert result.source == CacheSource.ORIGIN
        assert await local_store.get("k") == "new"

    @pytest.mark.asyncio
    async def test_ttl_option_applies(self, local_store, clock):
        strategy = CacheAsideStrategy(local_store, default_ttl=0)
        await strategy.get("k", AsyncMock(return_value="v"), CacheOptions(ttl=0.1))

        clock.advance(0.2)
        assert await local_store.get("k") is None

    @pytest.mark.asyncio
    async def test_none_is_not_cached(self, local_store):
        strategy = CacheAsideStrategy(local_store)
        loader = AsyncMock(return_value=None)

        await strategy.get("k", loader)
        await strategy.get("k", loader)

        assert loader.await_count == 2

    @pytest.mark.asyncio
    async def test_miss_without_loader(self, local_store):
        result = await CacheAsideStrategy(local_store).get("missing")

        assert result.value is None
        assert result.source == CacheSource.MISS

    @pytest.mark.asyncio
    async def test_loader_error_propagates(self, local_store, metrics):
        strategy = CacheAsideStrategy(local_store, metrics=metrics)

        with pytest.raises(LookupError):
            await strategy.get("k", AsyncMock(side_effect=LookupError("not in db")))

        counts = metrics.snapshot().counts
        assert counts["miss"] == 1
        assert counts["error"] == 1
        assert await local_store.get("k") is None

    @pytest.mark.asyncio
    async def test_store_error_without_fallback_propagates(self, failing_primary, clock):
        store = TieredCacheStore(failing_primary, BoundedCache(10, clock=clock))
        strategy = CacheAsideStrategy(store)

        with pytest.raises(TransientStoreError):
            await strategy.get("k", AsyncMock(return_value="v"))

    @pytest.mark.asyncio
    async def test_fallback_serves_stale_value(self, failing_primary, clock, metrics):
        mirror = BoundedCache(10, clock=clock)
        mirror.set("k", "stale")
        store = TieredCacheStore(failing_primary, mirror)
        strategy = CacheAsideStrategy(store, metrics=metrics)
        loader = AsyncMock(return_value="fresh")

        result = await strategy.get("k", loader, CacheOptions(fallback_on_error=True))

        assert result.value == "stale"
        assert result.source == CacheSource.CACHE_STALE
        loader.assert_not_awaited()
        assert metrics.snapshot().counts["error"] == 1

    @pytest.mark.asyncio
    async def test_fallback_without_stale_uses_loader(self, failing_primary, clock):
        store = TieredCacheStore(failing_primary, BoundedCache(10, clock=clock))
        strategy = CacheAsideStrategy(store)

        result = await strategy.get(
            "k", AsyncMock(return_value="fresh"), CacheOptions(fallback_on_error=True)
        )

        assert result.value == "fresh"
        assert result.source == CacheSource.ORIGIN

    @pytest.mark.asyncio
    async def test_fallback_without_stale_surfaces_loader_error(
        self, failing_primary, clock, metrics
    ):
        store = TieredCacheStore(failing_primary, BoundedCache(10, clock=clock))
        strategy = CacheAsideStrategy(store, metrics=metrics)

        with pytest.raises(LookupError):
            await strategy.get(
                "k",
                AsyncMock(side_effect=LookupError("origin down too")),
                CacheOptions(fallback_on_error=True),
            )

        # One for the store read, one for the loader.
        assert metrics.snapshot().counts["error"] == 2

    @pytest.mark.asyncio
    async def test_store_write_failure_after_load_still_returns(self):
        store = AsyncMock()
        store.get = AsyncMock(return_value=None)
        store.set = AsyncMock(side_effect=TransientStoreError("down"))
        strategy = CacheAsideStrategy(store)

        result = await strategy.get("k", AsyncMock(return_value="v"))

        assert result.value == "v"
        assert result.source == CacheSource.ORIGIN

    @pytest.mark.asyncio
    async def test_serialization_error_is_not_swallowed(self):
        store = AsyncMock()
        store.get = AsyncMock(return_value=None)
        store.set = AsyncMock(side_effect=SerializationError("cannot encode"))
        strategy = CacheAsideStrategy(store)

        with pytest.raises(SerializationError):
            await strategy.get("k", AsyncMock(return_value=object()))

    @pytest.mark.asyncio
    async def test_set_with_writer_invalidates(self, local_store):
        strategy = CacheAsideStrategy(local_store)
        await local_store.set("k", "old")
        writer = AsyncMock()

        await strategy.set("k", "new", writer)

        writer.assert_awaited_once_with("new")
        assert await local_store.get("k") is None


class TestWriteThrough:
    """Test write-through ordering."""

    @pytest.mark.asyncio
    async def test_origin_then_store(self, local_store):
        calls = []

        async def writer(value):
            calls.append(("origin", await local_store.get("k")))
            return value

        strategy = WriteThroughStrategy(local_store)
        await strategy.set("k", "v", writer)

        assert calls == [("origin", None)]
        assert await local_store.get("k") == "v"

    @pytest.mark.asyncio
    async def test_writer_result_is_cached(self, local_store):
        strategy = WriteThroughStrategy(local_store)

        await strategy.set("k", {"name": "x"}, AsyncMock(return_value={"name": "x", "id": 9}))

        assert await local_store.get("k") == {"name": "x", "id": 9}

    @pytest.mark.asyncio
    async def test_origin_failure_skips_store(self, local_store):
        strategy = WriteThroughStrategy(local_store)
        await local_store.set("k", "committed")

        with pytest.raises(RuntimeError, match="db down"):
            await strategy.set("k", "uncommitted", AsyncMock(side_effect=RuntimeError("db down")))

        assert await local_store.get("k") == "committed"

    @pytest.mark.asyncio
    async def test_get_shares_read_path(self, local_store):
        strategy = WriteThroughStrategy(local_store)
        await strategy.set("k", "v", AsyncMock(return_value=None))

        result = await strategy.get("k")

        assert result.value == "v"
        assert result.source == CacheSource.CACHE
