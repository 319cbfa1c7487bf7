"""
Unit tests for the CacheService facade in local-only mode.
"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from tiercache.core.config import WriteMode
from tiercache.domain.cache.value_objects import CacheOptions, CacheSource, WriteEventKind
from tiercache.infrastructure.repositories.cache_repository import LocalCacheStore
from tiercache.services.cache.cache_service import CacheService


@pytest.fixture
async def service(settings, clock):
    service = CacheService.from_settings(settings, clock=clock)
    yield service
    await service.shutdown(deadline=0.5)


class TestFromSettings:
    """Test wiring from settings."""

    @pytest.mark.asyncio
    async def test_local_only_wiring(self, service, settings):
        assert isinstance(service.store, LocalCacheStore)
        assert service.remote is None
        assert service.local_cache.capacity == settings.LOCAL_CAPACITY
        assert service.write_behind.max_retries == settings.WRITE_BEHIND_MAX_RETRIES
        assert service.scheduler.interval == pytest.approx(0.01)

    def test_strategy_for(self, settings, clock):
        service = CacheService.from_settings(
            settings.model_copy(update={"WRITE_MODE": WriteMode.WRITE_BEHIND}), clock=clock
        )

        assert service.strategy_for() is service.write_behind
        assert service.strategy_for(WriteMode.CACHE_ASIDE) is service.cache_aside
        assert service.strategy_for("write_through") is service.write_through


class TestReadWrite:
    """Test the read and write paths through the facade."""

    @pytest.mark.asyncio
    async def test_set_then_get(self, service):
        await service.set("user:1", {"name": "Ada"})

        result = await service.get("user:1")

        assert result.value == {"name": "Ada"}
        assert result.source == CacheSource.CACHE

    @pytest.mark.asyncio
    async def test_get_with_loader(self, service):
        loader = AsyncMock(return_value=[1, 2, 3])

        first = await service.get("list", loader)
        second = await service.get("list", loader)

        assert first.source == CacheSource.ORIGIN
        assert second.value == [1, 2, 3]
        loader.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_key_rejected(self, service):
        with pytest.raises(ValueError):
            await service.get("has space")
        with pytest.raises(ValueError):
            await service.set("", 1)

    @pytest.mark.asyncio
    async def test_default_mode_is_write_through(self, service):
        writer = AsyncMock(return_value=None)

        await service.set("k", "v", writer)

        writer.assert_awaited_once_with("v")
        assert (await service.get("k")).value == "v"

    @pytest.mark.asyncio
    async def test_write_behind_mode_per_call(self, service):
        writer = AsyncMock()

        await service.set("k", "v", writer, mode=WriteMode.WRITE_BEHIND)

        writer.assert_not_awaited()
        assert (await service.get("k")).value == "v"
        await service.write_behind.flush_once()
        writer.assert_awaited_once_with("v")

    @pytest.mark.asyncio
    async def test_cache_aside_mode_invalidates(self, service):
        await service.set("k", "old")

        await service.set("k", "new", AsyncMock(), mode=WriteMode.CACHE_ASIDE)

        assert (await service.get("k")).source == CacheSource.MISS

    @pytest.mark.asyncio
    async def test_delete(self, service):
        await service.set("k", 1)

        assert await service.delete("k")
        assert not await service.delete("k")


class TestInvalidationThroughService:
    """Test invalidation entry points."""

    @pytest.mark.asyncio
    async def test_dependencies_and_tags(self, service):
        await service.set_with_dependencies("B", 1)
        await service.set_with_dependencies("A", 2, dependencies=["B"], tags=["g"])

        assert sorted(await service.invalidate("B")) == ["A", "B"]
        assert await service.invalidate_by_tag("g") == []

    @pytest.mark.asyncio
    async def test_set_with_dependencies_honours_ttl(self, service, clock):
        await service.set_with_dependencies("A", 1, options=CacheOptions(ttl=1))

        clock.advance(2)

        assert (await service.get("A")).value is None

    @pytest.mark.asyncio
    async def test_plain_overwrite_drops_edges(self, service):
        await service.set_with_dependencies("A", 1, dependencies=["B"])
        await service.set("A", 2)

        assert await service.invalidate("B") == ["B"]
        assert (await service.get("A")).value == 2

    @pytest.mark.asyncio
    async def test_pattern(self, service):
        await service.set("user:1", 1)
        await service.set("user:2", 2)

        assert sorted(await service.invalidate_by_pattern("user:")) == ["user:1", "user:2"]
        with pytest.raises(ValueError):
            await service.invalidate_by_pattern("")


class TestLifecycle:
    """Test start, stats and shutdown."""

    @pytest.mark.asyncio
    async def test_stats(self, service):
        await service.set("k", 1)
        await service.get("k")
        await service.get("missing")

        snapshot = service.stats()
        data = snapshot.to_dict()

        assert snapshot.hit_rate == pytest.approx(0.5)
        assert data["write_behind"]["pending"] == 0
        assert "invalidation" in data
        assert data["local"]["size"] == 1
        assert "circuit_breaker" not in data

    @pytest.mark.asyncio
    async def test_scheduler_delivers_after_start(self, service):
        await service.start()
        received = []
        service.subscribe(received.append)

        await service.set("k", "v", AsyncMock(), mode=WriteMode.WRITE_BEHIND)
        event = await service.events.next_event(timeout=1)

        assert event.kind == WriteEventKind.COMMITTED
        assert [e.kind for e in received] == [WriteEventKind.COMMITTED]

    @pytest.mark.asyncio
    async def test_shutdown_drains_queue(self, settings, clock):
        service = CacheService.from_settings(settings, clock=clock)
        writer = AsyncMock()
        for i in range(5):
            await service.set(f"k{i}", i, writer, mode=WriteMode.WRITE_BEHIND)

        result = await service.shutdown()

        assert result.committed == 5
        assert result.remaining == 0
        assert writer.await_count == 5

    @pytest.mark.asyncio
    async def test_shutdown_deadline_bounds_a_hanging_flush(self, settings, clock):
        service = CacheService.from_settings(
            settings.model_copy(update={"WRITE_BEHIND_WRITE_TIMEOUT": None}), clock=clock
        )
        started = asyncio.Event()

        async def hanging_writer(value):
            started.set()
            await asyncio.sleep(30)

        await service.start()
        await service.set("k", "v", hanging_writer, mode=WriteMode.WRITE_BEHIND)
        await asyncio.wait_for(started.wait(), timeout=1)

        began = time.monotonic()
        result = await service.shutdown(deadline=0.2)
        elapsed = time.monotonic() - began

        assert elapsed < 1.0
        assert result.remaining == 1
        assert result.abandoned_keys == ["k"]
        assert not service.scheduler.running

    @pytest.mark.asyncio
    async def test_context_manager(self, settings, clock):
        async with CacheService.from_settings(settings, clock=clock) as service:
            health = await service.health_check()
            assert health["status"] == "healthy"
            assert health["started"]
            assert service.scheduler.running

        assert not service.scheduler.running
