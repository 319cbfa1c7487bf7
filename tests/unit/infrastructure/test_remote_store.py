"""
Unit tests for the Redis-backed remote store.

Runs against fakeredis; failure paths use AsyncMock clients.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from tiercache.domain.cache.exceptions import (
    CacheException,
    SerializationError,
    StoreTimeoutError,
    TransientStoreError,
)
from tiercache.infrastructure.redis.connection_factory import RemoteStoreConfig
from tiercache.infrastructure.redis.store_client import RemoteStoreClient


class TestRemoteStoreOperations:
    """Test store operations against fakeredis."""

    @pytest.mark.asyncio
    async def test_round_trip(self, remote_store):
        value = {"id": 1, "name": "Test", "items": [1, 2, 3]}
        await remote_store.set("doc:1", value, ttl=60)

        assert await remote_store.get("doc:1") == value

    @pytest.mark.asyncio
    async def test_missing_key(self, remote_store):
        assert await remote_store.get("missing") is None
        assert not await remote_store.exists("missing")

    @pytest.mark.asyncio
    async def test_keys_are_namespaced(self, remote_store, fake_redis):
        await remote_store.set("k", "v")

        assert await fake_redis.get("test:k") == b'"v"'
        assert await fake_redis.get("k") is None

    @pytest.mark.asyncio
    async def test_delete_counts_existing_keys(self, remote_store):
        await remote_store.set("a", 1)
        await remote_store.set("b", 2)

        assert await remote_store.delete("a", "b", "c") == 2
        assert await remote_store.delete() == 0
        assert await remote_store.get("a") is None

    @pytest.mark.asyncio
    async def test_mget_and_mset(self, remote_store):
        await remote_store.mset({"x": 1, "y": [2]}, ttl=30)

        found = await remote_store.mget(["x", "y", "z"])
        assert found == {"x": 1, "y": [2]}
        assert await remote_store.mget([]) == {}

    @pytest.mark.asyncio
    async def test_ttl_semantics(self, remote_store):
        await remote_store.set("bounded", 1, ttl=30)
        await remote_store.set("forever", 1, ttl=0)

        remaining = await remote_store.ttl("bounded")
        assert 0 < remaining <= 30
        assert await remote_store.ttl("forever") == 0
        assert await remote_store.ttl("missing") is None

    @pytest.mark.asyncio
    async def test_expire_and_persist(self, remote_store):
        await remote_store.set("k", 1)

        assert await remote_store.expire("k", 10)
        assert 0 < await remote_store.ttl("k") <= 10
        assert await remote_store.expire("k", 0)
        assert await remote_store.ttl("k") == 0
        assert not await remote_store.expire("missing", 0)

    @pytest.mark.asyncio
    async def test_increment_sets_ttl_on_create(self, remote_store):
        assert await remote_store.increment("counter", 1, ttl=60) == 1
        assert await remote_store.increment("counter", 4, ttl=60) == 5

        assert 0 < await remote_store.ttl("counter") <= 60
        assert await remote_store.get("counter") == 5

    @pytest.mark.asyncio
    async def test_scan_by_prefix_strips_namespace(self, remote_store, fake_redis):
        await remote_store.set("user:1", 1)
        await remote_store.set("user:2", 2)
        await remote_store.set("order:1", 3)
        await fake_redis.set("other:user:3", "x")

        assert sorted(await remote_store.scan_by_prefix("user:")) == ["user:1", "user:2"]
        assert await remote_store.scan_by_prefix("order:*") == ["order:1"]

    @pytest.mark.asyncio
    async def test_ping_and_health_check(self, remote_store):
        assert await remote_store.ping()

        health = await remote_store.health_check()
        assert health["status"] == "healthy"
        assert health["namespace"] == "test"


class TestRemoteStoreErrors:
    """Test error mapping."""

    @pytest.mark.asyncio
    async def test_unencodable_value_raises_before_io(self, remote_store, fake_redis):
        with pytest.raises(SerializationError):
            await remote_store.set("k", object())

        assert await fake_redis.exists("test:k") == 0

    @pytest.mark.asyncio
    async def test_corrupt_payload_raises_serialization_error(self, remote_store, fake_redis):
        await fake_redis.set("test:bad", b"\xff{not json")

        with pytest.raises(SerializationError):
            await remote_store.get("bad")

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, remote_config):
        redis = MagicMock()
        redis.get = AsyncMock(side_effect=RedisConnectionError("refused"))
        store = RemoteStoreClient(remote_config, redis=redis)

        with pytest.raises(TransientStoreError) as exc_info:
            await store.get("k")

        assert exc_info.value.details["operation"] == "get"
        assert isinstance(exc_info.value.__cause__, RedisConnectionError)

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self):
        async def slow_get(key):
            await asyncio.sleep(1)

        redis = MagicMock()
        redis.get = slow_get
        store = RemoteStoreClient(
            RemoteStoreConfig(namespace="test", operation_timeout=0.01), redis=redis
        )

        with pytest.raises(StoreTimeoutError) as exc_info:
            await store.get("k")

        assert isinstance(exc_info.value, TransientStoreError)
        assert exc_info.value.error_code == "CACHE_STORE_TIMEOUT"

    @pytest.mark.asyncio
    async def test_other_redis_errors_are_not_transient(self, remote_config):
        redis = MagicMock()
        redis.get = AsyncMock(side_effect=ResponseError("WRONGTYPE"))
        store = RemoteStoreClient(remote_config, redis=redis)

        with pytest.raises(CacheException) as exc_info:
            await store.get("k")

        assert not isinstance(exc_info.value, TransientStoreError)
        assert exc_info.value.error_code == "CACHE_STORE_ERROR"

    @pytest.mark.asyncio
    async def test_health_check_reports_failure(self, remote_config):
        redis = MagicMock()
        redis.ping = AsyncMock(side_effect=RedisConnectionError("down"))
        store = RemoteStoreClient(remote_config, redis=redis)

        health = await store.health_check()
        assert health["status"] == "unhealthy"

    def test_empty_namespace_rejected(self):
        with pytest.raises(ValueError):
            RemoteStoreConfig(namespace="")
