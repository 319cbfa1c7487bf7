"""
Main pytest configuration for tiercache tests.

Fixtures for a deterministic clock, an in-memory Redis and the cache
tiers built on top of them.
"""

import pytest
import fakeredis.aioredis

from tiercache.core.clock import ManualClock
from tiercache.core.config import CacheSettings
from tiercache.infrastructure.memory.bounded_cache import BoundedCache
from tiercache.infrastructure.redis.connection_factory import RemoteStoreConfig
from tiercache.infrastructure.redis.store_client import RemoteStoreClient
from tiercache.infrastructure.repositories.cache_repository import LocalCacheStore
from tiercache.monitoring.metrics import MetricsCollector


@pytest.fixture
def clock():
    """Manual clock starting at an arbitrary non-zero reading."""
    return ManualClock(start=1000.0)


@pytest.fixture
def fake_redis():
    """In-memory Redis speaking the redis.asyncio API."""
    return fakeredis.aioredis.FakeRedis()


@pytest.fixture
def remote_config():
    return RemoteStoreConfig(namespace="test", operation_timeout=1.0, connect_retries=1)


@pytest.fixture
async def remote_store(fake_redis, remote_config):
    """RemoteStoreClient backed by fakeredis."""
    store = RemoteStoreClient(remote_config, redis=fake_redis)
    yield store
    await fake_redis.flushall()


@pytest.fixture
def local_cache(clock):
    return BoundedCache(capacity=100, clock=clock)


@pytest.fixture
def local_store(local_cache):
    return LocalCacheStore(local_cache)


@pytest.fixture
def metrics(clock):
    return MetricsCollector(window_size=1000, max_tracked_keys=100, clock=clock)


@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file."""
    return CacheSettings(
        _env_file=None,
        REDIS_ENABLED=False,
        DEFAULT_TTL_SECONDS=60,
        LOCAL_CAPACITY=100,
        LOCAL_SWEEP_INTERVAL_SECONDS=None,
        WRITE_BEHIND_FLUSH_INTERVAL_MS=10,
        WRITE_BEHIND_BATCH_SIZE=10,
        WRITE_BEHIND_MAX_RETRIES=2,
        WRITE_BEHIND_WRITE_TIMEOUT=1.0,
        SHUTDOWN_DEADLINE_SECONDS=1.0,
        LOG_JSON=False,
    )
