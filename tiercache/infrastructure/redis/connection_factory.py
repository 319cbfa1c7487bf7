"""
Redis Connection Factory

Builds the pooled redis.asyncio client used by the remote store tier and
verifies it is reachable before the cache starts serving.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from opentelemetry import trace
from opentelemetry.instrumentation.redis import RedisInstrumentor
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import (
    AuthenticationError as RedisAuthError,
    ConnectionError as RedisConnectionError,
    TimeoutError as RedisTimeoutError,
)
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ...core.config import CacheSettings
from ...domain.cache.exceptions import CacheConfigurationError, TransientStoreError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_instrumented = False


@dataclass
class RemoteStoreConfig:
    """Connection and behaviour settings for the remote store tier."""

    host: str = "localhost"
    port: int = 6379
    username: Optional[str] = None
    password: Optional[str] = None
    db: int = 0
    namespace: str = "tiercache"
    max_connections: int = 10
    connection_timeout: float = 5.0
    operation_timeout: float = 2.0
    connect_retries: int = 3

    def __post_init__(self) -> None:
        if not self.namespace:
            raise CacheConfigurationError(
                "Namespace cannot be empty", config_key="namespace"
            )
        if self.operation_timeout <= 0:
            raise CacheConfigurationError(
                "Operation timeout must be positive",
                config_key="operation_timeout",
                config_value=self.operation_timeout,
            )

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> "RemoteStoreConfig":
        password = (
            settings.REDIS_PASSWORD.get_secret_value()
            if settings.REDIS_PASSWORD
            else None
        )
        return cls(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            username=settings.REDIS_USERNAME,
            password=password,
            db=settings.REDIS_DB,
            namespace=settings.REDIS_NAMESPACE,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            connection_timeout=settings.REDIS_CONNECTION_TIMEOUT,
            operation_timeout=settings.REDIS_OPERATION_TIMEOUT,
            connect_retries=settings.REDIS_CONNECT_RETRIES,
        )


def instrument_redis() -> None:
    """Enable OpenTelemetry spans for redis-py commands once per process."""
    global _instrumented
    if _instrumented:
        return
    try:
        RedisInstrumentor().instrument()
        _instrumented = True
        logger.info("Redis OpenTelemetry instrumentation enabled")
    except Exception as e:
        logger.warning(f"Failed to enable Redis OpenTelemetry instrumentation: {e}")


def create_redis_client(config: RemoteStoreConfig) -> Redis:
    """Create a pooled client. Responses stay as bytes for the serializer."""
    instrument_redis()
    pool = ConnectionPool(
        host=config.host,
        port=config.port,
        username=config.username,
        password=config.password,
        db=config.db,
        decode_responses=False,
        socket_connect_timeout=config.connection_timeout,
        socket_timeout=config.operation_timeout,
        max_connections=config.max_connections,
    )
    logger.info(
        "Redis connection pool created",
        extra={
            "host": config.host,
            "port": config.port,
            "db": config.db,
            "max_connections": config.max_connections,
        },
    )
    return Redis(connection_pool=pool)


async def verify_connection(redis: Redis, attempts: int = 3) -> None:
    """
    Ping the server, retrying connection failures with exponential backoff.

    Raises:
        TransientStoreError: If the server is unreachable after all attempts
        CacheConfigurationError: If authentication is rejected
    """
    with tracer.start_as_current_span("redis.verify_connection") as span:
        span.set_attribute("redis.connect_attempts", attempts)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
                retry=retry_if_exception_type(
                    (RedisConnectionError, RedisTimeoutError, ConnectionRefusedError)
                ),
                before_sleep=lambda retry_state: logger.warning(
                    "Redis connection retry",
                    extra={
                        "attempt": retry_state.attempt_number,
                        "wait_time": retry_state.next_action.sleep,
                    },
                ),
                reraise=True,
            ):
                with attempt:
                    await redis.ping()
        except RedisAuthError as e:
            raise CacheConfigurationError(
                "Redis authentication failed", config_key="REDIS_PASSWORD"
            ) from e
        except (RedisConnectionError, RedisTimeoutError, ConnectionRefusedError) as e:
            span.record_exception(e)
            raise TransientStoreError(
                message="Redis connection test failed",
                operation="ping",
                original_error=e,
            ) from e

        logger.debug("Redis connection test successful")
