from .circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerMetrics,
    CircuitState,
    StoreCircuitBreaker,
)
from .connection_factory import RemoteStoreConfig, create_redis_client, verify_connection
from .serialization import JsonSerializer, Serializer
from .store_client import RemoteStoreClient

__all__ = [
    "CircuitBreakerConfig",
    "CircuitBreakerMetrics",
    "CircuitState",
    "StoreCircuitBreaker",
    "RemoteStoreConfig",
    "create_redis_client",
    "verify_connection",
    "JsonSerializer",
    "Serializer",
    "RemoteStoreClient",
]
