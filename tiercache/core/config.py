"""
tiercache Configuration

Configuration management with environment variable support.
Implements secure defaults and validation for all cache settings.
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WriteMode(str, Enum):
    """Default write policy used when a writer is supplied."""

    CACHE_ASIDE = "cache_aside"
    WRITE_THROUGH = "write_through"
    WRITE_BEHIND = "write_behind"


class CacheSettings(BaseSettings):
    """Cache subsystem settings with validation and secure defaults."""

    model_config = SettingsConfigDict(
        env_prefix="TIERCACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Entry lifetime
    DEFAULT_TTL_SECONDS: float = Field(
        default=300.0, ge=0, description="Default entry TTL, 0 means never expires"
    )
    STALE_TTL_SECONDS: float = Field(
        default=3600.0,
        ge=0,
        description="How long the local mirror keeps last-known-good values",
    )

    # In-process tier
    LOCAL_CAPACITY: int = Field(
        default=10_000, ge=0, description="Maximum entries in the in-process tier"
    )
    LOCAL_SWEEP_INTERVAL_SECONDS: Optional[float] = Field(
        default=30.0,
        gt=0,
        description="Background expiry sweep interval (None disables the sweep)",
    )

    # Redis tier
    REDIS_ENABLED: bool = Field(default=True, description="Use Redis as shared tier")
    REDIS_HOST: str = Field(default="localhost", description="Redis host")
    REDIS_PORT: int = Field(default=6379, ge=1, le=65535, description="Redis port")
    REDIS_USERNAME: Optional[str] = Field(default=None, description="Redis ACL user")
    REDIS_PASSWORD: Optional[SecretStr] = Field(
        default=None, description="Redis password"
    )
    REDIS_DB: int = Field(default=0, ge=0, le=15, description="Redis logical database")
    REDIS_NAMESPACE: str = Field(
        default="tiercache",
        min_length=1,
        description="Key prefix isolating cache keys in the shared store",
    )
    REDIS_MAX_CONNECTIONS: int = Field(
        default=10, ge=1, le=100, description="Redis connection pool size"
    )
    REDIS_CONNECTION_TIMEOUT: float = Field(
        default=5.0, gt=0, le=60, description="Socket connect timeout in seconds"
    )
    REDIS_OPERATION_TIMEOUT: float = Field(
        default=2.0, gt=0, le=60, description="Per-operation timeout in seconds"
    )
    REDIS_CONNECT_RETRIES: int = Field(
        default=3, ge=1, le=10, description="Attempts when opening the connection"
    )

    # Circuit breaker
    CIRCUIT_BREAKER_ENABLED: bool = Field(default=True)
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = Field(default=5, ge=1, le=100)
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT: float = Field(default=30.0, gt=0, le=3600)
    CIRCUIT_BREAKER_SUCCESS_THRESHOLD: int = Field(default=2, ge=1, le=100)

    # Write policies
    WRITE_MODE: WriteMode = Field(
        default=WriteMode.WRITE_THROUGH,
        description="Policy applied by CacheService.set when a writer is given",
    )
    WRITE_BEHIND_FLUSH_INTERVAL_MS: int = Field(
        default=1000, ge=1, le=3_600_000, description="Flush scheduler interval"
    )
    WRITE_BEHIND_BATCH_SIZE: int = Field(
        default=100, ge=1, le=10_000, description="Ops attempted per flush"
    )
    WRITE_BEHIND_MAX_RETRIES: int = Field(
        default=3, ge=0, le=100, description="Retries after the first attempt"
    )
    WRITE_BEHIND_WRITE_TIMEOUT: Optional[float] = Field(
        default=30.0, gt=0, description="Timeout for a single origin write"
    )
    EVENT_QUEUE_SIZE: int = Field(
        default=1000, ge=1, le=100_000, description="Buffered write events"
    )
    SHUTDOWN_DEADLINE_SECONDS: float = Field(
        default=10.0, gt=0, le=600, description="Default force-flush deadline"
    )

    # Metrics
    METRICS_WINDOW_SIZE: int = Field(
        default=10_000, ge=10, le=1_000_000, description="Latency samples retained"
    )
    METRICS_MAX_TRACKED_KEYS: int = Field(
        default=10_000, ge=1, le=1_000_000, description="Per-key counters retained"
    )

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_JSON: bool = Field(default=True, description="Render logs as JSON")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of: {allowed}")
        return v.upper()

    @property
    def flush_interval_seconds(self) -> float:
        return self.WRITE_BEHIND_FLUSH_INTERVAL_MS / 1000.0


@lru_cache()
def get_settings() -> CacheSettings:
    """Get cached settings instance."""
    return CacheSettings()
