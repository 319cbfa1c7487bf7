"""
Cache Value Objects

Immutable value objects for the cache domain.
Provides type safety and validation for keys, tags, TTLs and options.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import CacheConfigurationError

MAX_KEY_LENGTH = 512
MAX_TAG_LENGTH = 128

GLOB_CHARS = frozenset("*?[")


def as_glob(pattern: str) -> str:
    """Treat a pattern without glob characters as a prefix."""
    if any(char in GLOB_CHARS for char in pattern):
        return pattern
    return f"{pattern}*"


class CacheSource(str, Enum):
    """Where a value returned by ``get`` came from."""

    CACHE = "cache"
    ORIGIN = "origin"
    CACHE_STALE = "cache_stale"
    # Nothing cached and no loader supplied.
    MISS = "miss"


class CacheOperation(str, Enum):
    """Operations reported to the metrics collector."""

    HIT = "hit"
    MISS = "miss"
    SET = "set"
    DELETE = "delete"
    ERROR = "error"


class WriteOpState(str, Enum):
    """Lifecycle of a queued write-behind operation."""

    QUEUED = "queued"
    ATTEMPTING = "attempting"
    COMMITTED = "committed"
    ABANDONED = "abandoned"


class WriteEventKind(str, Enum):
    """Outcomes published on the write event channel."""

    COMMITTED = "committed"
    RETRYING = "retrying"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class CacheKey:
    """
    Immutable cache key value object.

    Enforces basic key hygiene before a key reaches any tier.
    """

    value: str

    def __post_init__(self) -> None:
        """Validate cache key format."""
        if not isinstance(self.value, str) or not self.value:
            raise ValueError("Cache key cannot be empty")

        if len(self.value) > MAX_KEY_LENGTH:
            raise ValueError(f"Cache key too long (max {MAX_KEY_LENGTH} characters)")

        if any(char.isspace() for char in self.value):
            raise ValueError("Cache key cannot contain whitespace")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class CacheTag:
    """
    Cache tag value object for invalidation groups.

    Allows invalidating multiple cache entries by tag.
    """

    value: str

    def __post_init__(self) -> None:
        """Validate tag value."""
        if not isinstance(self.value, str) or not self.value:
            raise ValueError("Cache tag cannot be empty")
        if len(self.value) > MAX_TAG_LENGTH:
            raise ValueError(f"Cache tag too long (max {MAX_TAG_LENGTH} characters)")
        if any(char.isspace() for char in self.value):
            raise ValueError("Cache tag cannot contain whitespace")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class TTL:
    """
    Time To Live value object.

    Zero means the entry never expires; that is distinct from an entry
    that has already expired.
    """

    seconds: float

    def __post_init__(self) -> None:
        """Validate TTL value."""
        if self.seconds is None or self.seconds < 0:
            raise CacheConfigurationError(
                "TTL cannot be negative", config_key="ttl", config_value=self.seconds
            )

    @classmethod
    def of(cls, value: Union["TTL", float, int, None], default: float = 0.0) -> "TTL":
        """Coerce a raw number (or ``None`` for the default) to a TTL."""
        if isinstance(value, TTL):
            return value
        if value is None:
            return cls(float(default))
        return cls(float(value))

    @classmethod
    def unbounded(cls) -> "TTL":
        return cls(0.0)

    @classmethod
    def milliseconds(cls, ms: float) -> "TTL":
        return cls(ms / 1000.0)

    @classmethod
    def minutes(cls, minutes: float) -> "TTL":
        return cls(minutes * 60)

    @classmethod
    def hours(cls, hours: float) -> "TTL":
        return cls(hours * 3600)

    @property
    def is_unbounded(self) -> bool:
        return self.seconds == 0

    def as_milliseconds(self) -> Optional[int]:
        """Milliseconds for Redis PX, ``None`` for no expiry.

        Never rounds a bounded TTL down to zero.
        """
        if self.is_unbounded:
            return None
        return max(1, int(round(self.seconds * 1000)))

    def __str__(self) -> str:
        return f"{self.seconds:g}s"


class CacheOptions(BaseModel):
    """Per-call options recognised by the cache strategies."""

    model_config = ConfigDict(frozen=True)

    ttl: Optional[float] = Field(
        default=None, ge=0, description="Entry TTL in seconds, 0 never expires"
    )
    force_refresh: bool = Field(
        default=False, description="Skip the cache read and reload from origin"
    )
    fallback_on_error: bool = Field(
        default=False, description="Serve a stale value when the store read fails"
    )
    immediate: bool = Field(
        default=False, description="Write-behind only: commit to origin synchronously"
    )

    @field_validator("ttl", mode="before")
    @classmethod
    def coerce_ttl(cls, v):
        if isinstance(v, TTL):
            return v.seconds
        return v


DEFAULT_OPTIONS = CacheOptions()
