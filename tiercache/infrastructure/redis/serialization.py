"""
Serialization boundary for the remote store.

Values are encoded on write and decoded on read; either failure is a
``SerializationError`` and is never retried.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Optional, Union

from ...domain.cache.exceptions import SerializationError


class Serializer(ABC):
    """Encode payloads to bytes and back."""

    @abstractmethod
    def dumps(self, value: Any, key: Optional[str] = None) -> bytes:
        pass

    @abstractmethod
    def loads(self, data: Union[bytes, str], key: Optional[str] = None) -> Any:
        pass


class JsonSerializer(Serializer):
    """UTF-8 JSON. Integers written by INCRBY decode as plain numbers."""

    def dumps(self, value: Any, key: Optional[str] = None) -> bytes:
        try:
            return json.dumps(value, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(
                f"Failed to encode value of type {type(value).__name__}",
                key=key,
                original_error=e,
            ) from e

    def loads(self, data: Union[bytes, str], key: Optional[str] = None) -> Any:
        try:
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            return json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError, TypeError) as e:
            raise SerializationError(
                "Failed to decode stored payload", key=key, original_error=e
            ) from e
