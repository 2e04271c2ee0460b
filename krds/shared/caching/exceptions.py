"""
Cache error taxonomy.

Adapters translate low-level client errors (redis, OS, timeouts) into these
types before they reach the cache manager; nothing below ``CacheError`` leaks
out of the public API.
"""
from typing import Dict, Optional


class CacheError(Exception):
    """Base exception for cache operations."""


class BackendUnavailableError(CacheError):
    """A backend could not serve an operation after bounded retries."""

    def __init__(self, backend: str, operation: str, message: Optional[str] = None):
        self.backend = backend
        self.operation = operation
        super().__init__(message or f"Backend '{backend}' unavailable during {operation}")


class AllBackendsUnavailableError(CacheError):
    """Every configured backend failed for the same operation."""

    def __init__(self, errors: Dict[str, Exception]):
        self.errors = dict(errors)
        detail = ", ".join(f"{name}: {error}" for name, error in self.errors.items())
        super().__init__(f"All cache backends unavailable ({detail})")


class SerializationError(CacheError):
    """Value could not be serialized or a stored payload could not be decoded."""


class ConfigurationError(CacheError):
    """Invalid cache configuration."""


class CacheWriteError(CacheError):
    """A write was rejected for a reason other than backend availability."""


class EntryTooLargeError(CacheWriteError):
    """Single entry exceeds the capacity of the target backend."""

    def __init__(self, key: str, size_bytes: int, limit_bytes: int):
        self.key = key
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            f"Entry '{key}' is {size_bytes} bytes, backend limit is {limit_bytes} bytes"
        )
