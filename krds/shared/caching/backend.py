"""
Capability interface shared by the memory, remote and file cache adapters.
"""
import fnmatch
import time
from abc import ABC, abstractmethod
from typing import Callable, Iterable, List, Optional

from .models import BackendStats, CacheEntry


class CacheBackend(ABC):
    """
    Storage adapter used by the cache manager.

    ``get`` returns ``None`` for absent or expired entries. Transient faults
    are raised as ``BackendUnavailableError`` once the adapter's own retries
    are exhausted.
    """

    name: str = "backend"

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    async def initialize(self) -> None:
        """Open connections and start background maintenance."""

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        ...

    @abstractmethod
    async def set(self, entry: CacheEntry) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def clear(self) -> int:
        ...

    @abstractmethod
    async def stats(self) -> BackendStats:
        ...

    @abstractmethod
    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        ...

    async def health_check(self) -> bool:
        try:
            await self.stats()
            return True
        except Exception:
            return False

    async def close(self) -> None:
        """Stop background maintenance and release resources."""

    @staticmethod
    def _match(keys: Iterable[str], pattern: Optional[str]) -> List[str]:
        if pattern is None:
            return list(keys)
        return [key for key in keys if fnmatch.fnmatchcase(key, pattern)]
