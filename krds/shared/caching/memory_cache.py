"""
In-process memory cache backend.

A thread-safe LRU bounded by entry count and total bytes, plus an asyncio
sweep task that drops expired entries between reads. The adapter stores and
returns copies, so callers never share a cached value's mutable state.
"""

import asyncio
import copy
import threading
import time
from collections import OrderedDict
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Any

from ..logging_config import get_logger
from .backend import CacheBackend
from .exceptions import EntryTooLargeError
from .models import BackendName, BackendStats, CacheEntry


class LRUCache:
    """Thread-safe LRU cache of ``CacheEntry`` objects."""

    def __init__(self, max_entries: int = 1000, max_bytes: int = 100 * 1024 * 1024,
                 clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.clock = clock
        self.cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.lock = threading.RLock()
        self.bytes_used = 0
        self.stats = {
            'hits': 0,
            'misses': 0,
            'evictions': 0,
            'expired': 0,
        }

    def get(self, key: str) -> Optional[CacheEntry]:
        """Get entry from cache."""
        with self.lock:
            entry = self.cache.get(key)
            if entry is None:
                self.stats['misses'] += 1
                return None

            if entry.is_expired(self.clock()):
                self._remove(key)
                self.stats['expired'] += 1
                self.stats['misses'] += 1
                return None

            # Move to end (most recently used)
            self.cache.move_to_end(key)
            self.stats['hits'] += 1
            return entry

    def set(self, entry: CacheEntry) -> List[str]:
        """
        Store an entry, evicting least recently used entries to make room.

        Returns:
            Keys evicted to fit the entry
        """
        if entry.size_bytes > self.max_bytes:
            raise EntryTooLargeError(entry.key, entry.size_bytes, self.max_bytes)

        evicted = []
        with self.lock:
            if entry.key in self.cache:
                self._remove(entry.key)

            self.cache[entry.key] = entry
            self.bytes_used += entry.size_bytes

            while len(self.cache) > self.max_entries or self.bytes_used > self.max_bytes:
                oldest_key = next(iter(self.cache))
                self._remove(oldest_key)
                self.stats['evictions'] += 1
                evicted.append(oldest_key)

        return evicted

    def delete(self, key: str) -> bool:
        """Delete key from cache."""
        with self.lock:
            if key in self.cache:
                self._remove(key)
                return True
            return False

    def clear(self) -> int:
        """Clear all cache entries."""
        with self.lock:
            count = len(self.cache)
            self.cache.clear()
            self.bytes_used = 0
            return count

    def purge_expired(self) -> int:
        """Remove every expired entry."""
        now = self.clock()
        with self.lock:
            expired = [key for key, entry in self.cache.items() if entry.is_expired(now)]
            for key in expired:
                self._remove(key)
            self.stats['expired'] += len(expired)
            return len(expired)

    def keys(self) -> List[str]:
        now = self.clock()
        with self.lock:
            return [key for key, entry in self.cache.items() if not entry.is_expired(now)]

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self.lock:
            total_requests = self.stats['hits'] + self.stats['misses']
            hit_rate = self.stats['hits'] / total_requests if total_requests > 0 else 0

            return {
                **self.stats,
                'size': len(self.cache),
                'bytes_used': self.bytes_used,
                'hit_rate': hit_rate,
                'total_requests': total_requests
            }

    def _remove(self, key: str) -> None:
        entry = self.cache.pop(key)
        self.bytes_used -= entry.size_bytes


class MemoryCache(CacheBackend):
    """Memory backend: the fastest tier, bounded and volatile."""

    name = BackendName.MEMORY.value

    def __init__(self, max_entries: int = 1000, max_bytes: int = 100 * 1024 * 1024,
                 sweep_interval: float = 60.0, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.lru = LRUCache(max_entries=max_entries, max_bytes=max_bytes, clock=clock)
        self.sweep_interval = sweep_interval
        self.last_cleanup_at: Optional[float] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self.logger = get_logger(__name__, 'memory_cache')

    async def initialize(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        self.logger.info(
            "Memory cache initialized",
            operation="initialize",
            max_entries=self.lru.max_entries,
            max_bytes=self.lru.max_bytes
        )

    async def get(self, key: str) -> Optional[CacheEntry]:
        entry = self.lru.get(key)
        return _detached(entry) if entry is not None else None

    async def set(self, entry: CacheEntry) -> None:
        evicted = self.lru.set(_detached(entry))
        if evicted:
            self.logger.debug(
                f"Evicted {len(evicted)} entries",
                operation="evict",
                cache_key=entry.key,
                evicted=len(evicted)
            )

    async def delete(self, key: str) -> bool:
        return self.lru.delete(key)

    async def clear(self) -> int:
        return self.lru.clear()

    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        return self._match(self.lru.keys(), pattern)

    async def stats(self) -> BackendStats:
        stats = self.lru.get_stats()
        return BackendStats(
            name=self.name,
            entries=stats['size'],
            bytes_used=stats['bytes_used'],
            bytes_limit=self.lru.max_bytes,
            last_cleanup_at=self.last_cleanup_at,
            hits=stats['hits'],
            misses=stats['misses'],
            evictions=stats['evictions'],
        )

    def sweep(self) -> int:
        """Drop expired entries now."""
        removed = self.lru.purge_expired()
        self.last_cleanup_at = self.clock()
        if removed:
            self.logger.debug(
                f"Swept {removed} expired entries",
                operation="sweep",
                removed=removed
            )
        return removed

    async def close(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None

    async def _sweep_loop(self):
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(
                    f"Error in memory sweep loop: {e}",
                    operation="sweep_loop",
                    error=str(e)
                )


def _detached(entry: CacheEntry) -> CacheEntry:
    """Copy of ``entry`` whose value shares no mutable state with the caller."""
    return replace(entry, value=copy.deepcopy(entry.value))
