"""
Durable file cache backend.

Each entry lives at ``base_dir/ab/cd/<sha256>.data`` with a ``<sha256>.meta``
JSON sidecar. Writes go through a temp file and ``os.replace`` so readers
never observe a partial payload; blocking I/O runs in worker threads.
"""

import asyncio
import gzip
import hashlib
import json
import os
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog

from ..config import FileSettings
from .backend import CacheBackend
from .exceptions import EntryTooLargeError, SerializationError
from .models import BackendName, BackendStats, CacheEntry
from .retry import call_with_retry

logger = structlog.get_logger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


@dataclass
class FileMeta:
    """Sidecar metadata for one cached file."""
    key: str
    digest: str
    created_at: float
    expires_at: float
    ttl: float
    compressed: bool
    size_bytes: int
    stored_bytes: int
    version: int
    tags: List[str]
    last_accessed: float


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.parent / f".{path.name}.{uuid4().hex}.tmp"
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise


def _read_bytes(path: Path) -> Optional[bytes]:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def _remove_files(*paths: Path) -> bool:
    removed = False
    for path in paths:
        try:
            path.unlink()
            removed = True
        except FileNotFoundError:
            pass
    return removed


def _scan_metadata(base_dir: Path) -> Tuple[List[Dict[str, Any]], int]:
    """Load every sidecar under ``base_dir`` and drop leftover temp files."""
    base_dir.mkdir(parents=True, exist_ok=True)
    metas = []
    discarded = 0
    for tmp_path in base_dir.rglob("*.tmp"):
        _remove_files(tmp_path)
    for meta_path in base_dir.rglob("*.meta"):
        data_path = meta_path.with_suffix(".data")
        if not data_path.exists():
            _remove_files(meta_path)
            discarded += 1
            continue
        try:
            metas.append(json.loads(meta_path.read_text(encoding="utf-8")))
        except (OSError, ValueError):
            _remove_files(meta_path, data_path)
            discarded += 1
    return metas, discarded


class FileCache(CacheBackend):
    """File backend: the slowest tier, for large or long-lived entries."""

    name = BackendName.FILE.value

    def __init__(
        self,
        settings: Optional[FileSettings] = None,
        *,
        retries: int = 2,
        retry_delay: float = 0.05,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(clock)
        self.settings = settings or FileSettings()
        self.base_dir = Path(self.settings.base_dir)
        self.retries = retries
        self.retry_delay = retry_delay
        self.index: Dict[str, FileMeta] = {}
        self.last_cleanup_at: Optional[float] = None
        self.stats_counters = {"hits": 0, "misses": 0, "evictions": 0}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._initialized = False

    async def initialize(self) -> None:
        """Rebuild the index from sidecars and start periodic cleanup."""
        if not self._initialized:
            metas, discarded = await self._io("initialize", _scan_metadata, self.base_dir)
            self.index = {}
            for data in metas:
                try:
                    meta = FileMeta(**data)
                except TypeError:
                    continue
                self.index[meta.key] = meta
            self._initialized = True
            logger.info(
                "File cache initialized",
                base_dir=str(self.base_dir),
                entries=len(self.index),
                discarded=discarded,
            )

        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def close(self) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None

    def _paths(self, key: str) -> Tuple[str, Path, Path]:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        directory = self.base_dir
        for level in range(self.settings.directory_depth):
            directory = directory / digest[level * 2:level * 2 + 2]
        return digest, directory / f"{digest}.data", directory / f"{digest}.meta"

    async def _io(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        return await call_with_retry(
            lambda: asyncio.to_thread(func, *args),
            backend=self.name,
            operation=operation,
            retries=self.retries,
            delay=self.retry_delay,
            retry_on=(OSError,),
        )

    def _encode(self, entry: CacheEntry) -> Tuple[bytes, bool]:
        try:
            data = json.dumps(entry.to_dict(), ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Cannot serialize entry '{entry.key}': {e}") from e

        if entry.compress is False:
            return data, False
        if entry.compress or len(data) > self.settings.compression_threshold:
            return gzip.compress(data), True
        return data, False

    @staticmethod
    def _decode(data: bytes) -> CacheEntry:
        if data.startswith(GZIP_MAGIC):
            data = gzip.decompress(data)
        return CacheEntry.from_dict(json.loads(data.decode("utf-8")))

    async def get(self, key: str) -> Optional[CacheEntry]:
        meta = self.index.get(key)
        if meta is None:
            self.stats_counters["misses"] += 1
            return None

        _, data_path, meta_path = self._paths(key)
        now = self.clock()
        if now >= meta.expires_at:
            await self._drop(key, data_path, meta_path)
            self.stats_counters["misses"] += 1
            return None

        data = await self._io("get", _read_bytes, data_path)
        if data is None:
            self.index.pop(key, None)
            self.stats_counters["misses"] += 1
            return None

        try:
            entry = self._decode(data)
        except (OSError, EOFError, UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding corrupt cache file", cache_key=key, path=str(data_path), error=str(e))
            await self._drop(key, data_path, meta_path)
            self.stats_counters["misses"] += 1
            return None

        meta.last_accessed = now
        self.stats_counters["hits"] += 1
        return entry

    async def set(self, entry: CacheEntry) -> None:
        data, compressed = self._encode(entry)
        if len(data) > self.settings.max_size_bytes:
            raise EntryTooLargeError(entry.key, len(data), self.settings.max_size_bytes)

        digest, data_path, meta_path = self._paths(entry.key)
        meta = FileMeta(
            key=entry.key,
            digest=digest,
            created_at=entry.created_at,
            expires_at=entry.expires_at,
            ttl=entry.ttl,
            compressed=compressed,
            size_bytes=entry.size_bytes,
            stored_bytes=len(data),
            version=entry.version,
            tags=sorted(entry.tags),
            last_accessed=self.clock(),
        )
        meta_bytes = json.dumps(asdict(meta), ensure_ascii=False).encode("utf-8")

        def _write():
            _atomic_write(data_path, data)
            _atomic_write(meta_path, meta_bytes)

        await self._io("set", _write)
        self.index[entry.key] = meta

        if self._bytes_used() > self.settings.max_size_bytes:
            await self._evict_to_limit()

    async def delete(self, key: str) -> bool:
        _, data_path, meta_path = self._paths(key)
        known = key in self.index
        self.index.pop(key, None)
        removed = await self._io("delete", _remove_files, data_path, meta_path)
        return known or removed

    async def clear(self) -> int:
        count = 0
        for key in list(self.index):
            if await self.delete(key):
                count += 1
        logger.info("Cleared file cache", base_dir=str(self.base_dir), removed=count)
        return count

    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        now = self.clock()
        live = [key for key, meta in self.index.items() if now < meta.expires_at]
        return self._match(live, pattern)

    async def stats(self) -> BackendStats:
        return BackendStats(
            name=self.name,
            entries=len(self.index),
            bytes_used=self._bytes_used(),
            bytes_limit=self.settings.max_size_bytes,
            last_cleanup_at=self.last_cleanup_at,
            hits=self.stats_counters["hits"],
            misses=self.stats_counters["misses"],
            evictions=self.stats_counters["evictions"],
        )

    async def cleanup(self) -> Dict[str, int]:
        """Remove expired files, then evict least recently accessed files over the size limit."""
        now = self.clock()
        expired = [key for key, meta in self.index.items() if now >= meta.expires_at]
        for key in expired:
            _, data_path, meta_path = self._paths(key)
            await self._drop(key, data_path, meta_path)

        evicted = await self._evict_to_limit()
        self.last_cleanup_at = now
        if expired or evicted:
            logger.info("File cache cleanup", expired=len(expired), evicted=evicted)
        return {"expired": len(expired), "evicted": evicted}

    def _bytes_used(self) -> int:
        return sum(meta.stored_bytes for meta in self.index.values())

    async def _evict_to_limit(self) -> int:
        evicted = 0
        total = self._bytes_used()
        if total <= self.settings.max_size_bytes:
            return 0
        for meta in sorted(self.index.values(), key=lambda m: m.last_accessed):
            if total <= self.settings.max_size_bytes:
                break
            _, data_path, meta_path = self._paths(meta.key)
            await self._drop(meta.key, data_path, meta_path)
            total -= meta.stored_bytes
            evicted += 1
        self.stats_counters["evictions"] += evicted
        return evicted

    async def _drop(self, key: str, data_path: Path, meta_path: Path) -> None:
        self.index.pop(key, None)
        await self._io("delete", _remove_files, data_path, meta_path)

    async def _cleanup_loop(self):
        while True:
            try:
                await asyncio.sleep(self.settings.cleanup_interval)
                await self.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in file cache cleanup loop", error=str(e))
