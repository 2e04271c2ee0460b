"""
Remote key-value cache backend on Redis.

Entries are stored as JSON under a key prefix, gzip-compressed with a ``gz:``
marker above the compression threshold, and expire through Redis PX TTLs
derived from the entry's logical expiry.
"""

import asyncio
import gzip
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import redis.asyncio as redis
import structlog
from redis.asyncio.cluster import ClusterNode, RedisCluster
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..config import RedisSettings
from .backend import CacheBackend
from .exceptions import BackendUnavailableError, SerializationError
from .models import BackendName, BackendStats, CacheEntry
from .retry import call_with_retry

logger = structlog.get_logger(__name__)

T = TypeVar("T")

COMPRESSION_MARKER = b"gz:"
TRANSIENT_ERRORS = (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError, OSError)


class RedisCache(CacheBackend):
    """Remote backend: shared across processes, survives restarts of the scraper."""

    name = BackendName.REMOTE.value

    def __init__(
        self,
        settings: Optional[RedisSettings] = None,
        *,
        client: Optional[Any] = None,
        retries: int = 2,
        retry_delay: float = 0.05,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(clock)
        self.settings = settings or RedisSettings()
        self.redis_client = client
        self.retries = retries
        self.retry_delay = retry_delay
        self._connect_lock = asyncio.Lock()
        self._closed = False
        self.stats_counters = {
            "hits": 0,
            "misses": 0,
            "sets": 0,
            "deletes": 0,
            "errors": 0,
        }

    async def initialize(self) -> None:
        await self.connect()

    async def connect(self) -> None:
        """Connect to Redis once; concurrent callers share the same attempt."""
        if self._closed:
            raise BackendUnavailableError(self.name, "connect", "Redis adapter is closed")
        if self.redis_client is not None:
            return

        async with self._connect_lock:
            if self._closed:
                raise BackendUnavailableError(self.name, "connect", "Redis adapter is closed")
            if self.redis_client is not None:
                return

            client = self._build_client()
            try:
                await call_with_retry(
                    client.ping,
                    backend=self.name,
                    operation="connect",
                    retries=self.retries,
                    delay=self.retry_delay,
                    retry_on=TRANSIENT_ERRORS,
                )
            except BackendUnavailableError:
                self.stats_counters["errors"] += 1
                await client.aclose()
                raise
            except RedisError as e:
                self.stats_counters["errors"] += 1
                await client.aclose()
                raise BackendUnavailableError(self.name, "connect", str(e)) from e

            self.redis_client = client
            logger.info(
                "Connected to Redis",
                host=self.settings.host,
                port=self.settings.port,
                cluster=bool(self.settings.cluster_nodes),
            )

    def _build_client(self):
        s = self.settings
        if s.cluster_nodes:
            nodes = []
            for node in s.cluster_nodes:
                host, _, port = node.rpartition(":")
                nodes.append(ClusterNode(host, int(port)))
            return RedisCluster(
                startup_nodes=nodes,
                username=s.username,
                password=s.password,
                socket_timeout=s.socket_timeout,
                decode_responses=False,
            )

        pool = redis.BlockingConnectionPool(
            host=s.host,
            port=s.port,
            db=s.db,
            username=s.username,
            password=s.password,
            max_connections=s.max_connections,
            timeout=s.socket_timeout,
            socket_timeout=s.socket_timeout,
            socket_connect_timeout=s.socket_timeout,
        )
        return redis.Redis(connection_pool=pool)

    async def close(self) -> None:
        """Disconnect from Redis; later calls fail instead of reconnecting."""
        self._closed = True
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("Disconnected from Redis")

    def _key(self, key: str) -> str:
        return f"{self.settings.key_prefix}{key}"

    async def _execute(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        await self.connect()
        try:
            return await call_with_retry(
                func,
                backend=self.name,
                operation=operation,
                retries=self.retries,
                delay=self.retry_delay,
                retry_on=TRANSIENT_ERRORS,
            )
        except BackendUnavailableError:
            self.stats_counters["errors"] += 1
            raise
        except RedisError as e:
            self.stats_counters["errors"] += 1
            logger.error("Redis command failed", operation=operation, error=str(e))
            raise BackendUnavailableError(self.name, operation, str(e)) from e

    def _serialize(self, entry: CacheEntry) -> bytes:
        """Serialize entry for storage."""
        try:
            data = json.dumps(entry.to_dict(), ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Cannot serialize entry '{entry.key}': {e}") from e

        if entry.compress is False or not self.settings.compression_enabled:
            return data
        if entry.compress or len(data) > self.settings.compression_threshold:
            return COMPRESSION_MARKER + gzip.compress(data)
        return data

    def _deserialize(self, data: bytes) -> CacheEntry:
        """Deserialize entry from storage."""
        try:
            if data.startswith(COMPRESSION_MARKER):
                data = gzip.decompress(data[len(COMPRESSION_MARKER):])
            return CacheEntry.from_dict(json.loads(data.decode("utf-8")))
        except (OSError, EOFError, UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise SerializationError(f"Corrupt cache payload: {e}") from e

    async def get(self, key: str) -> Optional[CacheEntry]:
        """Get entry from Redis."""
        data = await self._execute("get", lambda: self.redis_client.get(self._key(key)))
        if data is None:
            self.stats_counters["misses"] += 1
            return None

        entry = self._deserialize(data)
        if entry.is_expired(self.clock()):
            self.stats_counters["misses"] += 1
            return None

        self.stats_counters["hits"] += 1
        return entry

    async def set(self, entry: CacheEntry) -> None:
        """Set entry in Redis with a PX TTL matching its logical expiry."""
        data = self._serialize(entry)
        px = max(1, int((entry.expires_at - self.clock()) * 1000))
        await self._execute(
            "set", lambda: self.redis_client.set(self._key(entry.key), data, px=px)
        )
        self.stats_counters["sets"] += 1

    async def delete(self, key: str) -> bool:
        """Delete key from Redis."""
        result = await self._execute("delete", lambda: self.redis_client.delete(self._key(key)))
        self.stats_counters["deletes"] += 1
        return result > 0

    async def exists(self, key: str) -> bool:
        """Check if key exists in Redis."""
        result = await self._execute("exists", lambda: self.redis_client.exists(self._key(key)))
        return result > 0

    async def ttl(self, key: str) -> Optional[float]:
        """Remaining Redis TTL in seconds, or None when the key is missing."""
        result = await self._execute("ttl", lambda: self.redis_client.pttl(self._key(key)))
        if result is None or result < 0:
            return None
        return result / 1000.0

    async def _scan(self, pattern: str) -> List[str]:
        prefix = self.settings.key_prefix
        keys = []
        async for raw in self.redis_client.scan_iter(match=f"{prefix}{pattern}", count=500):
            name = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            keys.append(name[len(prefix):])
        return keys

    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        """Keys under the prefix matching a glob pattern."""
        return await self._execute("keys", lambda: self._scan(pattern or "*"))

    async def clear(self) -> int:
        """Clear every key under the prefix."""
        async def _clear() -> int:
            keys = await self._scan("*")
            removed = 0
            for i in range(0, len(keys), 500):
                batch = [self._key(key) for key in keys[i:i + 500]]
                removed += await self.redis_client.delete(*batch)
            return removed

        removed = await self._execute("clear", _clear)
        logger.info("Cleared Redis cache namespace", prefix=self.settings.key_prefix, removed=removed)
        return removed

    async def stats(self) -> BackendStats:
        """Get Redis cache statistics."""
        async def _stats() -> Dict[str, Any]:
            keys = await self._scan("*")
            info = await self.redis_client.info("memory")
            return {"entries": len(keys), "info": info or {}}

        result = await self._execute("stats", _stats)
        info = result["info"]
        return BackendStats(
            name=self.name,
            entries=result["entries"],
            bytes_used=int(info.get("used_memory", 0)),
            bytes_limit=int(info.get("maxmemory", 0)) or None,
            hits=self.stats_counters["hits"],
            misses=self.stats_counters["misses"],
        )

    async def health_check(self) -> bool:
        try:
            await self._execute("ping", lambda: self.redis_client.ping())
            return True
        except BackendUnavailableError:
            return False
