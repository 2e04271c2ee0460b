"""
Multi-tier cache manager for KRDS content.

Routes reads through memory, remote and file backends in priority order,
places writes according to the strategy engine, keeps tag and access indexes,
and reports every backend call to the cache monitor.

Every write is stamped with a manager-issued version. The manager remembers
the latest version per key, so copies left behind in slower backends by an
overwrite, an invalidation or a failed delete are never served.
"""

import asyncio
import signal
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from pydantic import ValidationError

from ..config import CacheSettings, load_settings
from ..logging_config import get_logger
from .backend import CacheBackend
from .cache_monitor import CacheMonitor
from .cache_strategies import AccessTracker, CacheStrategyEngine, TagIndex, resolve_strategy
from .exceptions import (
    AllBackendsUnavailableError, BackendUnavailableError, CacheError, ConfigurationError,
    SerializationError,
)
from .file_cache import FileCache
from .memory_cache import MemoryCache
from .models import (
    BackendName, BackendStats, CacheEntry, KeyState, OperationOutcome, Priority, StrategyName,
)
from .redis_cache import RedisCache
from .text import contains_korean, normalize_key

Loader = Callable[[str], Awaitable[Any]]


class CacheManager:
    """Orchestrates cache backends, strategies and monitoring."""

    def __init__(
        self,
        settings: Optional[CacheSettings] = None,
        *,
        backends: Optional[Mapping[str, CacheBackend]] = None,
        clock: Callable[[], float] = time.time,
    ):
        try:
            self.settings = settings if settings is not None else load_settings()
        except ValidationError as e:
            raise ConfigurationError(f"Invalid cache configuration: {e}") from e

        self.clock = clock
        self.logger = get_logger(__name__, 'cache_manager')
        self.priority: List[str] = [BackendName(name).value for name in self.settings.backend_priority]

        if backends is None:
            backends = self._create_backends()
        missing = [name for name in self.priority if name not in backends]
        if missing:
            raise ConfigurationError(f"No backend instance for configured backends: {missing}")
        self.backends: Dict[str, CacheBackend] = {name: backends[name] for name in self.priority}

        self.strategies = CacheStrategyEngine(self.settings.ttl, self.settings.strategy)
        self.monitor = CacheMonitor(self.settings.monitoring, stats_provider=self.backend_stats, clock=clock)
        self.access = AccessTracker()
        self.tags = TagIndex()

        self._key_states: Dict[str, KeyState] = {}
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._version = time.time_ns()
        self._clear_floor = 0

        self._promotions: Set[asyncio.Task] = set()
        self._accepting_promotions = True
        self._maintenance_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._initialized = False

    def _create_backends(self) -> Dict[str, CacheBackend]:
        s = self.settings
        factories = {
            BackendName.MEMORY.value: lambda: MemoryCache(
                max_entries=s.memory.max_entries,
                max_bytes=s.memory.max_bytes,
                sweep_interval=s.memory.sweep_interval,
                clock=self.clock,
            ),
            BackendName.REMOTE.value: lambda: RedisCache(
                s.redis, retries=s.retry_attempts, retry_delay=s.retry_delay, clock=self.clock
            ),
            BackendName.FILE.value: lambda: FileCache(
                s.file, retries=s.retry_attempts, retry_delay=s.retry_delay, clock=self.clock
            ),
        }
        return {name: factories[name]() for name in self.priority}

    # Lifecycle

    async def initialize(self) -> None:
        """Initialize backends and start background tasks."""
        if self._initialized:
            return
        self._loop = asyncio.get_running_loop()

        for name, backend in self.backends.items():
            try:
                await self._call(name, "initialize", backend.initialize())
            except BackendUnavailableError as e:
                # Reads and writes fall back past it until it recovers
                self.monitor.record_error("initialize", name, e)

        if self.settings.monitoring.enabled:
            await self.monitor.start()
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        self._initialized = True

        self.logger.info(
            "Cache manager initialized",
            operation="initialize",
            backends=self.priority,
            strategy=self.strategies.default_strategy.value
        )

    async def __aenter__(self) -> "CacheManager":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    def get_monitor(self) -> CacheMonitor:
        return self.monitor

    # Helpers

    @staticmethod
    def normalize_key(key: str) -> str:
        return normalize_key(key)

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    def _key_lock(self, key: str) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    def _longest_ttl(self) -> float:
        ttl = self.settings.ttl
        return max(ttl.default_ttl * ttl.korean_boost, ttl.frequent_ttl)

    async def _call(self, name: str, operation: str, coro: Awaitable[Any]) -> Any:
        """Run one backend call under the operation timeout."""
        timeout = self.settings.operation_timeout
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise BackendUnavailableError(name, operation, f"timed out after {timeout}s") from e

    def _is_stale(self, entry: CacheEntry, state: Optional[KeyState]) -> bool:
        if entry.version < self._clear_floor:
            return True
        if state is None:
            return False
        return state.deleted or entry.version < state.version

    # Reads

    async def _lookup(self, key: str, record: bool) -> Tuple[Optional[str], Optional[CacheEntry], Dict[str, Exception]]:
        errors: Dict[str, Exception] = {}

        for name, backend in self.backends.items():
            started = time.perf_counter()
            try:
                entry = await self._call(name, "get", backend.get(key))
            except BackendUnavailableError as e:
                errors[name] = e
                if record:
                    self.monitor.record_error("get", name, e, (time.perf_counter() - started) * 1000)
                continue
            except SerializationError as e:
                # A corrupt copy is a miss for this backend, not an outage
                self.logger.warning(
                    f"Unreadable cache entry in {name}: {e}",
                    operation="get",
                    cache_key=key,
                    backend=name
                )
                if record:
                    self.monitor.record_error("get", name, e, (time.perf_counter() - started) * 1000)
                continue

            latency_ms = (time.perf_counter() - started) * 1000
            state = self._key_states.get(key)
            if entry is None or entry.is_expired(self.clock()) or self._is_stale(entry, state):
                if record:
                    self.monitor.record_operation("get", name, latency_ms, OperationOutcome.MISS)
                continue

            if record:
                self.monitor.record_operation("get", name, latency_ms, OperationOutcome.HIT, entry.size_bytes)
            if state is None or entry.version > state.version:
                self._key_states[key] = KeyState(
                    version=entry.version,
                    expires_at=max(entry.expires_at, state.expires_at if state else entry.expires_at),
                    entry_expires_at=entry.expires_at,
                )
            return name, entry, errors

        return None, None, errors

    async def get(self, key: str) -> Any:
        """
        Get a value, trying backends in priority order.

        A hit in a slower backend schedules promotion into the faster ones.

        Returns:
            The cached value, or None when no backend holds a live copy

        Raises:
            AllBackendsUnavailableError: every backend failed for this read
        """
        key = normalize_key(key)
        started = time.perf_counter()
        name, entry, errors = await self._lookup(key, record=True)
        latency_ms = (time.perf_counter() - started) * 1000

        if entry is not None:
            self.access.record(key, self.clock())
            self.monitor.record_request(True, latency_ms, entry.is_korean)
            faster = self.priority[:self.priority.index(name)]
            targets = [target for target in faster if target not in errors]
            if targets:
                self._schedule_promotion(key, entry, targets)
            return entry.value

        if errors and len(errors) == len(self.backends):
            raise AllBackendsUnavailableError(errors)

        self.monitor.record_request(False, latency_ms, contains_korean(key))
        return None

    async def has(self, key: str) -> bool:
        """Check for a live copy without touching metrics or access history."""
        _, entry, _ = await self._lookup(normalize_key(key), record=False)
        return entry is not None

    def _schedule_promotion(self, key: str, entry: CacheEntry, targets: List[str]) -> None:
        if not self._accepting_promotions:
            return
        task = asyncio.create_task(self._promote(key, entry, targets))
        self._promotions.add(task)
        task.add_done_callback(self._promotions.discard)

    async def _promote(self, key: str, entry: CacheEntry, targets: List[str]) -> None:
        async with self._key_lock(key):
            state = self._key_states.get(key)
            if state is None or state.version != entry.version or entry.is_expired(self.clock()):
                return

            for name in targets:
                started = time.perf_counter()
                try:
                    await self._call(name, "promote", self.backends[name].set(entry))
                    self.monitor.record_operation(
                        "promote", name, (time.perf_counter() - started) * 1000,
                        OperationOutcome.SUCCESS, entry.size_bytes
                    )
                except BackendUnavailableError as e:
                    self.monitor.record_error("promote", name, e, (time.perf_counter() - started) * 1000)
                except CacheError as e:
                    self.logger.debug(
                        f"Skipped promotion of {key} into {name}: {e}",
                        operation="promote",
                        cache_key=key,
                        backend=name
                    )

    # Writes

    async def set(
        self,
        key: str,
        value: Any,
        *,
        ttl: Optional[float] = None,
        strategy: Union[str, StrategyName, None] = None,
        tags: Optional[Iterable[str]] = None,
        priority: Union[Priority, str] = Priority.NORMAL,
        compress: Optional[bool] = None,
        backend: Union[BackendName, str, None] = None,
    ) -> CacheEntry:
        """
        Store a value.

        The strategy engine picks TTL and backend unless ``ttl`` or ``backend``
        are given. The chosen backend is the primary copy; when it is
        unavailable the write moves down the priority order. Replicas (memory
        for high priority entries, every backend with write-through) are best
        effort.

        Returns:
            The stored entry

        Raises:
            ValueError: value is None, or ttl is not positive
            SerializationError: value is not JSON serializable
            CacheWriteError: the primary backend rejected the entry
            AllBackendsUnavailableError: no backend accepted the write
        """
        if value is None:
            raise ValueError("None cannot be cached")
        if ttl is not None and ttl <= 0:
            raise ValueError(f"TTL must be positive, got {ttl}")

        key = normalize_key(key)
        priority = Priority(priority)
        strategy = resolve_strategy(strategy) if strategy is not None else None
        profile = self.strategies.analyze(value)

        now = self.clock()
        pattern = self.access.record(key, now)
        decision = self.strategies.decide(profile, pattern, strategy)

        if backend is not None:
            target = BackendName(backend).value
            if target not in self.backends:
                raise ConfigurationError(f"Backend '{target}' is not configured")
        else:
            target = decision.backend.value
            if target not in self.backends:
                target = self.priority[0]

        order = [target] + [name for name in self.priority if name != target]
        entry_ttl = ttl if ttl is not None else decision.ttl

        async with self._key_lock(key):
            entry = CacheEntry(
                key=key,
                value=value,
                ttl=entry_ttl,
                created_at=now,
                expires_at=now + entry_ttl,
                tags=frozenset(tags or ()),
                size_bytes=profile.size_bytes,
                priority=priority,
                backend_hint=BackendName(target),
                version=self._next_version(),
                content_class=profile.content_class,
                compress=compress,
            )

            primary = None
            errors: Dict[str, Exception] = {}
            for name in order:
                started = time.perf_counter()
                try:
                    await self._call(name, "set", self.backends[name].set(entry))
                except BackendUnavailableError as e:
                    errors[name] = e
                    self.monitor.record_error("set", name, e, (time.perf_counter() - started) * 1000)
                    continue
                self.monitor.record_operation(
                    "set", name, (time.perf_counter() - started) * 1000,
                    OperationOutcome.SUCCESS, entry.size_bytes
                )
                primary = name
                break

            if primary is None:
                raise AllBackendsUnavailableError(errors)
            if primary != target:
                self.logger.warning(
                    f"Primary backend {target} unavailable, stored {key} in {primary}",
                    operation="set",
                    cache_key=key,
                    backend=primary
                )

            await self._replicate(entry, self._replica_targets(primary, priority, errors))

            previous = self._key_states.get(key)
            expires_at = entry.expires_at
            if previous is not None:
                expires_at = max(expires_at, previous.expires_at)
            self._key_states[key] = KeyState(
                version=entry.version, expires_at=expires_at, entry_expires_at=entry.expires_at
            )
            self.tags.set_tags(key, entry.tags)
            self.monitor.record_entry_added(key, profile.is_korean)

        self.logger.debug(
            f"Cached {key} in {primary}",
            operation="set",
            cache_key=key,
            backend=primary,
            ttl=entry_ttl,
            tier=decision.tier.value,
            size_bytes=entry.size_bytes
        )
        return replace(entry, backend_hint=BackendName(primary))

    def _replica_targets(self, primary: str, priority: Priority, errors: Mapping[str, Exception]) -> List[str]:
        targets = []
        if self.settings.write_through:
            targets = [name for name in self.priority if name != primary]
        elif priority == Priority.HIGH and BackendName.MEMORY.value in self.backends:
            targets = [BackendName.MEMORY.value]
        return [name for name in targets if name != primary and name not in errors]

    async def _replicate(self, entry: CacheEntry, targets: List[str]) -> None:
        async def _write(name: str):
            started = time.perf_counter()
            try:
                await self._call(name, "replicate", self.backends[name].set(entry))
                self.monitor.record_operation(
                    "replicate", name, (time.perf_counter() - started) * 1000,
                    OperationOutcome.SUCCESS, entry.size_bytes
                )
            except BackendUnavailableError as e:
                self.monitor.record_error("replicate", name, e, (time.perf_counter() - started) * 1000)
            except CacheError as e:
                self.logger.warning(
                    f"Replica write of {entry.key} to {name} failed: {e}",
                    operation="replicate",
                    cache_key=entry.key,
                    backend=name
                )

        if targets:
            await asyncio.gather(*(_write(name) for name in targets))

    # Invalidation

    async def _delete_from(self, name: str, key: str) -> Optional[bool]:
        """Delete from one backend; None when the backend could not be reached."""
        started = time.perf_counter()
        try:
            removed = await self._call(name, "delete", self.backends[name].delete(key))
        except BackendUnavailableError as e:
            self.monitor.record_error("delete", name, e, (time.perf_counter() - started) * 1000)
            return None
        self.monitor.record_operation(
            "delete", name, (time.perf_counter() - started) * 1000, OperationOutcome.SUCCESS
        )
        return bool(removed)

    async def _invalidate_key(self, key: str) -> bool:
        async with self._key_lock(key):
            now = self.clock()
            previous = self._key_states.get(key)
            live = previous is not None and previous.is_live(now)
            floor_expiry = previous.expires_at if previous is not None else now + self._longest_ttl()
            self._key_states[key] = KeyState(
                version=self._next_version(),
                expires_at=max(floor_expiry, now),
                deleted=True,
            )

            results = await asyncio.gather(*(self._delete_from(name, key) for name in self.backends))

            self.tags.remove(key)
            self.access.remove(key)
            self.monitor.record_entry_removed(key)

        if previous is not None:
            # An unreachable backend may still hold the copy
            return live and any(result is not False for result in results)
        return any(results)

    async def invalidate(
        self,
        *,
        tags: Optional[Iterable[str]] = None,
        keys: Optional[Iterable[str]] = None,
        patterns: Optional[Iterable[str]] = None,
    ) -> int:
        """
        Remove entries by key, tag or glob pattern from every backend.

        Once this returns, no ``get`` observes the removed values, even if a
        backend missed the delete.

        Returns:
            Number of logical entries removed
        """
        targets: Set[str] = set()
        for key in keys or ():
            targets.add(normalize_key(key))
        if tags:
            targets |= self.tags.keys_for_tags(tags)
        for pattern in patterns or ():
            targets.update(await self.keys(pattern))

        if not targets:
            return 0

        results = await asyncio.gather(*(self._invalidate_key(key) for key in sorted(targets)))
        removed = sum(1 for result in results if result)

        self.logger.info(
            f"Invalidated {removed} cache entries",
            operation="invalidate",
            removed=removed,
            candidates=len(targets),
            tags=sorted(tags) if tags else None
        )
        return removed

    async def delete(self, key: str) -> bool:
        return await self.invalidate(keys=[key]) > 0

    async def keys(self, pattern: Optional[str] = None) -> List[str]:
        """Live keys across backends, optionally filtered by a glob pattern."""
        found: Set[str] = set()
        for name, backend in self.backends.items():
            try:
                found.update(await self._call(name, "keys", backend.keys(pattern)))
            except BackendUnavailableError as e:
                self.monitor.record_error("keys", name, e)

        return sorted(
            key for key in found
            if not (key in self._key_states and self._key_states[key].deleted)
        )

    async def clear(self) -> int:
        """Remove every entry from every backend."""
        removed = len(await self.keys())
        self._clear_floor = self._next_version()

        for name, backend in self.backends.items():
            try:
                await self._call(name, "clear", backend.clear())
            except BackendUnavailableError as e:
                self.monitor.record_error("clear", name, e)

        for key in list(self._key_states):
            self.monitor.record_entry_removed(key)
        self._key_states.clear()
        self.tags.clear()
        self.access.clear()

        self.logger.info(f"Cleared {removed} cache entries", operation="clear", removed=removed)
        return removed

    async def warmup(self, keys: Iterable[str], concurrency: int = 3, loader: Optional[Loader] = None) -> int:
        """
        Pull keys into the fastest backends.

        Each key is read once, which promotes copies found in slower backends.
        Misses are filled from ``loader`` when one is given.

        Returns:
            Number of keys that ended up cached
        """
        semaphore = asyncio.Semaphore(max(1, concurrency))
        keys = list(keys)

        async def _warm(key: str) -> bool:
            async with semaphore:
                try:
                    if await self.get(key) is not None:
                        return True
                    if loader is None:
                        return False
                    value = await loader(key)
                    if value is None:
                        return False
                    await self.set(key, value, priority=Priority.LOW)
                    return True
                except (CacheError, ValueError) as e:
                    self.logger.error(
                        f"Warmup failed for key {key}: {e}",
                        operation="warmup",
                        cache_key=key
                    )
                    return False

        results = await asyncio.gather(*(_warm(key) for key in keys))
        warmed = sum(1 for result in results if result)
        self.logger.info(
            "Cache warmup finished",
            operation="warmup",
            requested=len(keys),
            warmed=warmed
        )
        return warmed

    # Introspection

    async def backend_stats(self) -> Dict[str, BackendStats]:
        stats = {}
        for name, backend in self.backends.items():
            try:
                stats[name] = await self._call(name, "stats", backend.stats())
            except BackendUnavailableError as e:
                self.logger.warning(
                    f"Stats unavailable for {name}: {e}",
                    operation="backend_stats",
                    backend=name
                )
        return stats

    async def get_stats(self) -> Dict[str, Any]:
        """Aggregated cache statistics."""
        stats = await self.backend_stats()
        return {
            "backends": {name: backend_stats.to_dict() for name, backend_stats in stats.items()},
            "unavailable": [name for name in self.priority if name not in stats],
            "entries": sum(backend_stats.entries for backend_stats in stats.values()),
            "bytes_used": sum(backend_stats.bytes_used for backend_stats in stats.values()),
            "tracked_keys": len(self._key_states),
            "tags": len(self.tags),
            "access_patterns": len(self.access),
            "pending_promotions": len(self._promotions),
            "strategy": self.strategies.default_strategy.value,
            "adaptive_weights": {cls.value: weight for cls, weight in self.strategies.get_weights().items()},
        }

    async def health_check(self) -> Dict[str, bool]:
        health = {}
        for name, backend in self.backends.items():
            try:
                health[name] = bool(await asyncio.wait_for(
                    backend.health_check(), timeout=self.settings.operation_timeout
                ))
            except asyncio.TimeoutError:
                health[name] = False
        return health

    # Maintenance

    def run_maintenance(self) -> Dict[str, int]:
        """Prune expired key state and feed observed hit rates to adaptive weighting."""
        now = self.clock()
        expired = [key for key, state in self._key_states.items() if now >= state.expires_at]
        for key in expired:
            del self._key_states[key]
            self.tags.remove(key)
            self.monitor.record_entry_removed(key)

        live = [key for key, state in self._key_states.items() if not state.deleted]
        pruned_patterns = self.access.retain(live)

        idle_locks = [
            key for key, lock in self._key_locks.items()
            if not lock.locked() and key not in self._key_states
        ]
        for key in idle_locks:
            del self._key_locks[key]

        self.strategies.update_weights(self.monitor.get_class_hit_rates())
        return {"expired_keys": len(expired), "pruned_patterns": pruned_patterns}

    async def _maintenance_loop(self):
        while True:
            try:
                await asyncio.sleep(self.settings.monitoring.metrics_interval)
                self.run_maintenance()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(
                    f"Error in maintenance loop: {e}",
                    operation="maintenance_loop"
                )

    # Shutdown

    async def flush_promotions(self, timeout: Optional[float] = None) -> int:
        """Wait for pending promotions; cancel whatever is left after ``timeout``."""
        pending = set(self._promotions)
        if not pending:
            return 0
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            await asyncio.gather(*not_done, return_exceptions=True)
        return len(done)

    async def _shutdown(self) -> None:
        self._accepting_promotions = False
        flushed = await self.flush_promotions(self.settings.shutdown_timeout)

        if self._maintenance_task:
            self._maintenance_task.cancel()
            await asyncio.gather(self._maintenance_task, return_exceptions=True)
            self._maintenance_task = None

        await self.monitor.stop()

        results = await asyncio.gather(
            *(backend.close() for backend in self.backends.values()), return_exceptions=True
        )
        for name, result in zip(self.backends, results):
            if isinstance(result, Exception):
                self.logger.error(
                    f"Error closing {name} backend: {result}",
                    operation="shutdown",
                    backend=name
                )

        self._initialized = False
        self.logger.info("Cache manager shut down", operation="shutdown", flushed_promotions=flushed)

    def _start_shutdown(self) -> asyncio.Task:
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown())
        return self._shutdown_task

    async def shutdown(self) -> None:
        """Release all resources. Runs once; later calls wait for the first."""
        await asyncio.shield(self._start_shutdown())

    def request_shutdown(self) -> None:
        """Schedule shutdown from a signal handler or another thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._start_shutdown)

    async def wait_closed(self) -> None:
        if self._shutdown_task is not None:
            await asyncio.shield(self._shutdown_task)

    def install_signal_handlers(self) -> None:
        """Shut down on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        self._loop = loop
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                signal.signal(sig, lambda signum, frame: self.request_shutdown())
