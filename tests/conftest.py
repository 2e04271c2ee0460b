"""
Shared fixtures for the cache test suite.

Provides a simulated clock, an in-memory stand-in for the async Redis client,
a settings factory rooted in a temporary directory and a manager factory
wiring the three real backend adapters together.
"""

import fnmatch

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from krds.shared.config import load_settings
from krds.shared.caching import CacheEntry, CacheManager, FileCache, MemoryCache, RedisCache
from krds.shared.caching.text import estimate_size

START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeRedis:
    """Async Redis double covering the commands the remote adapter uses."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.store = {}
        self.down = False
        self.fail_next = 0
        self.calls = 0
        self.closed = False

    def _check(self):
        self.calls += 1
        if self.down:
            raise RedisConnectionError("Connection refused")
        if self.fail_next > 0:
            self.fail_next -= 1
            raise RedisConnectionError("Connection reset by peer")

    def _live(self, name):
        item = self.store.get(name)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self.clock() >= expires_at:
            del self.store[name]
            return None
        return value

    async def ping(self):
        self._check()
        return True

    async def get(self, name):
        self._check()
        return self._live(name)

    async def set(self, name, value, px=None):
        self._check()
        expires_at = self.clock() + px / 1000.0 if px else None
        self.store[name] = (value, expires_at)
        return True

    async def delete(self, *names):
        self._check()
        removed = 0
        for name in names:
            if self._live(name) is not None:
                removed += 1
            self.store.pop(name, None)
        return removed

    async def exists(self, *names):
        self._check()
        return sum(1 for name in names if self._live(name) is not None)

    async def pttl(self, name):
        self._check()
        if self._live(name) is None:
            return -2
        expires_at = self.store[name][1]
        if expires_at is None:
            return -1
        return int((expires_at - self.clock()) * 1000)

    async def scan_iter(self, match=None, count=None):
        self._check()
        for name in list(self.store):
            if self._live(name) is None:
                continue
            if match is None or fnmatch.fnmatchcase(name, match):
                yield name.encode("utf-8")

    async def info(self, section=None):
        self._check()
        used = sum(len(value) for value, _ in self.store.values())
        return {"used_memory": used, "maxmemory": 0}

    async def aclose(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def entry_factory(clock):
    """Build entries stamped with the simulated clock."""
    def _factory(key, value, ttl=60.0, **fields):
        now = clock()
        fields.setdefault("size_bytes", estimate_size(value))
        return CacheEntry(key=key, value=value, ttl=ttl, created_at=now, expires_at=now + ttl, **fields)

    return _factory


@pytest.fixture
def settings_factory(tmp_path):
    """Build settings with fast retries and a temporary file cache directory."""
    def _factory(**overrides):
        options = {
            "retry_attempts": 0,
            "retry_delay": 0.0,
            "operation_timeout": 1.0,
            "file": {"base_dir": tmp_path / "file-cache"},
            "monitoring": {"enabled": False},
        }
        for name, value in overrides.items():
            if isinstance(value, dict) and isinstance(options.get(name), dict):
                options[name] = {**options[name], **value}
            else:
                options[name] = value
        return load_settings(**options)

    return _factory


@pytest.fixture
def manager_factory(settings_factory, fake_redis, clock):
    """Build a manager over real adapters, with Redis replaced by the fake client."""
    def _factory(**overrides):
        settings = settings_factory(**overrides)
        backends = {
            "memory": MemoryCache(
                max_entries=settings.memory.max_entries,
                max_bytes=settings.memory.max_bytes,
                sweep_interval=settings.memory.sweep_interval,
                clock=clock,
            ),
            "remote": RedisCache(settings.redis, client=fake_redis, retries=0, retry_delay=0.0, clock=clock),
            "file": FileCache(settings.file, retries=0, retry_delay=0.0, clock=clock),
        }
        return CacheManager(settings, backends=backends, clock=clock)

    return _factory


@pytest_asyncio.fixture
async def manager(manager_factory):
    cache_manager = manager_factory()
    await cache_manager.initialize()
    yield cache_manager
    await cache_manager.shutdown()
