"""
Tests for the Redis backend adapter, run against an in-memory client double.
"""

import gzip
import json

import pytest

from krds.shared.caching import BackendUnavailableError, RedisCache, SerializationError
from krds.shared.caching.redis_cache import COMPRESSION_MARKER
from krds.shared.config import RedisSettings


@pytest.fixture
def redis_cache(fake_redis, clock):
    return RedisCache(
        RedisSettings(compression_threshold=1024),
        client=fake_redis,
        retries=2,
        retry_delay=0.0,
        clock=clock,
    )


class TestRedisCache:
    """Test RedisCache against the fake client."""

    @pytest.mark.asyncio
    async def test_round_trip_under_prefix(self, redis_cache, fake_redis, entry_factory):
        await redis_cache.set(entry_factory("doc:1", {"title": "버튼"}, tags=frozenset({"docs"})))

        assert "krds:cache:doc:1" in fake_redis.store
        entry = await redis_cache.get("doc:1")
        assert entry.value == {"title": "버튼"}
        assert entry.tags == frozenset({"docs"})

    @pytest.mark.asyncio
    async def test_small_payload_stored_as_plain_json(self, redis_cache, fake_redis, entry_factory):
        await redis_cache.set(entry_factory("small", "버튼"))

        raw, _ = fake_redis.store["krds:cache:small"]
        assert json.loads(raw.decode("utf-8"))["value"] == "버튼"

    @pytest.mark.asyncio
    async def test_large_payload_compressed_with_marker(self, redis_cache, fake_redis, entry_factory):
        value = "디자인 시스템 " * 500
        await redis_cache.set(entry_factory("large", value))

        raw, _ = fake_redis.store["krds:cache:large"]
        assert raw.startswith(COMPRESSION_MARKER)
        assert json.loads(gzip.decompress(raw[len(COMPRESSION_MARKER):]))["value"] == value
        assert (await redis_cache.get("large")).value == value

    @pytest.mark.asyncio
    async def test_compress_hint_overrides_threshold(self, redis_cache, fake_redis, entry_factory):
        await redis_cache.set(entry_factory("forced", "tiny", compress=True))
        await redis_cache.set(entry_factory("never", "x" * 5000, compress=False))

        assert fake_redis.store["krds:cache:forced"][0].startswith(COMPRESSION_MARKER)
        assert not fake_redis.store["krds:cache:never"][0].startswith(COMPRESSION_MARKER)

    @pytest.mark.asyncio
    async def test_px_ttl_follows_logical_expiry(self, redis_cache, clock, entry_factory):
        await redis_cache.set(entry_factory("ttl", "v", ttl=120))

        assert await redis_cache.ttl("ttl") == pytest.approx(120, abs=0.01)
        assert await redis_cache.exists("ttl")

        clock.advance(121)

        assert await redis_cache.get("ttl") is None
        assert not await redis_cache.exists("ttl")
        assert await redis_cache.ttl("ttl") is None

    @pytest.mark.asyncio
    async def test_delete_keys_and_clear_stay_in_namespace(self, redis_cache, fake_redis, entry_factory):
        fake_redis.store["other:app:key"] = (b"foreign", None)
        for key in ("doc:1", "doc:2", "search:1"):
            await redis_cache.set(entry_factory(key, key))

        assert sorted(await redis_cache.keys("doc:*")) == ["doc:1", "doc:2"]
        assert await redis_cache.delete("doc:1") is True
        assert await redis_cache.delete("doc:1") is False
        assert await redis_cache.clear() == 2
        assert "other:app:key" in fake_redis.store

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, redis_cache, fake_redis, entry_factory):
        await redis_cache.set(entry_factory("doc:1", "v"))
        fake_redis.fail_next = 2

        entry = await redis_cache.get("doc:1")

        assert entry.value == "v"

    @pytest.mark.asyncio
    async def test_unreachable_raises_backend_unavailable(self, redis_cache, fake_redis):
        fake_redis.down = True

        with pytest.raises(BackendUnavailableError) as exc_info:
            await redis_cache.get("doc:1")

        assert exc_info.value.backend == "remote"
        assert exc_info.value.operation == "get"
        assert await redis_cache.health_check() is False

    @pytest.mark.asyncio
    async def test_corrupt_payload_raises_serialization_error(self, redis_cache, fake_redis):
        fake_redis.store["krds:cache:bad"] = (COMPRESSION_MARKER + b"not gzip", None)

        with pytest.raises(SerializationError):
            await redis_cache.get("bad")

    @pytest.mark.asyncio
    async def test_stats(self, redis_cache, entry_factory):
        await redis_cache.set(entry_factory("doc:1", "v"))
        await redis_cache.get("doc:1")
        await redis_cache.get("missing")

        stats = await redis_cache.stats()

        assert stats.name == "remote"
        assert stats.entries == 1
        assert stats.bytes_used > 0
        assert stats.bytes_limit is None
        assert (stats.hits, stats.misses) == (1, 1)

    @pytest.mark.asyncio
    async def test_close_releases_client(self, redis_cache, fake_redis):
        await redis_cache.close()

        assert fake_redis.closed
        assert redis_cache.redis_client is None

    @pytest.mark.asyncio
    async def test_closed_adapter_does_not_reconnect(self, redis_cache, fake_redis, entry_factory):
        await redis_cache.close()
        calls = fake_redis.calls

        with pytest.raises(BackendUnavailableError):
            await redis_cache.get("doc:1")
        with pytest.raises(BackendUnavailableError):
            await redis_cache.set(entry_factory("doc:1", "v"))

        assert redis_cache.redis_client is None
        assert fake_redis.calls == calls
        assert await redis_cache.health_check() is False
