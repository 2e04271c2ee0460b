"""
Tests for the durable file backend.
"""

import hashlib
import json

import pytest

from krds.shared.caching import EntryTooLargeError, FileCache
from krds.shared.caching.file_cache import GZIP_MAGIC
from krds.shared.config import FileSettings


def _paths(base_dir, key):
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    directory = base_dir / digest[:2] / digest[2:4]
    return directory / f"{digest}.data", directory / f"{digest}.meta"


@pytest.fixture
def file_settings(tmp_path):
    return FileSettings(base_dir=tmp_path / "files", compression_threshold=1024, max_size_bytes=1024 * 1024)


@pytest.fixture
def file_cache(file_settings, clock):
    return FileCache(file_settings, retries=0, retry_delay=0.0, clock=clock)


class TestFileCache:
    """Test FileCache storage layout and lifecycle."""

    @pytest.mark.asyncio
    async def test_round_trip_writes_data_and_metadata(self, file_cache, file_settings, entry_factory):
        await file_cache.initialize()
        try:
            await file_cache.set(entry_factory("guide:색상", {"title": "색상 가이드"}, ttl=300, version=7))

            data_path, meta_path = _paths(file_settings.base_dir, "guide:색상")
            assert data_path.exists()
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
            assert meta["key"] == "guide:색상"
            assert meta["ttl"] == 300
            assert meta["version"] == 7
            assert meta["compressed"] is False

            entry = await file_cache.get("guide:색상")
            assert entry.value == {"title": "색상 가이드"}
            assert entry.version == 7
        finally:
            await file_cache.close()

    @pytest.mark.asyncio
    async def test_large_payload_compressed(self, file_cache, file_settings, entry_factory):
        value = "타이포그래피 " * 1000
        await file_cache.set(entry_factory("large", value))

        data_path, meta_path = _paths(file_settings.base_dir, "large")
        assert data_path.read_bytes().startswith(GZIP_MAGIC)
        assert json.loads(meta_path.read_text(encoding="utf-8"))["compressed"] is True
        assert (await file_cache.get("large")).value == value

    @pytest.mark.asyncio
    async def test_no_temp_files_left_behind(self, file_cache, file_settings, entry_factory):
        for i in range(5):
            await file_cache.set(entry_factory(f"doc:{i}", i))

        assert list(file_settings.base_dir.rglob("*.tmp")) == []

    @pytest.mark.asyncio
    async def test_index_rebuilt_from_metadata(self, file_settings, clock, entry_factory):
        first = FileCache(file_settings, clock=clock)
        await first.initialize()
        await first.set(entry_factory("doc:1", "persisted"))
        await first.close()

        second = FileCache(file_settings, clock=clock)
        await second.initialize()
        try:
            assert await second.keys() == ["doc:1"]
            assert (await second.get("doc:1")).value == "persisted"
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_expired_entries_miss_and_are_removed(self, file_cache, file_settings, clock, entry_factory):
        await file_cache.set(entry_factory("short", "v", ttl=10))
        clock.advance(11)

        assert await file_cache.get("short") is None
        data_path, meta_path = _paths(file_settings.base_dir, "short")
        assert not data_path.exists()
        assert not meta_path.exists()

    @pytest.mark.asyncio
    async def test_cleanup_removes_expired_then_evicts_oldest_accessed(self, tmp_path, clock, entry_factory):
        cache = FileCache(
            FileSettings(base_dir=tmp_path / "small", max_size_bytes=20_000, compression_threshold=1_000_000),
            clock=clock,
        )
        await cache.set(entry_factory("expiring", "x" * 100, ttl=5))
        for key in ("old", "mid", "new"):
            clock.advance(1)
            await cache.set(entry_factory(key, "x" * 3000, ttl=600))

        clock.advance(10)
        await cache.get("old")  # now the most recently accessed
        cache.settings = cache.settings.model_copy(update={"max_size_bytes": 7_000})

        result = await cache.cleanup()

        assert result == {"expired": 1, "evicted": 1}
        assert sorted(await cache.keys()) == ["new", "old"]
        assert (await cache.stats()).last_cleanup_at == clock()

    @pytest.mark.asyncio
    async def test_entry_larger_than_limit_rejected(self, tmp_path, clock, entry_factory):
        cache = FileCache(
            FileSettings(base_dir=tmp_path / "tiny", max_size_bytes=100, compression_threshold=1_000_000),
            clock=clock,
        )
        with pytest.raises(EntryTooLargeError):
            await cache.set(entry_factory("big", "x" * 500))

    @pytest.mark.asyncio
    async def test_corrupt_file_is_a_miss(self, file_cache, file_settings, entry_factory):
        await file_cache.set(entry_factory("doc:1", "v"))
        data_path, _ = _paths(file_settings.base_dir, "doc:1")
        data_path.write_bytes(b"{not json")

        assert await file_cache.get("doc:1") is None
        assert await file_cache.keys() == []

    @pytest.mark.asyncio
    async def test_delete_clear_and_stats(self, file_cache, entry_factory):
        for key in ("doc:1", "doc:2", "search:1"):
            await file_cache.set(entry_factory(key, key))

        assert await file_cache.delete("doc:1") is True
        assert await file_cache.delete("doc:1") is False

        stats = await file_cache.stats()
        assert stats.name == "file"
        assert stats.entries == 2
        assert stats.bytes_used > 0

        assert await file_cache.clear() == 2
        assert (await file_cache.stats()).entries == 0
