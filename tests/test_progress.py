"""Tests for download checkpoints and interruption detection."""

from datetime import date

import pytest

from tallycache.cache.backends import DirectoryBackend
from tallycache.cache.keys import checkpoint_key
from tallycache.cache.progress import CheckpointStore
from tallycache.cache.records import RecordStore
from tallycache.cache.store import HybridCache
from tallycache.models.cache import CacheType
from tallycache.sync.registry import ActiveSyncRegistry, SyncHandle


class TestWriteCheckpoint:
    async def test_write_and_read(self, cache, identity):
        store = CheckpointStore(cache)
        await store.write_checkpoint(identity, 2, 5, 40, date(2024, 1, 1), date(2024, 1, 10), 12)

        checkpoint = await CheckpointStore(cache).read_checkpoint(identity)
        assert checkpoint.current == 2
        assert checkpoint.total == 5
        assert checkpoint.last_alter_id == 40
        assert checkpoint.from_date == date(2024, 1, 1)
        assert checkpoint.record_count == 12
        assert checkpoint.is_incomplete
        assert cache.entry(checkpoint_key(identity)).type == CacheType.SESSION

    async def test_current_never_decreases(self, cache, identity):
        store = CheckpointStore(cache)
        await store.write_checkpoint(identity, 3, 5)
        with pytest.raises(ValueError):
            await store.write_checkpoint(identity, 2, 5)

    async def test_decrease_checked_against_stored_value(self, cache, identity):
        await CheckpointStore(cache).write_checkpoint(identity, 3, 5)
        with pytest.raises(ValueError):
            await CheckpointStore(cache).write_checkpoint(identity, 1, 5)

    async def test_restart_allowed_after_cache_clear(self, cache, identity):
        store = CheckpointStore(cache)
        await store.write_checkpoint(identity, 2, 3)
        await cache.clear_all()
        checkpoint = await store.write_checkpoint(identity, 0, 3)
        assert checkpoint.current == 0

    async def test_new_attempt_with_other_total(self, cache, identity):
        store = CheckpointStore(cache)
        await store.write_checkpoint(identity, 3, 5)
        checkpoint = await store.write_checkpoint(identity, 0, 8)
        assert checkpoint.current == 0

    async def test_current_cannot_exceed_total(self, cache, identity):
        with pytest.raises(ValueError):
            await CheckpointStore(cache).write_checkpoint(identity, 6, 5)

    async def test_clear(self, cache, identity):
        store = CheckpointStore(cache)
        await store.write_checkpoint(identity, 3, 5)
        await store.clear_checkpoint(identity)
        assert await store.read_checkpoint(identity) is None
        await store.write_checkpoint(identity, 0, 5)

    async def test_invalid_checkpoint_discarded(self, cache, identity):
        await cache.set(checkpoint_key(identity), {"current": 9, "total": 2})
        assert await CheckpointStore(cache).read_checkpoint(identity) is None
        assert checkpoint_key(identity) not in cache


class TestInterruption:
    async def test_detects_incomplete(self, cache, identity):
        store = CheckpointStore(cache)
        await store.write_checkpoint(identity, 2, 5)
        checkpoint = await store.detect_interrupted(identity, ActiveSyncRegistry())
        assert checkpoint is not None
        assert checkpoint.current == 2

    async def test_complete_is_not_interrupted(self, cache, identity):
        store = CheckpointStore(cache)
        await store.write_checkpoint(identity, 5, 5)
        assert await store.detect_interrupted(identity, None) is None

    async def test_running_sync_is_not_interrupted(self, cache, identity):
        store = CheckpointStore(cache)
        await store.write_checkpoint(identity, 2, 5)

        class Running:
            def done(self):
                return False

        registry = ActiveSyncRegistry()
        handle = SyncHandle(identity)
        handle.task = Running()
        registry.register(handle)
        assert await store.detect_interrupted(identity, registry) is None

    async def test_dismissal_survives_restart(self, tmp_path, identity):
        async def open_cache():
            return await HybridCache(
                DirectoryBackend(str(tmp_path / "cache")), RecordStore(str(tmp_path / "db.duckdb"))
            ).open()

        first = await open_cache()
        store = CheckpointStore(first)
        checkpoint = await store.write_checkpoint(identity, 2, 5)
        await store.dismiss(identity, checkpoint)
        assert await store.detect_interrupted(identity, None) is None
        await first.close()

        second = await open_cache()
        try:
            store = CheckpointStore(second)
            assert await store.detect_interrupted(identity, None) is None

            # A different checkpoint state is reported again
            await store.write_checkpoint(identity, 3, 5)
            assert (await store.detect_interrupted(identity, None)).current == 3
        finally:
            await second.close()

    async def test_scan_interrupted(self, cache, identity, other_identity):
        store = CheckpointStore(cache)
        await store.write_checkpoint(identity, 1, 4)
        await store.write_checkpoint(other_identity, 4, 4)

        found = await store.scan_interrupted([identity, other_identity], None)
        assert [(i.guid, c.current) for i, c in found] == [("guid-a", 1)]
