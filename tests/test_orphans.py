from datetime import timedelta

import pytest

from models import StorageType, utcnow
from orphans import OrphanChunkCollector
from sessions import FileDescriptor

MAX_AGE = timedelta(hours=24)

OLD_CHUNK = "temp/2024/01/01/t_temp_old/f_old/chunk_0"
OLD_CHUNK_2 = "temp/2024/01/01/t_temp_old/f_old/chunk_1"
YOUNG_CHUNK = "temp/2024/01/02/t_temp_new/f_new/chunk_0"
FINAL_OBJECT = "prod/2024/01/01/t_tr/f_done_file.bin"


@pytest.fixture
def now():
    return utcnow()


@pytest.fixture
def seeded(store, now):
    store.now = now - timedelta(hours=30)
    store.put(OLD_CHUNK, b"old")
    store.put(OLD_CHUNK_2, b"older")
    store.put(FINAL_OBJECT, b"keep me")
    store.now = now - timedelta(hours=1)
    store.put(YOUNG_CHUNK, b"young")
    store.now = None
    return store


class TestChunkSweep:

    def test_only_chunks_past_max_age_are_deleted(self, seeded, now):
        report = OrphanChunkCollector(seeded, max_age=MAX_AGE).collect(now)

        assert report.deleted == 2
        assert report.errors == 0
        assert report.freed_bytes == len(b"old") + len(b"older")
        assert not seeded.exists(OLD_CHUNK)
        assert seeded.exists(YOUNG_CHUNK)
        assert seeded.exists(FINAL_OBJECT)

    def test_one_failing_delete_does_not_stop_the_sweep(self, seeded, now):
        seeded.fail_delete.add(OLD_CHUNK)
        report = OrphanChunkCollector(seeded, max_age=MAX_AGE).collect(now)

        assert report.deleted == 1
        assert report.errors == 1
        assert seeded.exists(OLD_CHUNK)
        assert not seeded.exists(OLD_CHUNK_2)

    def test_listing_failure_is_reported(self, seeded, now):
        seeded.fail_list = True
        report = OrphanChunkCollector(seeded, max_age=MAX_AGE).collect(now)
        assert report.deleted == 0
        assert report.errors == 1

    def test_sweep_is_idempotent(self, seeded, now):
        collector = OrphanChunkCollector(seeded, max_age=MAX_AGE)
        collector.collect(now)
        again = collector.collect(now)
        assert again.deleted == 0
        assert again.errors == 0


class TestMultipartAndSessions:

    def test_stale_multipart_uploads_are_aborted(self, store, now):
        store.now = now - timedelta(days=2)
        stale = store.create_multipart_upload("prod/x/stale.bin", "application/octet-stream")
        store.now = now
        fresh = store.create_multipart_upload("prod/x/fresh.bin", "application/octet-stream")

        report = OrphanChunkCollector(store, max_age=MAX_AGE).collect(now)

        assert report.aborted_uploads == 1
        assert stale not in store.uploads
        assert fresh in store.uploads

    def test_unattached_files_expire(self, store, stores, memory_registry):
        store.put("prod/p/f_pending_a.bin", b"pending")
        memory_registry.open("pending", file_name="a.bin", expected_part_count=1)
        memory_registry.complete("pending", FileDescriptor(
            file_id="pending", original_name="a.bin", storage_key="prod/p/f_pending_a.bin",
            storage_type=StorageType.REMOTE, mime_type="application/octet-stream", size=7,
        ))

        collector = OrphanChunkCollector(
            store, registry=memory_registry, stores=stores,
            max_age=MAX_AGE, pending_ttl=timedelta(minutes=60),
        )

        # within the pending TTL nothing happens
        report = collector.collect(utcnow())
        assert report.expired_pending == 0
        assert store.exists("prod/p/f_pending_a.bin")

        report = collector.collect(utcnow() + timedelta(hours=2))
        assert report.expired_pending == 1
        assert report.purged_sessions == 1
        assert not store.exists("prod/p/f_pending_a.bin")
        assert memory_registry.get("pending") is None

    def test_attached_files_are_kept(self, store, stores, memory_registry):
        store.put("prod/p/f_kept_a.bin", b"kept")
        memory_registry.open("kept", file_name="a.bin", expected_part_count=1)
        memory_registry.complete("kept", FileDescriptor(
            file_id="kept", original_name="a.bin", storage_key="prod/p/f_kept_a.bin",
            storage_type=StorageType.REMOTE, mime_type="application/octet-stream", size=4,
        ))
        memory_registry.attach(["kept"], "transfer-1", timedelta(minutes=60))

        collector = OrphanChunkCollector(store, registry=memory_registry, stores=stores, max_age=MAX_AGE)
        collector.collect(utcnow() + timedelta(hours=2))
        assert store.exists("prod/p/f_kept_a.bin")

    def test_abandoned_in_progress_sessions_are_purged(self, store, sql_registry):
        sql_registry.open("abandoned", file_name="a.bin", expected_part_count=3)
        collector = OrphanChunkCollector(store, registry=sql_registry, max_age=MAX_AGE)

        assert collector.collect(utcnow()).purged_sessions == 0
        assert collector.collect(utcnow() + timedelta(days=2)).purged_sessions == 1
        assert sql_registry.get("abandoned") is None
