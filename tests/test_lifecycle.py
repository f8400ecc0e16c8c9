from datetime import timedelta

import pytest

from audit import verify_audit_chain
from database import SessionLocal
from errors import PartialBatchFailure
from lifecycle import LifecycleEngine
from models import AuditLog, StorageType, Transfer, TransferStatus, utcnow
from sessions import FileDescriptor
from transfers import TransferManager

GRACE = timedelta(hours=24)


@pytest.fixture
def now():
    return utcnow().replace(microsecond=0)


@pytest.fixture
def engine(stores, now):
    return LifecycleEngine(SessionLocal, stores, grace_period=GRACE, workers=2, clock=lambda: now)


def make_transfer(db, stores, now, name, tiers, expired_for=timedelta(hours=1)):
    """Stores one object per tier and creates a 7-day transfer whose expiry is ``expired_for`` ago."""
    files = []
    for i, tier in enumerate(tiers):
        key = f"prod/2024/01/01/t_{name}/f_{name}{i}_file.bin"
        stores[tier].put(key, b"x" * 10)
        files.append(FileDescriptor(
            file_id=f"{name}{i}", original_name="file.bin", storage_key=key,
            storage_type=tier, mime_type="application/octet-stream", size=10,
        ))
    created = now - timedelta(days=7) - expired_for
    manager = TransferManager(db, stores, clock=lambda: created)
    return manager.create_transfer(files, retention_days=7)


def _status(db, transfer_id):
    db.expire_all()
    return db.query(Transfer).filter(Transfer.id == transfer_id).one().status


class TestExpire:

    def test_all_remote_transfer_is_deleted_at_once(self, db, stores, engine, now):
        transfer = make_transfer(db, stores, now, "remote", [StorageType.REMOTE, StorageType.REMOTE])
        keys = [f.storage_key for f in transfer.files]

        report = engine.expire_transfers(now)

        assert report.succeeded == 1 and report.failed == 0
        assert report.marked_deleted == 1
        assert report.files_deleted == 2
        assert _status(db, transfer.id) == TransferStatus.DELETED.value
        assert not any(stores[StorageType.REMOTE].exists(k) for k in keys)

    def test_local_files_wait_for_the_grace_period(self, db, stores, engine, now):
        transfer = make_transfer(db, stores, now, "mixed", [StorageType.REMOTE, StorageType.LOCAL])
        remote_key, local_key = [f.storage_key for f in transfer.files]

        engine.expire_transfers(now)
        assert _status(db, transfer.id) == TransferStatus.EXPIRED.value
        assert not stores[StorageType.REMOTE].exists(remote_key)
        assert stores[StorageType.LOCAL].exists(local_key)

        # still inside the grace period
        report = engine.delete_local_files(now)
        assert report.succeeded == 0
        assert stores[StorageType.LOCAL].exists(local_key)

        report = engine.delete_local_files(now + GRACE)
        assert report.succeeded == 1
        assert report.freed_bytes == 10
        assert _status(db, transfer.id) == TransferStatus.DELETED.value
        assert not stores[StorageType.LOCAL].exists(local_key)

    def test_active_transfers_are_untouched(self, db, stores, engine, now):
        manager = TransferManager(db, stores, clock=lambda: now)
        stores[StorageType.REMOTE].put("prod/live", b"x")
        transfer = manager.create_transfer([FileDescriptor(
            file_id="live", original_name="live", storage_key="prod/live",
            storage_type=StorageType.REMOTE, mime_type="text/plain", size=1,
        )])

        report = engine.expire_transfers(now)
        assert report.succeeded == 0
        assert _status(db, transfer.id) == TransferStatus.ACTIVE.value
        assert stores[StorageType.REMOTE].exists("prod/live")


class TestFailureIsolation:

    def test_one_failing_transfer_does_not_stop_the_sweep(self, db, stores, engine, now):
        transfers = [make_transfer(db, stores, now, f"t{i}", [StorageType.REMOTE]) for i in range(5)]
        broken = transfers[2]
        stores[StorageType.REMOTE].fail_delete.add(broken.files[0].storage_key)

        report = engine.expire_transfers(now)

        assert report.succeeded == 4
        assert report.failed == 1
        assert report.files_failed == 1
        for t in transfers:
            expected = TransferStatus.EXPIRED if t.id == broken.id else TransferStatus.DELETED
            assert _status(db, t.id) == expected.value
        with pytest.raises(PartialBatchFailure):
            report.raise_for_failures()

    def test_failed_remote_deletions_are_retried(self, db, stores, engine, now):
        transfer = make_transfer(db, stores, now, "retry", [StorageType.REMOTE])
        key = transfer.files[0].storage_key
        stores[StorageType.REMOTE].fail_delete.add(key)
        engine.expire_transfers(now)
        assert _status(db, transfer.id) == TransferStatus.EXPIRED.value

        stores[StorageType.REMOTE].fail_delete.clear()
        report = engine.expire_transfers(now)
        assert report.succeeded == 1
        assert _status(db, transfer.id) == TransferStatus.DELETED.value
        assert not stores[StorageType.REMOTE].exists(key)

    def test_strict_run_raises_after_finishing(self, db, stores, engine, now):
        ok = make_transfer(db, stores, now, "ok", [StorageType.REMOTE])
        bad = make_transfer(db, stores, now, "bad", [StorageType.REMOTE])
        stores[StorageType.REMOTE].fail_delete.add(bad.files[0].storage_key)

        with pytest.raises(PartialBatchFailure) as exc:
            engine.run(now, strict=True)
        assert exc.value.report.succeeded == 1
        assert _status(db, ok.id) == TransferStatus.DELETED.value


class TestIdempotency:

    def test_rerunning_a_finished_sweep_is_a_no_op(self, db, stores, engine, now):
        make_transfer(db, stores, now, "a", [StorageType.REMOTE])
        make_transfer(db, stores, now, "b", [StorageType.LOCAL], expired_for=timedelta(days=3))

        first = engine.run(now)
        assert first["expire"].succeeded == 2
        assert first["delete_local"].succeeded == 1

        second = engine.run(now)
        for report in second.values():
            assert report.succeeded == 0
            assert report.failed == 0
            assert report.files_deleted == 0

    def test_deleting_already_missing_objects_succeeds(self, db, stores, engine, now):
        transfer = make_transfer(db, stores, now, "gone", [StorageType.REMOTE, StorageType.LOCAL],
                                 expired_for=timedelta(days=2))
        for f in transfer.files:
            stores[StorageType(f.storage_type)].delete(f.storage_key)

        reports = engine.run(now)
        assert reports["expire"].failed == 0
        assert reports["delete_local"].failed == 0
        assert _status(db, transfer.id) == TransferStatus.DELETED.value


class TestOverlappingSweeps:

    def _overlap_on_first_delete(self, store, monkeypatch, other_run):
        """Runs ``other_run`` to completion while this sweep is inside its first remote delete."""
        real_delete = store.delete
        fired = []

        def delete(key):
            if not fired:
                fired.append(key)
                other_run()
            return real_delete(key)

        monkeypatch.setattr(store, "delete", delete)
        return fired

    def test_deleted_stays_terminal(self, db, stores, engine, now, monkeypatch):
        transfer = make_transfer(db, stores, now, "race", [StorageType.REMOTE, StorageType.LOCAL],
                                 expired_for=timedelta(days=2))
        other = LifecycleEngine(SessionLocal, stores, grace_period=GRACE, workers=2, clock=lambda: now)
        fired = self._overlap_on_first_delete(stores[StorageType.REMOTE], monkeypatch, lambda: other.run(now))

        reports = engine.run(now)

        assert fired
        assert reports["expire"].marked_expired == 0
        assert _status(db, transfer.id) == TransferStatus.DELETED.value
        actions = [log.action for log in db.query(AuditLog).order_by(AuditLog.id)]
        assert actions == ["TRANSFER_CREATED", "TRANSFER_EXPIRED", "TRANSFER_DELETED"]
        assert verify_audit_chain(db)["valid"] is True

    def test_overlapping_phase_a_records_one_transition(self, db, stores, engine, now, monkeypatch):
        transfer = make_transfer(db, stores, now, "twice", [StorageType.REMOTE])
        other = LifecycleEngine(SessionLocal, stores, grace_period=GRACE, workers=2, clock=lambda: now)
        self._overlap_on_first_delete(stores[StorageType.REMOTE], monkeypatch,
                                      lambda: other.expire_transfers(now))

        report = engine.expire_transfers(now)

        assert report.failed == 0
        assert report.marked_deleted == 0
        assert _status(db, transfer.id) == TransferStatus.DELETED.value
        deleted = db.query(AuditLog).filter(AuditLog.action == "TRANSFER_DELETED").count()
        assert deleted == 1
