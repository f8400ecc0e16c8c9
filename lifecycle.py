"""
lifecycle.py: expiry and storage reclamation for transfers.

A sweep runs two phases, in order:

Phase A (expire)
    Active transfers past their expiry date lose their remote objects
    immediately. A transfer with nothing local left goes straight to
    ``deleted``; one with local files goes to ``expired``.

Phase B (delete-local)
    Expired transfers whose expiry date is older than the grace period lose
    their local files (and any remote object Phase A failed to delete), then
    become ``deleted``.

Each transfer, and each file inside it, is an isolated unit of work: a
failure is counted in the report and the sweep moves on. Every step is
idempotent so overlapping or repeated runs are harmless.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

import config
from audit import create_audit_entry
from errors import PartialBatchFailure
from models import StorageType, Transfer, TransferFile, TransferStatus, utcnow
from storage import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    phase: str
    succeeded: int = 0
    failed: int = 0
    files_deleted: int = 0
    files_failed: int = 0
    marked_expired: int = 0
    marked_deleted: int = 0
    freed_bytes: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["freed_mb"] = round(self.freed_bytes / (1024 * 1024), 2)
        return data

    def raise_for_failures(self):
        if self.failed or self.files_failed:
            raise PartialBatchFailure(self)


class LifecycleEngine:

    def __init__(self, session_factory: Callable[[], Session], stores: Dict[StorageType, StorageBackend],
                 grace_period: Optional[timedelta] = None, workers: Optional[int] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.stores = stores
        self.grace_period = grace_period if grace_period is not None else timedelta(
            hours=config.LOCAL_DELETE_GRACE_HOURS
        )
        self.workers = workers or config.SWEEP_WORKERS
        self.clock = clock

    # ─── Phase A ──────────────────────────────────────────────────────────────

    def expire_transfers(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self.clock()
        report = SweepReport(phase="expire")
        db = self.session_factory()
        try:
            due = [row.id for row in db.query(Transfer.id).filter(
                Transfer.status == TransferStatus.ACTIVE.value,
                Transfer.expiry_date < now,
            )]
            # expired transfers whose remote objects a previous run failed to delete
            retry = [row.id for row in db.query(Transfer.id).join(TransferFile).filter(
                Transfer.status == TransferStatus.EXPIRED.value,
                TransferFile.storage_type == StorageType.REMOTE.value,
                TransferFile.deleted_at.is_(None),
            ).distinct()]
        finally:
            db.close()

        logger.info(f"Expiry sweep: {len(due)} transfer(s) past expiry, {len(retry)} pending remote retries")
        for transfer_id in due + [t for t in retry if t not in due]:
            self._run_unit(transfer_id, now, report, self._expire_one)

        logger.info(
            f"Expiry sweep finished: {report.succeeded} ok, {report.failed} failed, "
            f"{report.files_deleted} remote object(s) deleted"
        )
        return report

    def _expire_one(self, db: Session, transfer: Transfer, now: datetime, report: SweepReport) -> bool:
        remote = [f for f in transfer.files
                  if f.storage_type == StorageType.REMOTE.value and f.deleted_at is None]
        failures = self._delete_files(remote, now, report)

        if failures or transfer.has_local_files():
            # undeleted remote objects are retried next run
            target = TransferStatus.EXPIRED
        else:
            target = TransferStatus.DELETED
        self._transition(db, transfer, target, report)
        return not failures

    # ─── Phase B ──────────────────────────────────────────────────────────────

    def delete_local_files(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self.clock()
        report = SweepReport(phase="delete-local")
        cutoff = now - self.grace_period
        db = self.session_factory()
        try:
            due = [row.id for row in db.query(Transfer.id).filter(
                Transfer.status == TransferStatus.EXPIRED.value,
                Transfer.expiry_date < cutoff,
            )]
        finally:
            db.close()

        logger.info(f"Local deletion sweep: {len(due)} transfer(s) past the {self.grace_period} grace period")
        for transfer_id in due:
            self._run_unit(transfer_id, now, report, self._reclaim_one)

        logger.info(
            f"Local deletion sweep finished: {report.succeeded} ok, {report.failed} failed, "
            f"{report.files_deleted} file(s) deleted, {report.freed_bytes} bytes freed"
        )
        return report

    def _reclaim_one(self, db: Session, transfer: Transfer, now: datetime, report: SweepReport) -> bool:
        remaining = [f for f in transfer.files if f.deleted_at is None]
        failures = self._delete_files(remaining, now, report)
        self._transition(db, transfer, TransferStatus.EXPIRED if failures else TransferStatus.DELETED, report)
        return not failures

    # ─── Full sweep ───────────────────────────────────────────────────────────

    def run(self, now: Optional[datetime] = None, strict: bool = False) -> Dict[str, SweepReport]:
        now = now or self.clock()
        reports = {
            "expire": self.expire_transfers(now),
            "delete_local": self.delete_local_files(now),
        }
        if strict:
            for report in reports.values():
                report.raise_for_failures()
        return reports

    # ─── Units of work ────────────────────────────────────────────────────────

    def _run_unit(self, transfer_id: str, now: datetime, report: SweepReport, handler) -> None:
        db = self.session_factory()
        try:
            transfer = db.query(Transfer).filter(Transfer.id == transfer_id).first()
            if transfer is None or transfer.status == TransferStatus.DELETED.value:
                # handled by an overlapping run
                return
            ok = handler(db, transfer, now, report)
            if ok:
                report.succeeded += 1
            else:
                report.failed += 1
        except Exception as e:
            db.rollback()
            report.failed += 1
            report.errors.append(f"transfer {transfer_id}: {e}")
            logger.error(f"Sweep of transfer {transfer_id} failed: {e}", exc_info=True)
        finally:
            db.close()

    def _delete_one(self, f: TransferFile) -> Tuple[TransferFile, Optional[Exception]]:
        try:
            self.stores[StorageType(f.storage_type)].delete(f.storage_key)
            return f, None
        except Exception as e:
            return f, e

    def _delete_files(self, files: List[TransferFile], now: datetime, report: SweepReport) -> int:
        if not files:
            return 0
        failures = 0
        with ThreadPoolExecutor(max_workers=min(self.workers, len(files))) as pool:
            results = list(pool.map(self._delete_one, files))
        for f, error in results:
            if error is None:
                f.deleted_at = now
                report.files_deleted += 1
                report.freed_bytes += f.size or 0
            else:
                failures += 1
                report.files_failed += 1
                report.errors.append(f"file {f.id} ({f.storage_type}): {error}")
                logger.warning(f"Could not delete {f.storage_type} file {f.id} of transfer {f.transfer_id}: {error}")
        return failures

    def _transition(self, db: Session, transfer: Transfer, target: TransferStatus, report: SweepReport):
        """
        Commits the per-file deletions and moves ``transfer`` to ``target``.

        The status write is conditional on the status this run loaded, so a
        run that lost a race with an overlapping sweep leaves the newer status
        (``deleted`` in particular) alone and records no transition.
        """
        transfer_id, previous = transfer.id, transfer.status
        if target.value == previous:
            db.commit()
            return

        updated = db.query(Transfer).filter(
            Transfer.id == transfer_id,
            Transfer.status == previous,
        ).update({Transfer.status: target.value}, synchronize_session=False)
        db.commit()
        if not updated:
            logger.info(f"Transfer {transfer_id} left {previous} during this sweep; not marking it {target.value}")
            return

        if target == TransferStatus.EXPIRED:
            report.marked_expired += 1
            action = "TRANSFER_EXPIRED"
        else:
            report.marked_deleted += 1
            action = "TRANSFER_DELETED"
        logger.info(f"Transfer {transfer_id}: {previous} -> {target.value}")
        create_audit_entry(db, action, transfer_id=transfer_id, meta_data=f"from={previous}")
