"""
orphans.py: garbage collection for abandoned uploads.

The chunk assembler only removes chunks on its success path. Anything left
under ``temp/`` by crashed or abandoned uploads is deleted here once it is
older than the max age. The same sweep aborts stale native multipart
uploads, removes finished files that were never attached to a transfer and
purges old upload-session rows.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import config
from errors import StorageError
from models import StorageType, utcnow
from sessions import SessionRegistry
from storage import CHUNK_ROOT, StorageBackend, chunk_index_of

logger = logging.getLogger(__name__)


@dataclass
class OrphanReport:
    deleted: int = 0
    errors: int = 0
    freed_bytes: int = 0
    aborted_uploads: int = 0
    expired_pending: int = 0
    purged_sessions: int = 0
    messages: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["freed_mb"] = round(self.freed_bytes / (1024 * 1024), 2)
        return data


class OrphanChunkCollector:

    def __init__(self, chunk_store: StorageBackend, registry: Optional[SessionRegistry] = None,
                 stores: Optional[Dict[StorageType, StorageBackend]] = None,
                 max_age: Optional[timedelta] = None, pending_ttl: Optional[timedelta] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.chunk_store = chunk_store
        self.registry = registry
        self.stores = stores or {chunk_store.storage_type: chunk_store}
        self.max_age = max_age if max_age is not None else timedelta(hours=config.ORPHAN_CHUNK_MAX_AGE_HOURS)
        self.pending_ttl = pending_ttl if pending_ttl is not None else timedelta(
            minutes=config.PENDING_FILE_TTL_MINUTES
        )
        self.clock = clock

    def collect(self, now: Optional[datetime] = None) -> OrphanReport:
        now = now or self.clock()
        cutoff = now - self.max_age
        report = OrphanReport()

        logger.info(f"Orphan sweep: removing chunks older than {self.max_age}")
        self._delete_stale_chunks(cutoff, report)
        self._abort_stale_multipart(cutoff, report)
        if self.registry is not None:
            self._drop_unattached_files(now, report)
            report.purged_sessions = self.registry.purge(cutoff, self.pending_ttl, now)

        logger.info(
            f"Orphan sweep finished: {report.deleted} chunk(s) deleted, {report.errors} error(s), "
            f"{report.aborted_uploads} multipart upload(s) aborted, "
            f"{report.freed_bytes / 1024 / 1024:.2f} MB freed"
        )
        return report

    def _delete_stale_chunks(self, cutoff: datetime, report: OrphanReport):
        try:
            objects = self.chunk_store.list_objects(f"{CHUNK_ROOT}/")
        except StorageError as e:
            report.errors += 1
            report.messages.append(str(e))
            logger.error(f"Could not list chunks: {e}")
            return

        for obj in objects:
            if chunk_index_of(obj.key) is None or obj.last_modified >= cutoff:
                continue
            try:
                self.chunk_store.delete(obj.key)
                report.deleted += 1
                report.freed_bytes += obj.size
            except StorageError as e:
                report.errors += 1
                report.messages.append(str(e))
                logger.warning(f"Could not delete orphan chunk {obj.key}: {e}")

    def _abort_stale_multipart(self, cutoff: datetime, report: OrphanReport):
        if not hasattr(self.chunk_store, "list_multipart_uploads"):
            return
        try:
            uploads = self.chunk_store.list_multipart_uploads()
        except StorageError as e:
            report.errors += 1
            report.messages.append(str(e))
            logger.error(f"Could not list multipart uploads: {e}")
            return

        for upload in uploads:
            if upload.initiated >= cutoff:
                continue
            try:
                self.chunk_store.abort_multipart_upload(upload.key, upload.upload_id)
                report.aborted_uploads += 1
            except StorageError as e:
                report.errors += 1
                report.messages.append(str(e))
                logger.warning(f"Could not abort multipart upload {upload.upload_id}: {e}")

    def _drop_unattached_files(self, now: datetime, report: OrphanReport):
        for session in self.registry.expired_pending(self.pending_ttl, now):
            descriptor = session.descriptor
            if descriptor is None:
                continue
            store = self.stores.get(descriptor.storage_type)
            if store is None:
                continue
            try:
                store.delete(descriptor.storage_key)
                report.expired_pending += 1
                report.freed_bytes += descriptor.size
            except StorageError as e:
                report.errors += 1
                report.messages.append(str(e))
                logger.warning(f"Could not delete unattached file {descriptor.storage_key}: {e}")
