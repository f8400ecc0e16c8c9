"""
sessions.py: bookkeeping for in-flight uploads.

An upload session tracks one logical file from the moment a client declares
it until its bytes are attached to a Transfer. Two registries share one
contract:

* ``SqlSessionRegistry`` persists sessions in the database so every API
  instance sees the same state (the default).
* ``InMemorySessionRegistry`` keeps them in a process-local dict with an
  explicit eviction call, for single-instance deployments and tests.

The ``claim`` operation is the reconstruction gate: it moves a session from
``in_progress`` (or ``failed``) to ``assembling`` and returns True for
exactly one caller.
"""

import abc
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import InvalidInput, NotFound
from models import (
    SessionStatus, StorageType, UploadKind, UploadSession, UploadSessionPart, new_id, utcnow,
)
from storage import chunk_prefix, date_path

logger = logging.getLogger(__name__)

_CLAIMABLE = (SessionStatus.IN_PROGRESS.value, SessionStatus.FAILED.value)


@dataclass
class FileDescriptor:
    """A finalized file, ready to be attached to a Transfer."""
    file_id: str
    original_name: str
    storage_key: str
    storage_type: StorageType
    mime_type: str
    size: int
    display_name: Optional[str] = None
    checksum_sha256: Optional[str] = None

    def __post_init__(self):
        if self.display_name is None:
            self.display_name = self.original_name
        self.storage_type = StorageType(self.storage_type)

    def to_dict(self) -> dict:
        return {
            "file_id": self.file_id,
            "original_name": self.original_name,
            "display_name": self.display_name,
            "mime_type": self.mime_type,
            "size": self.size,
            "storage_type": self.storage_type.value,
        }


@dataclass
class UploadSessionInfo:
    upload_id: str
    file_id: str
    kind: UploadKind
    transfer_id: str
    file_name: str
    mime_type: str
    expected_part_count: int
    key_date: str
    status: SessionStatus = SessionStatus.IN_PROGRESS
    total_size: Optional[int] = None
    expected_hash: Optional[str] = None
    multipart_upload_id: Optional[str] = None
    storage_key: Optional[str] = None
    received_parts: Set[int] = field(default_factory=set)
    descriptor: Optional[FileDescriptor] = None
    attached_transfer_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def chunk_prefix(self) -> str:
        return chunk_prefix(self.transfer_id, self.file_id, self.key_date)

    def missing_parts(self) -> List[int]:
        return [i for i in range(self.expected_part_count) if i not in self.received_parts]


class SessionRegistry(abc.ABC):

    @abc.abstractmethod
    def open(self, file_id: str, *, file_name: str, expected_part_count: int,
             kind: UploadKind = UploadKind.CHUNKED, transfer_id: Optional[str] = None,
             mime_type: str = "application/octet-stream", total_size: Optional[int] = None,
             expected_hash: Optional[str] = None, multipart_upload_id: Optional[str] = None,
             storage_key: Optional[str] = None) -> UploadSessionInfo:
        """Get-or-create. Re-opening with a different part count is rejected."""

    @abc.abstractmethod
    def get(self, file_id: str) -> Optional[UploadSessionInfo]:
        ...

    @abc.abstractmethod
    def find_by_upload_id(self, multipart_upload_id: str) -> Optional[UploadSessionInfo]:
        ...

    @abc.abstractmethod
    def record_part(self, file_id: str, index: int, size: Optional[int] = None,
                    etag: Optional[str] = None) -> None:
        """Idempotent: recording the same index twice keeps one entry."""

    @abc.abstractmethod
    def claim(self, file_id: str) -> bool:
        ...

    @abc.abstractmethod
    def complete(self, file_id: str, descriptor: FileDescriptor) -> None:
        ...

    @abc.abstractmethod
    def fail(self, file_id: str, error: str) -> None:
        ...

    @abc.abstractmethod
    def attach(self, file_ids: List[str], transfer_id: str, pending_ttl: timedelta,
               now: Optional[datetime] = None) -> List[FileDescriptor]:
        """
        Marks completed, unattached, unexpired sessions as belonging to
        ``transfer_id`` and returns their descriptors in the order given.
        Either every id is attached or none is (InvalidInput otherwise).
        """

    @abc.abstractmethod
    def detach(self, transfer_id: str) -> None:
        ...

    @abc.abstractmethod
    def expired_pending(self, pending_ttl: timedelta, now: Optional[datetime] = None) -> List[UploadSessionInfo]:
        """Completed sessions never attached to a transfer within ``pending_ttl``."""

    @abc.abstractmethod
    def purge(self, older_than: datetime, pending_ttl: timedelta, now: Optional[datetime] = None) -> int:
        ...


def _check_part_count(info: UploadSessionInfo, expected_part_count: int):
    if info.expected_part_count != expected_part_count:
        raise InvalidInput(
            f"Upload {info.file_id} was declared with {info.expected_part_count} parts, "
            f"got {expected_part_count}"
        )


def _temp_transfer_id(file_id: str) -> str:
    return f"temp_{file_id}"


# ─── In-process registry ──────────────────────────────────────────────────────

class InMemorySessionRegistry(SessionRegistry):

    def __init__(self):
        self._sessions: Dict[str, UploadSessionInfo] = {}
        self._lock = threading.Lock()

    def _require(self, file_id: str) -> UploadSessionInfo:
        info = self._sessions.get(file_id)
        if info is None:
            raise NotFound(f"No upload session for {file_id}")
        return info

    def open(self, file_id, *, file_name, expected_part_count, kind=UploadKind.CHUNKED,
             transfer_id=None, mime_type="application/octet-stream", total_size=None,
             expected_hash=None, multipart_upload_id=None, storage_key=None):
        with self._lock:
            info = self._sessions.get(file_id)
            if info is not None:
                _check_part_count(info, expected_part_count)
                return replace(info, received_parts=set(info.received_parts))
            info = UploadSessionInfo(
                upload_id=new_id(),
                file_id=file_id,
                kind=UploadKind(kind),
                transfer_id=transfer_id or _temp_transfer_id(file_id),
                file_name=file_name,
                mime_type=mime_type,
                expected_part_count=expected_part_count,
                key_date=date_path(),
                total_size=total_size,
                expected_hash=expected_hash,
                multipart_upload_id=multipart_upload_id,
                storage_key=storage_key,
            )
            self._sessions[file_id] = info
            return replace(info, received_parts=set())

    def get(self, file_id):
        with self._lock:
            info = self._sessions.get(file_id)
            return replace(info, received_parts=set(info.received_parts)) if info else None

    def find_by_upload_id(self, multipart_upload_id):
        with self._lock:
            for info in self._sessions.values():
                if info.multipart_upload_id == multipart_upload_id:
                    return replace(info, received_parts=set(info.received_parts))
        return None

    def record_part(self, file_id, index, size=None, etag=None):
        with self._lock:
            self._require(file_id).received_parts.add(index)

    def claim(self, file_id):
        with self._lock:
            info = self._require(file_id)
            if info.status.value not in _CLAIMABLE:
                return False
            info.status = SessionStatus.ASSEMBLING
            return True

    def complete(self, file_id, descriptor):
        with self._lock:
            info = self._require(file_id)
            info.status = SessionStatus.COMPLETE
            info.descriptor = descriptor
            info.storage_key = descriptor.storage_key
            info.completed_at = utcnow()
            info.error = None

    def fail(self, file_id, error):
        with self._lock:
            info = self._require(file_id)
            info.status = SessionStatus.FAILED
            info.error = error

    def attach(self, file_ids, transfer_id, pending_ttl, now=None):
        now = now or utcnow()
        with self._lock:
            found = []
            for file_id in file_ids:
                info = self._sessions.get(file_id)
                if (info is None or info.status != SessionStatus.COMPLETE
                        or info.attached_transfer_id is not None
                        or info.completed_at < now - pending_ttl):
                    raise InvalidInput(f"File {file_id} is not an uploaded, unattached file")
                found.append(info)
            for info in found:
                info.attached_transfer_id = transfer_id
            return [info.descriptor for info in found]

    def detach(self, transfer_id):
        with self._lock:
            for info in self._sessions.values():
                if info.attached_transfer_id == transfer_id:
                    info.attached_transfer_id = None

    def expired_pending(self, pending_ttl, now=None):
        now = now or utcnow()
        with self._lock:
            return [
                replace(info) for info in self._sessions.values()
                if info.status == SessionStatus.COMPLETE and info.attached_transfer_id is None
                and info.completed_at < now - pending_ttl
            ]

    def purge(self, older_than, pending_ttl, now=None):
        now = now or utcnow()
        with self._lock:
            stale = [
                file_id for file_id, info in self._sessions.items()
                if _is_purgeable(info.status, info.created_at, info.completed_at,
                                 info.attached_transfer_id, older_than, now - pending_ttl)
            ]
            for file_id in stale:
                del self._sessions[file_id]
        return len(stale)

    def evict_expired(self, max_age: timedelta, pending_ttl: timedelta, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return self.purge(now - max_age, pending_ttl, now)


def _is_purgeable(status, created_at, completed_at, attached, older_than, pending_cutoff) -> bool:
    status = SessionStatus(status)
    if status == SessionStatus.COMPLETE:
        # attached sessions are just history; unattached ones wait out the pending TTL
        return attached is not None or completed_at < pending_cutoff
    return created_at < older_than


# ─── Database-backed registry ─────────────────────────────────────────────────

class SqlSessionRegistry(SessionRegistry):

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _to_info(self, row: UploadSession) -> UploadSessionInfo:
        descriptor = None
        if row.status == SessionStatus.COMPLETE.value and row.storage_key:
            descriptor = FileDescriptor(
                file_id=row.file_id,
                original_name=row.file_name,
                storage_key=row.storage_key,
                storage_type=StorageType(row.storage_type or StorageType.REMOTE.value),
                mime_type=row.mime_type,
                size=row.result_size or 0,
                checksum_sha256=row.checksum_sha256,
            )
        return UploadSessionInfo(
            upload_id=row.id,
            file_id=row.file_id,
            kind=UploadKind(row.kind),
            transfer_id=row.transfer_id,
            file_name=row.file_name,
            mime_type=row.mime_type,
            expected_part_count=row.expected_part_count,
            key_date=row.key_date,
            status=SessionStatus(row.status),
            total_size=row.total_size,
            expected_hash=row.expected_hash,
            multipart_upload_id=row.multipart_upload_id,
            storage_key=row.storage_key,
            received_parts={p.part_index for p in row.parts},
            descriptor=descriptor,
            attached_transfer_id=row.attached_transfer_id,
            error=row.error,
            created_at=row.created_at,
            completed_at=row.completed_at,
        )

    def _row(self, db: Session, file_id: str) -> Optional[UploadSession]:
        return db.query(UploadSession).filter(UploadSession.file_id == file_id).first()

    def _require(self, db: Session, file_id: str) -> UploadSession:
        row = self._row(db, file_id)
        if row is None:
            raise NotFound(f"No upload session for {file_id}")
        return row

    def open(self, file_id, *, file_name, expected_part_count, kind=UploadKind.CHUNKED,
             transfer_id=None, mime_type="application/octet-stream", total_size=None,
             expected_hash=None, multipart_upload_id=None, storage_key=None):
        db = self._session_factory()
        try:
            row = self._row(db, file_id)
            if row is None:
                row = UploadSession(
                    file_id=file_id,
                    kind=UploadKind(kind).value,
                    transfer_id=transfer_id or _temp_transfer_id(file_id),
                    file_name=file_name,
                    mime_type=mime_type,
                    total_size=total_size,
                    expected_part_count=expected_part_count,
                    expected_hash=expected_hash,
                    key_date=date_path(),
                    multipart_upload_id=multipart_upload_id,
                    storage_key=storage_key,
                )
                db.add(row)
                try:
                    db.commit()
                except IntegrityError:
                    # a concurrent request created it first
                    db.rollback()
                    row = self._require(db, file_id)
            info = self._to_info(row)
        finally:
            db.close()
        _check_part_count(info, expected_part_count)
        return info

    def get(self, file_id):
        db = self._session_factory()
        try:
            row = self._row(db, file_id)
            return self._to_info(row) if row else None
        finally:
            db.close()

    def find_by_upload_id(self, multipart_upload_id):
        db = self._session_factory()
        try:
            row = db.query(UploadSession).filter(
                UploadSession.multipart_upload_id == multipart_upload_id
            ).first()
            return self._to_info(row) if row else None
        finally:
            db.close()

    def record_part(self, file_id, index, size=None, etag=None):
        db = self._session_factory()
        try:
            row = self._require(db, file_id)
            db.add(UploadSessionPart(session_id=row.id, part_index=index, size=size, etag=etag))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
        finally:
            db.close()

    def claim(self, file_id):
        db = self._session_factory()
        try:
            updated = db.query(UploadSession).filter(
                UploadSession.file_id == file_id,
                UploadSession.status.in_(_CLAIMABLE),
            ).update({UploadSession.status: SessionStatus.ASSEMBLING.value}, synchronize_session=False)
            db.commit()
            return updated == 1
        finally:
            db.close()

    def complete(self, file_id, descriptor):
        db = self._session_factory()
        try:
            row = self._require(db, file_id)
            row.status = SessionStatus.COMPLETE.value
            row.storage_key = descriptor.storage_key
            row.storage_type = descriptor.storage_type.value
            row.result_size = descriptor.size
            row.mime_type = descriptor.mime_type
            row.checksum_sha256 = descriptor.checksum_sha256
            row.completed_at = utcnow()
            row.error = None
            db.commit()
        finally:
            db.close()

    def fail(self, file_id, error):
        db = self._session_factory()
        try:
            row = self._require(db, file_id)
            row.status = SessionStatus.FAILED.value
            row.error = error[:2000]
            db.commit()
        finally:
            db.close()

    def attach(self, file_ids, transfer_id, pending_ttl, now=None):
        now = now or utcnow()
        db = self._session_factory()
        try:
            attached = []
            for file_id in file_ids:
                updated = db.query(UploadSession).filter(
                    UploadSession.file_id == file_id,
                    UploadSession.status == SessionStatus.COMPLETE.value,
                    UploadSession.attached_transfer_id.is_(None),
                    UploadSession.completed_at >= now - pending_ttl,
                ).update({UploadSession.attached_transfer_id: transfer_id}, synchronize_session=False)
                if updated != 1:
                    db.rollback()
                    raise InvalidInput(f"File {file_id} is not an uploaded, unattached file")
                attached.append(file_id)
            db.commit()
            rows = {row.file_id: row for row in db.query(UploadSession).filter(
                UploadSession.file_id.in_(attached)
            )}
            return [self._to_info(rows[file_id]).descriptor for file_id in file_ids]
        finally:
            db.close()

    def detach(self, transfer_id):
        db = self._session_factory()
        try:
            db.query(UploadSession).filter(
                UploadSession.attached_transfer_id == transfer_id
            ).update({UploadSession.attached_transfer_id: None}, synchronize_session=False)
            db.commit()
        finally:
            db.close()

    def expired_pending(self, pending_ttl, now=None):
        now = now or utcnow()
        db = self._session_factory()
        try:
            rows = db.query(UploadSession).filter(
                UploadSession.status == SessionStatus.COMPLETE.value,
                UploadSession.attached_transfer_id.is_(None),
                UploadSession.completed_at < now - pending_ttl,
            ).all()
            return [self._to_info(row) for row in rows]
        finally:
            db.close()

    def purge(self, older_than, pending_ttl, now=None):
        now = now or utcnow()
        db = self._session_factory()
        try:
            complete = UploadSession.status == SessionStatus.COMPLETE.value
            stale = db.query(UploadSession).filter(or_(
                and_(complete, or_(
                    UploadSession.attached_transfer_id.isnot(None),
                    UploadSession.completed_at < now - pending_ttl,
                )),
                and_(~complete, UploadSession.created_at < older_than),
            )).all()
            for row in stale:
                db.delete(row)
            db.commit()
            return len(stale)
        finally:
            db.close()
