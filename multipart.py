"""
multipart.py: native S3 multipart uploads.

The object store assembles the parts itself; the API only starts the upload,
hands out one presigned target per part and commits (or aborts) it.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import config
from errors import InvalidInput, StorageError
from file_service import resolve_mime, validate_file_id, validate_file_size
from models import SessionStatus, UploadKind
from sessions import FileDescriptor, SessionRegistry
from storage import RemoteObjectStore, final_key

logger = logging.getLogger(__name__)


@dataclass
class PartTarget:
    index: int
    part_number: int
    upload_url: str


@dataclass
class MultipartStart:
    upload_id: str
    key: str
    part_targets: List[PartTarget] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "upload_id": self.upload_id,
            "key": self.key,
            "part_targets": [
                {"index": t.index, "part_number": t.part_number, "upload_url": t.upload_url}
                for t in self.part_targets
            ],
        }


def _validate_part_count(part_count: int, size: int):
    if part_count is None or not (config.MULTIPART_MIN_PARTS <= part_count <= config.MULTIPART_MAX_PARTS):
        raise InvalidInput(
            f"partCount must be between {config.MULTIPART_MIN_PARTS} and {config.MULTIPART_MAX_PARTS}"
        )
    # every part except the last must reach the store's minimum part size
    if part_count > 1 and size < (part_count - 1) * config.MIN_MULTIPART_PART_SIZE:
        raise InvalidInput(
            f"{part_count} parts is too many for {size} bytes "
            f"(minimum part size: {config.MIN_MULTIPART_PART_SIZE} bytes)"
        )


class MultipartCoordinator:

    def __init__(self, store: RemoteObjectStore, registry: SessionRegistry):
        self.store = store
        self.registry = registry

    def start(self, file_id: str, file_name: str, size: int, mime_type: Optional[str], part_count: int,
              transfer_id: Optional[str] = None, ttl: Optional[int] = None) -> MultipartStart:
        validate_file_id(file_id)
        if not file_name:
            raise InvalidInput("fileName is required")
        validate_file_size(size)
        _validate_part_count(part_count, size)

        existing = self.registry.get(file_id)
        if existing is not None:
            raise InvalidInput(f"An upload for {file_id} already exists")

        ttl = ttl or config.PRESIGNED_UPLOAD_TTL_SECONDS
        mime_type = resolve_mime(file_name, mime_type)
        key = final_key(transfer_id or f"temp_{file_id}", file_id, file_name)
        upload_id = self.store.create_multipart_upload(key, mime_type, metadata={"file_id": file_id})
        logger.info(f"Started multipart upload {upload_id} for {file_id}: {part_count} parts, {size} bytes")

        try:
            targets = [
                PartTarget(
                    index=index,
                    part_number=index + 1,
                    upload_url=self.store.presign_upload_part(key, upload_id, index + 1, ttl),
                )
                for index in range(part_count)
            ]
            self.registry.open(
                file_id,
                file_name=file_name,
                expected_part_count=part_count,
                kind=UploadKind.MULTIPART,
                transfer_id=transfer_id,
                mime_type=mime_type,
                total_size=size,
                multipart_upload_id=upload_id,
                storage_key=key,
            )
        except Exception:
            self._abort_quietly(upload_id, key)
            raise
        return MultipartStart(upload_id=upload_id, key=key, part_targets=targets)

    def upload_part(self, upload_id: str, key: str, index: int, data: bytes) -> str:
        """Server-side PUT of one part, for clients that cannot reach the store directly."""
        session = self._session(upload_id, key)
        if not (0 <= index < session.expected_part_count):
            raise InvalidInput(f"index must be in [0, {session.expected_part_count})")
        if not data:
            raise InvalidInput("Empty part")
        etag = self.store.upload_part(key, upload_id, index + 1, data)
        self.registry.record_part(session.file_id, index, size=len(data), etag=etag)
        return etag

    def complete(self, upload_id: str, key: str, parts: List[dict]) -> dict:
        """``parts`` are ``{"index": i, "etag": "..."}`` in ascending index order."""
        if not upload_id or not key or not parts:
            raise InvalidInput("uploadId, key and parts are required")
        indices = [p.get("index") for p in parts]
        if any(not isinstance(i, int) or i < 0 for i in indices):
            raise InvalidInput("Every part needs a non-negative integer index")
        if any(b <= a for a, b in zip(indices, indices[1:])):
            raise InvalidInput("Parts must be listed in ascending index order without duplicates")
        if any(not p.get("etag") for p in parts):
            raise InvalidInput("Every part needs the etag returned by the store")

        session = self._session(upload_id, key)
        if session.status == SessionStatus.COMPLETE and session.descriptor:
            return self._result(session.descriptor, etag="")
        if not self.registry.claim(session.file_id):
            raise InvalidInput(f"Upload {upload_id} is already being completed")

        try:
            etag = self.store.complete_multipart_upload(
                key, upload_id,
                [{"PartNumber": p["index"] + 1, "ETag": p["etag"]} for p in parts],
            )
        except StorageError as e:
            logger.error(f"Completing multipart upload {upload_id} failed: {e}")
            self.registry.fail(session.file_id, str(e))
            self._abort_quietly(upload_id, key)
            raise

        # the object is committed from here on; the session must reach COMPLETE
        try:
            size = self.store.object_size(key)
        except StorageError as e:
            size = session.total_size
            logger.warning(f"Could not read the size of {key}, using the declared {size} bytes: {e}")

        descriptor = FileDescriptor(
            file_id=session.file_id,
            original_name=session.file_name,
            storage_key=key,
            storage_type=self.store.storage_type,
            mime_type=session.mime_type,
            size=size,
        )
        self.registry.complete(session.file_id, descriptor)
        logger.info(f"Completed multipart upload {upload_id} -> {key} ({size} bytes)")
        return self._result(descriptor, etag)

    def abort(self, upload_id: str, key: str) -> bool:
        session = self.registry.find_by_upload_id(upload_id)
        self.store.abort_multipart_upload(key, upload_id)
        if session is not None and session.status != SessionStatus.COMPLETE:
            self.registry.fail(session.file_id, "aborted")
        logger.info(f"Aborted multipart upload {upload_id} ({key})")
        return True

    def _session(self, upload_id: str, key: str):
        session = self.registry.find_by_upload_id(upload_id)
        if session is None or session.storage_key != key:
            raise InvalidInput(f"Unknown multipart upload {upload_id}")
        return session

    def _result(self, descriptor: FileDescriptor, etag: str) -> dict:
        return {
            "file_id": descriptor.file_id,
            "key": descriptor.storage_key,
            "url": self.store.url(descriptor.storage_key),
            "size": descriptor.size,
            "etag": etag,
        }

    def _abort_quietly(self, upload_id: str, key: str):
        try:
            self.store.abort_multipart_upload(key, upload_id)
        except StorageError as e:
            # the orphan sweep aborts it later
            logger.error(f"Abort of multipart upload {upload_id} failed: {e}")
