"""
chunks.py: application-level chunked uploads.

Clients send a file as N independently numbered chunks, in any order and
over parallel connections. Each chunk is stored under its own key; once
every index in ``[0, N)`` is present exactly one request wins the
reconstruction claim, concatenates the chunks in index order into a single
object and removes the chunk keys.
"""

import hashlib
import logging
import tempfile
from dataclasses import dataclass
from typing import List, Optional, Set

import config
from errors import IncompleteUpload, InvalidInput, StorageError
from file_service import resolve_mime, validate_file_id
from models import SessionStatus, UploadKind
from sessions import FileDescriptor, SessionRegistry, UploadSessionInfo
from storage import StorageBackend, chunk_index_of, chunk_key, final_key

logger = logging.getLogger(__name__)

# reconstruction spills to disk past this many bytes
SPOOL_MAX_MEMORY = 64 * 1024 * 1024


@dataclass
class ChunkAck:
    file_id: str
    chunk_index: int
    size: int
    key: str


@dataclass
class ChunkUploadResult:
    chunk_received: bool
    file_completed: bool
    file_id: str
    assembling: bool = False
    descriptor: Optional[FileDescriptor] = None

    def to_dict(self) -> dict:
        return {
            "chunk_received": self.chunk_received,
            "file_completed": self.file_completed,
            "assembling": self.assembling,
            "file_id": self.file_id,
            "file": self.descriptor.to_dict() if self.descriptor else None,
        }


@dataclass
class CleanupReport:
    deleted: int = 0
    failed: int = 0


def _validate_counts(chunk_index: Optional[int], total_chunks: int):
    if total_chunks is None or not (config.MULTIPART_MIN_PARTS <= total_chunks <= config.MULTIPART_MAX_PARTS):
        raise InvalidInput(
            f"totalChunks must be between {config.MULTIPART_MIN_PARTS} and {config.MULTIPART_MAX_PARTS}"
        )
    if chunk_index is not None and not (0 <= chunk_index < total_chunks):
        raise InvalidInput(f"chunkIndex must be in [0, {total_chunks})")


class ChunkAssembler:

    def __init__(self, store: StorageBackend, registry: SessionRegistry):
        self.store = store
        self.registry = registry

    # ─── Session lifecycle ────────────────────────────────────────────────────

    def start(self, file_id: str, file_name: str, total_chunks: int, *,
              transfer_id: Optional[str] = None, mime_type: Optional[str] = None,
              total_size: Optional[int] = None, expected_hash: Optional[str] = None) -> UploadSessionInfo:
        validate_file_id(file_id)
        _validate_counts(None, total_chunks)
        if not file_name:
            raise InvalidInput("fileName is required")
        if total_size is not None and total_size > config.MAX_FILE_SIZE:
            raise InvalidInput(f"File too large (limit: {config.MAX_FILE_SIZE} bytes)")
        if expected_hash is not None and len(expected_hash) != 64:
            raise InvalidInput("expectedHash must be a SHA-256 hex digest")
        return self.registry.open(
            file_id,
            file_name=file_name,
            expected_part_count=total_chunks,
            kind=UploadKind.CHUNKED,
            transfer_id=transfer_id,
            mime_type=resolve_mime(file_name, mime_type),
            total_size=total_size,
            expected_hash=expected_hash.lower() if expected_hash else None,
        )

    def status(self, file_id: str) -> UploadSessionInfo:
        info = self.registry.get(file_id)
        if info is None:
            raise InvalidInput(f"Unknown upload {file_id}")
        return info

    # ─── Chunk storage ────────────────────────────────────────────────────────

    def save_chunk(self, file_id: str, chunk_index: int, data: bytes, *, total_chunks: int,
                   file_name: str, transfer_id: Optional[str] = None,
                   mime_type: Optional[str] = None) -> ChunkAck:
        """Stores one chunk. Re-sending an index overwrites the previous bytes."""
        _validate_counts(chunk_index, total_chunks)
        if not data:
            raise InvalidInput("Empty chunk")
        if len(data) > config.CHUNK_SIZE:
            raise InvalidInput(f"Chunk larger than the {config.CHUNK_SIZE}-byte chunk size")
        session = self.start(file_id, file_name, total_chunks, transfer_id=transfer_id, mime_type=mime_type)
        key = chunk_key(session.chunk_prefix, chunk_index)
        self.store.put(key, data, metadata={
            "file_id": file_id,
            "chunk_index": str(chunk_index),
            "transfer_id": session.transfer_id,
        })
        self.registry.record_part(file_id, chunk_index, size=len(data))
        logger.debug(f"Stored chunk {chunk_index}/{total_chunks} for {file_id} ({len(data)} bytes)")
        return ChunkAck(file_id=file_id, chunk_index=chunk_index, size=len(data), key=key)

    def received_indices(self, file_id: str) -> Set[int]:
        """Indices actually present in storage, independent of what the registry recorded."""
        session = self.status(file_id)
        return {
            index for index in (chunk_index_of(key) for key in self.store.list(session.chunk_prefix))
            if index is not None
        }

    def is_complete(self, file_id: str, expected_count: int) -> bool:
        present = self.received_indices(file_id)
        # every index must be present; a matching count alone proves nothing
        return all(i in present for i in range(expected_count))

    def missing_indices(self, file_id: str, expected_count: int) -> List[int]:
        present = self.received_indices(file_id)
        return [i for i in range(expected_count) if i not in present]

    # ─── Reconstruction ───────────────────────────────────────────────────────

    def reconstruct(self, file_id: str, expected_count: int, original_name: str,
                    mime_type: Optional[str] = None) -> FileDescriptor:
        session = self.status(file_id)
        missing = self.missing_indices(file_id, expected_count)
        if missing:
            raise IncompleteUpload(file_id, missing)

        mime_type = resolve_mime(original_name, mime_type or session.mime_type)
        digest = hashlib.sha256()
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY) as assembled:
            for index in range(expected_count):
                try:
                    data = self.store.get(chunk_key(session.chunk_prefix, index))
                except StorageError as e:
                    # vanished between the completeness check and the read
                    if not self.store.exists(chunk_key(session.chunk_prefix, index)):
                        raise IncompleteUpload(file_id, [index]) from e
                    raise
                digest.update(data)
                assembled.write(data)
            assembled.seek(0)

            key = final_key(session.transfer_id, file_id, original_name)
            result = self.store.put(key, assembled, content_type=mime_type, metadata={
                "file_id": file_id,
                "transfer_id": session.transfer_id,
            })

        checksum = digest.hexdigest()
        logger.info(f"Reconstructed {file_id} from {expected_count} chunks -> {key} ({result['size']} bytes)")
        return FileDescriptor(
            file_id=file_id,
            original_name=original_name,
            storage_key=key,
            storage_type=self.store.storage_type,
            mime_type=mime_type,
            size=result["size"],
            checksum_sha256=checksum,
        )

    def cleanup(self, file_id: str, expected_count: int) -> CleanupReport:
        """Best-effort removal of chunk keys. Never raises."""
        report = CleanupReport()
        session = self.registry.get(file_id)
        if session is None:
            return report
        for index in range(expected_count):
            key = chunk_key(session.chunk_prefix, index)
            try:
                self.store.delete(key)
                report.deleted += 1
            except StorageError as e:
                report.failed += 1
                logger.warning(f"Could not delete chunk {key}: {e}")
        return report

    # ─── Request-level flows ──────────────────────────────────────────────────

    def upload_chunk(self, file_id: str, chunk_index: int, total_chunks: int, file_name: str,
                     data: bytes, *, transfer_id: Optional[str] = None,
                     mime_type: Optional[str] = None) -> ChunkUploadResult:
        session = self.registry.get(file_id)
        if session is not None and session.status == SessionStatus.COMPLETE:
            _validate_counts(chunk_index, total_chunks)
            return ChunkUploadResult(True, True, file_id, descriptor=session.descriptor)

        self.save_chunk(file_id, chunk_index, data, total_chunks=total_chunks, file_name=file_name,
                        transfer_id=transfer_id, mime_type=mime_type)
        return self._finalize_if_complete(file_id, total_chunks, file_name)

    def confirm_chunk(self, file_id: str, chunk_index: int, total_chunks: int, file_name: str) -> ChunkUploadResult:
        """Records a chunk the client PUT directly to the store through a presigned URL."""
        _validate_counts(chunk_index, total_chunks)
        session = self.start(file_id, file_name, total_chunks)
        if session.status == SessionStatus.COMPLETE:
            return ChunkUploadResult(True, True, file_id, descriptor=session.descriptor)
        if not self.store.exists(chunk_key(session.chunk_prefix, chunk_index)):
            raise InvalidInput(f"Chunk {chunk_index} of {file_id} was not found in storage")
        self.registry.record_part(file_id, chunk_index)
        return self._finalize_if_complete(file_id, total_chunks, file_name)

    def presign_chunk_uploads(self, file_id: str, file_name: str, total_chunks: int,
                              ttl: Optional[int] = None) -> dict:
        if not hasattr(self.store, "presigned_put_url"):
            raise InvalidInput("Direct chunk uploads need a remote object store")
        ttl = ttl or config.PRESIGNED_UPLOAD_TTL_SECONDS
        session = self.start(file_id, file_name, total_chunks)
        urls = [
            {
                "chunk_index": index,
                "upload_url": self.store.presigned_put_url(chunk_key(session.chunk_prefix, index), ttl),
            }
            for index in range(total_chunks)
        ]
        return {"file_id": file_id, "upload_urls": urls, "chunk_size": config.CHUNK_SIZE, "expires_in": ttl}

    def _finalize_if_complete(self, file_id: str, total_chunks: int, file_name: str) -> ChunkUploadResult:
        # the registry is a cheap pre-check; storage listing is authoritative
        if self.status(file_id).missing_parts() or not self.is_complete(file_id, total_chunks):
            return ChunkUploadResult(True, False, file_id)

        if not self.registry.claim(file_id):
            # another request completed the set first and owns reconstruction
            session = self.registry.get(file_id)
            done = session is not None and session.status == SessionStatus.COMPLETE
            return ChunkUploadResult(True, done, file_id, assembling=not done,
                                     descriptor=session.descriptor if done else None)

        session = self.status(file_id)
        try:
            descriptor = self.reconstruct(file_id, total_chunks, file_name, session.mime_type)
            if session.expected_hash and descriptor.checksum_sha256 != session.expected_hash:
                self._discard(descriptor)
                raise InvalidInput(f"Integrity check failed for {file_id}: checksum does not match expectedHash")
            self.registry.complete(file_id, descriptor)
        except Exception as e:
            logger.error(f"Reconstruction failed for {file_id}: {e}")
            self._release_claim(file_id, e)
            raise

        report = self.cleanup(file_id, total_chunks)
        if report.failed:
            logger.warning(f"{report.failed} chunk(s) of {file_id} left for the orphan sweep")
        return ChunkUploadResult(True, True, file_id, descriptor=descriptor)

    def _release_claim(self, file_id: str, error: Exception):
        # a failed session can be claimed again by the next chunk that completes the set
        try:
            self.registry.fail(file_id, str(error) or type(error).__name__)
        except Exception as e:
            logger.error(f"Could not release the reconstruction claim on {file_id}: {e}")

    def _discard(self, descriptor: FileDescriptor):
        try:
            self.store.delete(descriptor.storage_key)
        except StorageError as e:
            logger.warning(f"Could not delete rejected object {descriptor.storage_key}: {e}")
