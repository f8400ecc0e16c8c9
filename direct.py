"""
direct.py: single-request uploads (multipart/form-data file or base64 body).

Small files skip chunking: the whole payload is stored in one PUT, on the
remote or the local tier, and registered as a finished pending file so it
can be attached to a transfer like any reconstructed upload.
"""

import hashlib
import logging
from typing import Dict, Optional

from errors import InvalidInput, StorageError
from file_service import decode_base64_payload, resolve_mime, validate_file_id, validate_file_size
from models import StorageType, UploadKind, new_id
from sessions import FileDescriptor, SessionRegistry
from storage import StorageBackend, final_key, payload_size

logger = logging.getLogger(__name__)

_READ_BLOCK = 1024 * 1024


def _checksum(data) -> str:
    if isinstance(data, (bytes, bytearray, memoryview)):
        return hashlib.sha256(data).hexdigest()
    digest = hashlib.sha256()
    position = data.tell()
    for block in iter(lambda: data.read(_READ_BLOCK), b""):
        digest.update(block)
    data.seek(position)
    return digest.hexdigest()


class DirectUploader:

    def __init__(self, stores: Dict[StorageType, StorageBackend], registry: SessionRegistry):
        self.stores = stores
        self.registry = registry

    def upload(self, file_name: str, data, mime_type: Optional[str] = None,
               storage: str = StorageType.REMOTE.value, file_id: Optional[str] = None) -> FileDescriptor:
        """Stores ``data`` (bytes or a seekable binary file) and registers it as a pending file."""
        if not file_name:
            raise InvalidInput("fileName is required")
        try:
            store = self.stores[StorageType(storage)]
        except ValueError:
            raise InvalidInput("storage must be 'remote' or 'local'") from None
        file_id = validate_file_id(file_id) if file_id else new_id()
        if self.registry.get(file_id) is not None:
            raise InvalidInput(f"An upload for {file_id} already exists")

        size = payload_size(data)
        validate_file_size(size)
        mime_type = resolve_mime(file_name, mime_type)
        checksum = _checksum(data)

        key = final_key(f"temp_{file_id}", file_id, file_name)
        self.registry.open(
            file_id,
            file_name=file_name,
            expected_part_count=1,
            kind=UploadKind.DIRECT,
            mime_type=mime_type,
            total_size=size,
            storage_key=key,
        )
        self.registry.claim(file_id)
        try:
            result = store.put(key, data, content_type=mime_type, metadata={"file_id": file_id})
        except StorageError as e:
            self.registry.fail(file_id, str(e))
            raise

        descriptor = FileDescriptor(
            file_id=file_id,
            original_name=file_name,
            storage_key=key,
            storage_type=store.storage_type,
            mime_type=mime_type,
            size=result["size"],
            checksum_sha256=checksum,
        )
        self.registry.record_part(file_id, 0, size=result["size"])
        self.registry.complete(file_id, descriptor)
        logger.info(f"Stored direct upload {file_id} on the {store.storage_type.value} tier ({size} bytes)")
        return descriptor

    def upload_base64(self, file_name: str, payload: str, mime_type: Optional[str] = None,
                      storage: str = StorageType.REMOTE.value) -> FileDescriptor:
        data, carried_type = decode_base64_payload(payload, mime_type)
        return self.upload(file_name, data, mime_type=carried_type, storage=storage)
