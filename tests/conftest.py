"""
Shared fixtures: a throw-away SQLite database, an in-memory object store
fake and a TestClient wired to both.
"""

import os
import tempfile

# Settings are read at import time, so the test environment goes in first
_TMP = tempfile.mkdtemp(prefix="transfers-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ["LOCAL_STORAGE_DIR"] = os.path.join(_TMP, "local")
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["SECRET_KEY"] = "test-secret-key-with-at-least-32-characters"

import threading
from datetime import timedelta
from typing import Dict, List

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models  # noqa: F401
from auth import local_url_signer
from chunks import ChunkAssembler
from database import Base, SessionLocal, engine, get_db
from direct import DirectUploader
from errors import StorageError
from lifecycle import LifecycleEngine
from models import StorageType, new_id, utcnow
from multipart import MultipartCoordinator
from orphans import OrphanChunkCollector
from sessions import InMemorySessionRegistry, SqlSessionRegistry
from storage import LocalFileStore, MultipartUploadInfo, StorageBackend, StoredObject
from transfers import TransferManager

ADMIN_TOKEN = "test-admin-token"


class InMemoryObjectStore(StorageBackend):
    """Dict-backed stand-in for the S3 tier, with failure injection and a settable clock."""

    storage_type = StorageType.REMOTE

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.modified: Dict[str, object] = {}
        self.uploads: Dict[str, dict] = {}
        self.fail_delete = set()
        self.fail_put = set()
        self.fail_list = False
        self.now = None
        self.put_log: List[str] = []
        self._lock = threading.Lock()

    def _clock(self):
        return self.now or utcnow()

    def put(self, key, data, content_type="application/octet-stream", metadata=None):
        if key in self.fail_put:
            raise StorageError(f"PUT failed for {key}", key=key)
        if not isinstance(data, (bytes, bytearray)):
            data = data.read()
        with self._lock:
            self.objects[key] = bytes(data)
            self.modified[key] = self._clock()
            self.put_log.append(key)
        return {"key": key, "url": self.url(key), "size": len(data), "content_type": content_type}

    def get(self, key):
        with self._lock:
            if key not in self.objects:
                raise StorageError(f"Object missing: {key}", key=key)
            return self.objects[key]

    def delete(self, key):
        if key in self.fail_delete:
            raise StorageError(f"DELETE failed for {key}", key=key)
        with self._lock:
            self.objects.pop(key, None)
            self.modified.pop(key, None)
        return True

    def exists(self, key):
        with self._lock:
            return key in self.objects

    def object_size(self, key):
        return len(self.get(key))

    def list_objects(self, prefix):
        if self.fail_list:
            raise StorageError(f"LIST failed for prefix {prefix}")
        with self._lock:
            return [
                StoredObject(key=key, size=len(data), last_modified=self.modified[key])
                for key, data in sorted(self.objects.items()) if key.startswith(prefix)
            ]

    def signed_url(self, key, ttl, download_name=None):
        return f"https://store.test/{key}?expires={ttl}"

    def url(self, key):
        return f"https://store.test/{key}"

    def presigned_put_url(self, key, ttl, content_type="application/octet-stream"):
        return f"https://store.test/{key}?upload=1&expires={ttl}"

    def get_health(self):
        return {"status": "healthy", "backend": "memory"}

    # ─── multipart ───────────────────────────────────────────

    def create_multipart_upload(self, key, content_type, metadata=None):
        upload_id = new_id()
        with self._lock:
            self.uploads[upload_id] = {"key": key, "parts": {}, "initiated": self._clock()}
        return upload_id

    def presign_upload_part(self, key, upload_id, part_number, ttl):
        return f"https://store.test/{key}?uploadId={upload_id}&partNumber={part_number}"

    def upload_part(self, key, upload_id, part_number, data):
        with self._lock:
            upload = self.uploads.get(upload_id)
            if upload is None:
                raise StorageError(f"No such upload {upload_id}", key=key)
            etag = f'"etag-{part_number}-{len(data)}"'
            upload["parts"][part_number] = (etag, bytes(data))
        return etag

    def complete_multipart_upload(self, key, upload_id, parts):
        with self._lock:
            upload = self.uploads.get(upload_id)
            if upload is None:
                raise StorageError(f"No such upload {upload_id}", key=key)
            body = b""
            for part in parts:
                stored = upload["parts"].get(part["PartNumber"])
                if stored is None or stored[0] != part["ETag"]:
                    raise StorageError(f"Invalid part {part['PartNumber']}", key=key)
                body += stored[1]
            del self.uploads[upload_id]
            self.objects[key] = body
            self.modified[key] = self._clock()
            self.put_log.append(key)
        return '"final-etag"'

    def abort_multipart_upload(self, key, upload_id):
        with self._lock:
            self.uploads.pop(upload_id, None)
        return True

    def list_multipart_uploads(self, prefix=""):
        with self._lock:
            return [
                MultipartUploadInfo(key=u["key"], upload_id=upload_id, initiated=u["initiated"])
                for upload_id, u in self.uploads.items() if u["key"].startswith(prefix)
            ]


# ─── database ─────────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


# ─── storage & services ───────────────────────────────────

@pytest.fixture
def store():
    return InMemoryObjectStore()


@pytest.fixture
def local_store(tmp_path):
    return LocalFileStore(str(tmp_path / "local"), url_signer=local_url_signer)


@pytest.fixture
def stores(store, local_store):
    return {StorageType.REMOTE: store, StorageType.LOCAL: local_store}


@pytest.fixture
def memory_registry():
    return InMemorySessionRegistry()


@pytest.fixture
def sql_registry():
    return SqlSessionRegistry(SessionLocal)


@pytest.fixture
def assembler(store, memory_registry):
    return ChunkAssembler(store, memory_registry)


@pytest.fixture
def coordinator(store, memory_registry):
    return MultipartCoordinator(store, memory_registry)


@pytest.fixture
def client(store, local_store, stores, sql_registry):
    import services
    from main import app

    def _transfer_manager(db: Session = Depends(get_db)):
        return TransferManager(db, stores)

    app.dependency_overrides.update({
        services.get_remote_store: lambda: store,
        services.get_local_store: lambda: local_store,
        services.get_registry: lambda: sql_registry,
        services.get_assembler: lambda: ChunkAssembler(store, sql_registry),
        services.get_coordinator: lambda: MultipartCoordinator(store, sql_registry),
        services.get_direct_uploader: lambda: DirectUploader(stores, sql_registry),
        services.get_transfer_manager: _transfer_manager,
        services.get_lifecycle_engine: lambda: LifecycleEngine(SessionLocal, stores),
        services.get_orphan_collector: lambda: OrphanChunkCollector(
            store, registry=sql_registry, stores=stores, max_age=timedelta(hours=24),
        ),
    })
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}
