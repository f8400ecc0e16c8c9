"""
services.py: process-wide service instances and their FastAPI dependencies.

Tests swap any of these through ``app.dependency_overrides``.
"""

from datetime import timedelta
from functools import lru_cache
from typing import Dict

from fastapi import Depends
from sqlalchemy.orm import Session

import config
from auth import local_url_signer
from chunks import ChunkAssembler
from database import SessionLocal, get_db
from direct import DirectUploader
from lifecycle import LifecycleEngine
from models import StorageType
from multipart import MultipartCoordinator
from orphans import OrphanChunkCollector
from sessions import SessionRegistry, SqlSessionRegistry
from storage import LocalFileStore, RemoteObjectStore, StorageBackend
from transfers import TransferManager


@lru_cache()
def get_remote_store() -> RemoteObjectStore:
    return RemoteObjectStore()


@lru_cache()
def get_local_store() -> LocalFileStore:
    return LocalFileStore(config.LOCAL_STORAGE_DIR, url_signer=local_url_signer)


def get_stores() -> Dict[StorageType, StorageBackend]:
    return {
        StorageType.REMOTE: get_remote_store(),
        StorageType.LOCAL: get_local_store(),
    }


@lru_cache()
def get_registry() -> SessionRegistry:
    return SqlSessionRegistry(SessionLocal)


def get_assembler() -> ChunkAssembler:
    return ChunkAssembler(get_remote_store(), get_registry())


def get_coordinator() -> MultipartCoordinator:
    return MultipartCoordinator(get_remote_store(), get_registry())


def get_direct_uploader() -> DirectUploader:
    return DirectUploader(get_stores(), get_registry())


def get_lifecycle_engine() -> LifecycleEngine:
    return LifecycleEngine(SessionLocal, get_stores())


def get_orphan_collector() -> OrphanChunkCollector:
    return OrphanChunkCollector(
        get_remote_store(),
        registry=get_registry(),
        stores=get_stores(),
        max_age=timedelta(hours=config.ORPHAN_CHUNK_MAX_AGE_HOURS),
    )


def get_transfer_manager(db: Session = Depends(get_db)) -> TransferManager:
    return TransferManager(db, get_stores())
