# upload_routes.py

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

import config
import schemas
from chunks import ChunkAssembler
from direct import DirectUploader
from errors import InvalidInput
from models import SessionStatus
from multipart import MultipartCoordinator
from services import get_assembler, get_coordinator, get_direct_uploader
from sessions import UploadSessionInfo

router = APIRouter(prefix="/upload", tags=["Uploads"])


def _status_out(assembler: ChunkAssembler, session: UploadSessionInfo) -> dict:
    total = session.expected_part_count
    if session.status == SessionStatus.COMPLETE:
        # chunk keys are gone once the file is reconstructed
        received = list(range(total))
    else:
        present = assembler.received_indices(session.file_id) | session.received_parts
        received = sorted(i for i in present if i < total)
    received_set = set(received)
    return {
        "file_id": session.file_id,
        "status": session.status.value,
        "total_chunks": total,
        "chunk_size": config.CHUNK_SIZE,
        "received": received,
        "missing": [i for i in range(total) if i not in received_set],
        "file": session.descriptor.to_dict() if session.descriptor else None,
        "error": session.error,
    }


# ─── Chunked upload ───────────────────────────────────────────────────────────

@router.post("/chunked/start", response_model=schemas.UploadStatusOut)
def start_chunked_upload(req: schemas.ChunkSessionCreate,
                         assembler: ChunkAssembler = Depends(get_assembler)):
    session = assembler.start(
        req.file_id, req.file_name, req.total_chunks,
        transfer_id=req.transfer_id,
        mime_type=req.mime_type,
        total_size=req.total_size,
        expected_hash=req.expected_hash,
    )
    return _status_out(assembler, session)


@router.post("/chunk")
def upload_chunk(
    file_id: str = Form(...),
    chunk_index: int = Form(...),
    total_chunks: int = Form(...),
    file_name: str = Form(...),
    mime_type: Optional[str] = Form(None),
    chunk: UploadFile = File(...),
    assembler: ChunkAssembler = Depends(get_assembler),
):
    data = chunk.file.read()
    result = assembler.upload_chunk(
        file_id, chunk_index, total_chunks, file_name, data, mime_type=mime_type,
    )
    return result.to_dict()


@router.get("/chunked/{file_id}", response_model=schemas.UploadStatusOut)
def get_upload_status(file_id: str, assembler: ChunkAssembler = Depends(get_assembler)):
    return _status_out(assembler, assembler.status(file_id))


@router.post("/chunked/presign")
def presign_chunk_uploads(req: schemas.ChunkPresignRequest,
                          assembler: ChunkAssembler = Depends(get_assembler)):
    return assembler.presign_chunk_uploads(req.file_id, req.file_name, req.total_chunks)


@router.post("/chunked/confirm")
def confirm_chunk(req: schemas.ChunkConfirmRequest,
                  assembler: ChunkAssembler = Depends(get_assembler)):
    result = assembler.confirm_chunk(req.file_id, req.chunk_index, req.total_chunks, req.file_name)
    return result.to_dict()


# ─── Native multipart ─────────────────────────────────────────────────────────

@router.post("/multipart/start")
def start_multipart(req: schemas.MultipartStartRequest,
                    coordinator: MultipartCoordinator = Depends(get_coordinator)):
    started = coordinator.start(
        req.file_id, req.file_name, req.size, req.mime_type, req.part_count,
        transfer_id=req.transfer_id,
    )
    return started.to_dict()


@router.post("/multipart/part")
def upload_multipart_part(
    upload_id: str = Form(...),
    key: str = Form(...),
    index: int = Form(...),
    part: UploadFile = File(...),
    coordinator: MultipartCoordinator = Depends(get_coordinator),
):
    etag = coordinator.upload_part(upload_id, key, index, part.file.read())
    return {"index": index, "etag": etag}


@router.post("/multipart/complete")
def complete_multipart(req: schemas.MultipartCompleteRequest,
                       coordinator: MultipartCoordinator = Depends(get_coordinator)):
    return coordinator.complete(req.upload_id, req.key, [p.model_dump() for p in req.parts])


@router.post("/multipart/abort")
def abort_multipart(req: schemas.MultipartAbortRequest,
                    coordinator: MultipartCoordinator = Depends(get_coordinator)):
    coordinator.abort(req.upload_id, req.key)
    return {"aborted": True, "upload_id": req.upload_id}


# ─── Single-request uploads ───────────────────────────────────────────────────

@router.post("/direct")
def upload_direct(
    file: UploadFile = File(...),
    storage: str = Form("remote"),
    uploader: DirectUploader = Depends(get_direct_uploader),
):
    if not file.filename:
        raise InvalidInput("Uploaded file has no name")
    descriptor = uploader.upload(file.filename, file.file, mime_type=file.content_type, storage=storage)
    return descriptor.to_dict()


@router.post("/base64")
def upload_base64(req: schemas.Base64UploadRequest,
                  uploader: DirectUploader = Depends(get_direct_uploader)):
    descriptor = uploader.upload_base64(req.file_name, req.data, mime_type=req.mime_type, storage=req.storage)
    return descriptor.to_dict()
