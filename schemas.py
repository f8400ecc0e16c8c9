from pydantic import BaseModel, Field
from typing import List, Optional
from decimal import Decimal
from datetime import datetime


# ─── Chunked uploads ──────────────────────────────────────────────────────────

class ChunkSessionCreate(BaseModel):
    file_id: str
    file_name: str
    total_chunks: int
    total_size: Optional[int] = None
    mime_type: Optional[str] = None
    expected_hash: Optional[str] = None  # optional client-provided expected final hash
    transfer_id: Optional[str] = None


class ChunkPresignRequest(BaseModel):
    file_id: str
    file_name: str
    total_chunks: int


class ChunkConfirmRequest(BaseModel):
    file_id: str
    chunk_index: int
    total_chunks: int
    file_name: str


class UploadStatusOut(BaseModel):
    file_id: str
    status: str
    total_chunks: int
    chunk_size: int
    received: List[int]
    missing: List[int]
    file: Optional[dict] = None
    error: Optional[str] = None


# ─── Native multipart ─────────────────────────────────────────────────────────

class MultipartStartRequest(BaseModel):
    file_id: str
    file_name: str
    size: int
    mime_type: Optional[str] = None
    part_count: int
    transfer_id: Optional[str] = None


class CompletedPart(BaseModel):
    index: int
    etag: str


class MultipartCompleteRequest(BaseModel):
    upload_id: str
    key: str
    parts: List[CompletedPart]


class MultipartAbortRequest(BaseModel):
    upload_id: str
    key: str


# ─── Single-request uploads ───────────────────────────────────────────────────

class Base64UploadRequest(BaseModel):
    file_name: str
    mime_type: Optional[str] = None
    data: str
    storage: str = "remote"


# ─── Transfers ────────────────────────────────────────────────────────────────

class PaymentIn(BaseModel):
    amount: Decimal
    currency: str = "EUR"


class TransferCreate(BaseModel):
    file_ids: List[str] = Field(..., min_length=1)
    retention_days: Optional[int] = None
    expiry_hours: Optional[int] = None   # legacy flow: hours instead of days
    payment: Optional[PaymentIn] = None
    recipient_email: Optional[str] = None


class TransferCreated(BaseModel):
    transfer_id: str
    share_link: str
    access_key: str
    expiry_date: datetime
    total_size: int


class DownloadRequest(BaseModel):
    share_link: str
    access_key: str
    file_id: Optional[str] = None


class MarkPaidRequest(BaseModel):
    payment_id: str
