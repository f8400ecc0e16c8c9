import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, DateTime, BigInteger, Text, Boolean, ForeignKey, Numeric,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class TransferStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    DELETED = "deleted"


class StorageType(str, enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"


class SessionStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    ASSEMBLING = "assembling"
    COMPLETE = "complete"
    FAILED = "failed"


class UploadKind(str, enum.Enum):
    CHUNKED = "chunked"
    MULTIPART = "multipart"
    DIRECT = "direct"


# ─────────────────────────────────────────────────────────────
# Transfer (aggregate root)
# ─────────────────────────────────────────────────────────────
class Transfer(Base):
    __tablename__ = "transfers"

    id = Column(String(32), primary_key=True, default=new_id)
    total_size = Column(BigInteger, nullable=False, default=0)
    share_link = Column(String(64), unique=True, index=True, nullable=False)
    access_key = Column(String(32), nullable=False)
    status = Column(String(16), index=True, default=TransferStatus.ACTIVE.value, nullable=False)
    expiry_date = Column(DateTime, index=True, nullable=False)
    download_count = Column(Integer, default=0, nullable=False)
    last_download_date = Column(DateTime, nullable=True)
    is_payment_required = Column(Boolean, default=False, nullable=False)
    is_paid = Column(Boolean, default=False, nullable=False)
    payment_amount = Column(Numeric(12, 2), default=0)
    payment_currency = Column(String(3), default="EUR")
    payment_id = Column(String, nullable=True)
    payment_date = Column(DateTime, nullable=True)
    recipient_email = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    files = relationship(
        "TransferFile",
        back_populates="transfer",
        order_by="TransferFile.position",
        cascade="all, delete-orphan",
    )

    def has_local_files(self) -> bool:
        return any(f.storage_type == StorageType.LOCAL.value for f in self.files)


# ─────────────────────────────────────────────────────────────
# Transfer File (child of Transfer, never shared)
# ─────────────────────────────────────────────────────────────
class TransferFile(Base):
    __tablename__ = "transfer_files"

    id = Column(String(32), primary_key=True, default=new_id)
    transfer_id = Column(String(32), ForeignKey("transfers.id", ondelete="CASCADE"), index=True, nullable=False)
    position = Column(Integer, nullable=False)
    upload_file_id = Column(String, nullable=True)
    original_name = Column(String, nullable=False)
    display_name = Column(String, nullable=False)
    storage_key = Column(String, nullable=False)
    storage_type = Column(String(16), nullable=False)
    mime_type = Column(String, default="application/octet-stream")
    size = Column(BigInteger, nullable=False)
    checksum_sha256 = Column(String(64), nullable=True)
    deleted_at = Column(DateTime, nullable=True)   # set once the stored bytes are reclaimed
    created_at = Column(DateTime, default=utcnow)

    transfer = relationship("Transfer", back_populates="files")


# ─────────────────────────────────────────────────────────────
# Upload Sessions (chunked, multipart and direct uploads)
# ─────────────────────────────────────────────────────────────
class UploadSession(Base):
    __tablename__ = "upload_sessions"

    id = Column(String(32), primary_key=True, default=new_id)
    file_id = Column(String, unique=True, index=True, nullable=False)
    kind = Column(String(16), default=UploadKind.CHUNKED.value, nullable=False)
    transfer_id = Column(String, nullable=False)           # key namespace (t_<transfer_id>)
    file_name = Column(String, nullable=False)
    mime_type = Column(String, default="application/octet-stream")
    total_size = Column(BigInteger, nullable=True)
    expected_part_count = Column(Integer, nullable=False)
    expected_hash = Column(String(64), nullable=True)
    key_date = Column(String(10), nullable=False)          # YYYY/MM/DD of the first chunk
    multipart_upload_id = Column(String, nullable=True)
    storage_key = Column(String, nullable=True)
    storage_type = Column(String(16), nullable=True)
    result_size = Column(BigInteger, nullable=True)
    checksum_sha256 = Column(String(64), nullable=True)
    status = Column(String(16), index=True, default=SessionStatus.IN_PROGRESS.value, nullable=False)
    error = Column(Text, nullable=True)
    attached_transfer_id = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)

    parts = relationship("UploadSessionPart", cascade="all, delete-orphan", order_by="UploadSessionPart.part_index")


class UploadSessionPart(Base):
    __tablename__ = "upload_session_parts"
    __table_args__ = (UniqueConstraint("session_id", "part_index", name="uq_session_part"),)

    id = Column(Integer, primary_key=True)
    session_id = Column(String(32), ForeignKey("upload_sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    part_index = Column(Integer, nullable=False)
    size = Column(BigInteger, nullable=True)
    etag = Column(String, nullable=True)
    received_at = Column(DateTime, default=utcnow)


# ─────────────────────────────────────────────────────────────
# Audit Log
# ─────────────────────────────────────────────────────────────
class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    entry_id = Column(String, unique=True)
    timestamp = Column(DateTime, default=utcnow)
    actor = Column(String)
    action = Column(String)
    transfer_id = Column(String(32), nullable=True, index=True)
    meta_data = Column(Text, nullable=True)
    ip_address = Column(String, nullable=True)
    previous_hash = Column(String)
    current_hash = Column(String, unique=True)
