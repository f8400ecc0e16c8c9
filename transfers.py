"""
transfers.py: the Transfer aggregate.

This module is the only writer of a transfer's status, share link, access
key and expiry date. A transfer's file list is fixed at creation.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

import config
from audit import create_audit_entry
from errors import AccessDenied, InvalidInput, NotFound
from models import StorageType, Transfer, TransferFile, TransferStatus, new_id, utcnow
from secure_share import generate_access_key, generate_share_link, keys_match, mask
from sessions import FileDescriptor
from storage import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class PaymentConfig:
    amount: Decimal
    currency: str = "EUR"

    def __post_init__(self):
        self.amount = Decimal(str(self.amount))
        if self.amount <= 0:
            raise InvalidInput("Payment amount must be positive")
        if len(self.currency) != 3:
            raise InvalidInput("Currency must be a 3-letter ISO code")
        self.currency = self.currency.upper()


@dataclass
class DownloadGrant:
    transfer_id: str
    expires_at: datetime
    downloads: List[dict] = field(default_factory=list)


class TransferManager:

    def __init__(self, db: Session, stores: Dict[StorageType, StorageBackend],
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.stores = stores
        self.clock = clock

    # ─── Creation ─────────────────────────────────────────────────────────────

    def create_transfer(self, files: List[FileDescriptor], retention_days: Optional[int] = None,
                        payment: Optional[PaymentConfig] = None, *, expiry_hours: Optional[int] = None,
                        recipient_email: Optional[str] = None, transfer_id: Optional[str] = None,
                        actor: str = "system") -> Transfer:
        if not files:
            raise InvalidInput("A transfer needs at least one file")
        if any(f.size is None or f.size <= 0 for f in files):
            raise InvalidInput("Every file must have a positive size")
        if retention_days is not None and expiry_hours is not None:
            raise InvalidInput("Give either retentionDays or expiryHours, not both")

        if expiry_hours is not None:
            if expiry_hours <= 0:
                raise InvalidInput("expiryHours must be positive")
            lifetime = timedelta(hours=expiry_hours)
        else:
            days = config.DEFAULT_RETENTION_DAYS if retention_days is None else retention_days
            if days <= 0:
                raise InvalidInput("retentionDays must be positive")
            lifetime = timedelta(days=days)

        now = self.clock()
        transfer = Transfer(
            id=transfer_id or new_id(),
            share_link=generate_share_link(),
            access_key=generate_access_key(),
            status=TransferStatus.ACTIVE.value,
            expiry_date=now + lifetime,
            total_size=sum(f.size for f in files),
            is_payment_required=payment is not None,
            payment_amount=payment.amount if payment else 0,
            payment_currency=payment.currency if payment else "EUR",
            recipient_email=recipient_email,
            created_at=now,
        )
        transfer.files = [
            TransferFile(
                position=position,
                upload_file_id=f.file_id,
                original_name=f.original_name,
                display_name=f.display_name or f.original_name,
                storage_key=f.storage_key,
                storage_type=f.storage_type.value,
                mime_type=f.mime_type,
                size=f.size,
                checksum_sha256=f.checksum_sha256,
            )
            for position, f in enumerate(files)
        ]
        self.db.add(transfer)
        self.db.commit()
        self.db.refresh(transfer)

        logger.info(
            f"Created transfer {transfer.id}: {len(files)} file(s), {transfer.total_size} bytes, "
            f"expires {transfer.expiry_date.isoformat()}"
        )
        create_audit_entry(self.db, "TRANSFER_CREATED", actor=actor, transfer_id=transfer.id,
                           meta_data=f"files={len(files)},size={transfer.total_size}")
        return transfer

    # ─── Lookup & authorization ───────────────────────────────────────────────

    def get(self, transfer_id: str) -> Transfer:
        transfer = self.db.query(Transfer).filter(Transfer.id == transfer_id).first()
        if transfer is None:
            raise NotFound(f"Transfer {transfer_id} not found")
        return transfer

    def _gate(self, share_link: str, access_key: str, require_payment: bool) -> Transfer:
        transfer = None
        if share_link:
            transfer = self.db.query(Transfer).filter(Transfer.share_link == share_link).first()
        # Every failing condition ends in the same AccessDenied
        allowed = (
            transfer is not None
            and keys_match(transfer.access_key, access_key)
            and transfer.status == TransferStatus.ACTIVE.value
            and transfer.expiry_date > self.clock()
            and (not require_payment or not transfer.is_payment_required or transfer.is_paid)
        )
        if not allowed:
            logger.info(f"Access denied for link {mask(share_link)}")
            raise AccessDenied()
        return transfer

    def authorize_access(self, share_link: str, access_key: str) -> Transfer:
        return self._gate(share_link, access_key, require_payment=True)

    def get_manifest(self, share_link: str, access_key: str) -> Transfer:
        """Like authorize_access, but an unpaid transfer can still be viewed (to be paid)."""
        return self._gate(share_link, access_key, require_payment=False)

    def authorize_download(self, share_link: str, access_key: str, file_id: Optional[str] = None,
                           ttl: Optional[int] = None, ip_address: Optional[str] = None) -> DownloadGrant:
        transfer = self.authorize_access(share_link, access_key)
        ttl = ttl or config.DOWNLOAD_URL_TTL_SECONDS

        files = transfer.files
        if file_id is not None:
            files = [f for f in files if f.id == file_id]
            if not files:
                raise NotFound("File not found in transfer")

        downloads = []
        for f in files:
            store = self.stores[StorageType(f.storage_type)]
            downloads.append({
                "file_id": f.id,
                "name": f.display_name,
                "size": f.size,
                "mime_type": f.mime_type,
                "url": store.signed_url(f.storage_key, ttl, download_name=f.display_name),
            })

        self.increment_download_count(transfer.id)
        create_audit_entry(self.db, "DOWNLOAD_AUTHORIZED", actor="link", transfer_id=transfer.id,
                           ip_address=ip_address, meta_data=f"files={len(downloads)}")
        return DownloadGrant(
            transfer_id=transfer.id,
            expires_at=self.clock() + timedelta(seconds=ttl),
            downloads=downloads,
        )

    # ─── Mutations ────────────────────────────────────────────────────────────

    def increment_download_count(self, transfer_id: str) -> None:
        self.db.execute(
            update(Transfer)
            .where(Transfer.id == transfer_id)
            .values(download_count=Transfer.download_count + 1, last_download_date=self.clock())
        )
        self.db.commit()

    def mark_paid(self, transfer_id: str, payment_id: str) -> Transfer:
        if not payment_id:
            raise InvalidInput("paymentId is required")
        transfer = self.get(transfer_id)
        if transfer.is_paid:
            return transfer
        transfer.is_paid = True
        transfer.payment_id = payment_id
        transfer.payment_date = self.clock()
        self.db.commit()
        logger.info(f"Transfer {transfer_id} marked as paid")
        create_audit_entry(self.db, "TRANSFER_PAID", actor="payment-provider", transfer_id=transfer_id)
        return transfer
