# transfer_routes.py

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse
from jose import JWTError

import config
import schemas
from auth import decode_download_token, require_admin
from errors import NotFound
from file_service import detect_mime
from models import Transfer, UploadKind, new_id
from services import get_local_store, get_registry, get_transfer_manager
from sessions import SessionRegistry
from storage import LocalFileStore
from transfers import PaymentConfig, TransferManager

router = APIRouter(tags=["Transfers"])


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _manifest(transfer: Transfer) -> dict:
    return {
        "transfer_id": transfer.id,
        "status": transfer.status,
        "expiry_date": transfer.expiry_date.isoformat(),
        "total_size": transfer.total_size,
        "download_count": transfer.download_count,
        "files": [
            {"file_id": f.id, "name": f.display_name, "size": f.size, "mime_type": f.mime_type}
            for f in transfer.files
        ],
        "payment": {
            "required": transfer.is_payment_required,
            "paid": transfer.is_paid,
            "amount": str(transfer.payment_amount) if transfer.is_payment_required else None,
            "currency": transfer.payment_currency if transfer.is_payment_required else None,
        },
    }


# ─── CREATE ───────────────────────────────────────────────────────────────────

@router.post("/transfers", response_model=schemas.TransferCreated, status_code=201)
def create_transfer(
    req: schemas.TransferCreate,
    registry: SessionRegistry = Depends(get_registry),
    manager: TransferManager = Depends(get_transfer_manager),
):
    expiry_hours = req.expiry_hours
    if req.retention_days is None and expiry_hours is None:
        # transfers made only of direct uploads keep the shorter legacy window
        sessions = [registry.get(file_id) for file_id in req.file_ids]
        if sessions and all(s is not None and s.kind == UploadKind.DIRECT for s in sessions):
            expiry_hours = config.LEGACY_RETENTION_HOURS

    payment = PaymentConfig(req.payment.amount, req.payment.currency) if req.payment else None

    transfer_id = new_id()
    pending_ttl = timedelta(minutes=config.PENDING_FILE_TTL_MINUTES)
    files = registry.attach(req.file_ids, transfer_id, pending_ttl)
    try:
        transfer = manager.create_transfer(
            files,
            retention_days=req.retention_days,
            payment=payment,
            expiry_hours=expiry_hours,
            recipient_email=req.recipient_email,
            transfer_id=transfer_id,
        )
    except Exception:
        # the files go back to the pending pool
        registry.detach(transfer_id)
        raise

    return {
        "transfer_id": transfer.id,
        "share_link": transfer.share_link,
        "access_key": transfer.access_key,
        "expiry_date": transfer.expiry_date,
        "total_size": transfer.total_size,
    }


# ─── VIEW / DOWNLOAD ──────────────────────────────────────────────────────────

@router.get("/transfers/link/{share_link}")
def get_transfer_by_link(
    share_link: str,
    key: str = Query(...),
    manager: TransferManager = Depends(get_transfer_manager),
):
    return _manifest(manager.get_manifest(share_link, key))


@router.post("/transfers/download")
def authorize_download(
    req: schemas.DownloadRequest,
    request: Request,
    manager: TransferManager = Depends(get_transfer_manager),
):
    grant = manager.authorize_download(
        req.share_link, req.access_key, file_id=req.file_id, ip_address=get_client_ip(request),
    )
    return {
        "transfer_id": grant.transfer_id,
        "expires_at": grant.expires_at.isoformat(),
        "downloads": grant.downloads,
    }


@router.get("/download/local")
def download_local(token: str = Query(...), store: LocalFileStore = Depends(get_local_store)):
    try:
        payload = decode_download_token(token)
    except JWTError:
        raise HTTPException(status_code=403, detail="Invalid or expired download link")

    key = payload["sub"]
    if not store.exists(key):
        raise NotFound("File not found")
    name = payload.get("name") or key.rsplit("/", 1)[-1]
    return FileResponse(store.path_for(key), media_type=detect_mime(name), filename=name)


# ─── PAYMENT ──────────────────────────────────────────────────────────────────

@router.post("/transfers/{transfer_id}/paid", dependencies=[Depends(require_admin)])
def mark_paid(
    transfer_id: str,
    req: schemas.MarkPaidRequest,
    manager: TransferManager = Depends(get_transfer_manager),
):
    transfer = manager.mark_paid(transfer_id, req.payment_id)
    return {
        "transfer_id": transfer.id,
        "is_paid": transfer.is_paid,
        "payment_date": transfer.payment_date.isoformat() if transfer.payment_date else None,
    }
