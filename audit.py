import hashlib
import uuid
import time
from sqlalchemy.orm import Session
import models


def create_audit_entry(
    db: Session,
    action: str,
    actor: str = "system",
    transfer_id: str = None,
    meta_data: str = None,
    ip_address: str = None,
):
    # Read last hash from DB; an in-memory global would reset on restart
    last_log = db.query(models.AuditLog).order_by(models.AuditLog.id.desc()).first()
    previous_hash = last_log.current_hash if last_log else "0" * 64

    entry_id = uuid.uuid4().hex
    record = f"{time.time()}|{entry_id}|{actor}|{action}|{transfer_id or ''}|{ip_address or ''}|{previous_hash}"
    current_hash = hashlib.sha256(record.encode()).hexdigest()

    log = models.AuditLog(
        entry_id=entry_id,
        actor=actor,
        action=action,
        transfer_id=transfer_id,
        meta_data=meta_data,
        ip_address=ip_address,
        previous_hash=previous_hash,
        current_hash=current_hash,
    )
    db.add(log)
    db.commit()
    return current_hash


def verify_audit_chain(db: Session) -> dict:
    logs = db.query(models.AuditLog).order_by(models.AuditLog.id.asc()).all()
    if not logs:
        return {"valid": True, "entries_checked": 0, "message": "No logs to verify"}

    prev = "0" * 64
    for log in logs:
        if log.previous_hash != prev:
            return {
                "valid": False,
                "entries_checked": len(logs),
                "broken_at_entry_id": log.id,
                "message": "Chain integrity violation detected",
            }
        prev = log.current_hash

    return {
        "valid": True,
        "entries_checked": len(logs),
        "message": "Audit chain verified",
    }
