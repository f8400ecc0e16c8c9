# admin_routes.py: manual triggers for the lifecycle and orphan sweeps

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from audit import verify_audit_chain
from auth import require_admin
from database import get_db
from lifecycle import LifecycleEngine
from orphans import OrphanChunkCollector
from services import get_lifecycle_engine, get_orphan_collector

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


# ─── CLEANUP ─────────────────────────────────────────────

@router.post("/cleanup/run")
def run_cleanup(engine: LifecycleEngine = Depends(get_lifecycle_engine)):
    """Phase A then Phase B, exactly like the scheduled sweep."""
    reports = engine.run()
    return {phase: report.to_dict() for phase, report in reports.items()}


@router.post("/cleanup/mark-expired")
def mark_expired(engine: LifecycleEngine = Depends(get_lifecycle_engine)):
    return engine.expire_transfers().to_dict()


@router.post("/cleanup/delete-local")
def delete_local(engine: LifecycleEngine = Depends(get_lifecycle_engine)):
    return engine.delete_local_files().to_dict()


@router.post("/cleanup/orphans")
def collect_orphans(collector: OrphanChunkCollector = Depends(get_orphan_collector)):
    return collector.collect().to_dict()


# ─── AUDIT ───────────────────────────────────────────────

@router.get("/audit/verify")
def verify_audit_integrity(db: Session = Depends(get_db)):
    return verify_audit_chain(db)
