import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
from database import Base, engine
from errors import IncompleteUpload, StorageError, TransferError
from jobs import run_expiry_sweep, run_orphan_sweep
from scheduler import get_scheduler
from services import get_remote_store
from storage import RemoteObjectStore
import models  # noqa: F401  registers the tables on Base.metadata

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


# ─── Lifespan: schema, bucket and background sweeps ───────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)

    try:
        get_remote_store().ensure_bucket()
    except StorageError as e:
        # uploads fail with 502 until the store is reachable
        logger.warning(f"Object store not ready at startup: {e}")

    scheduler = get_scheduler()
    if config.ENABLE_SCHEDULER:
        scheduler.start()
        await scheduler.schedule_periodic(
            run_expiry_sweep, config.EXPIRY_SWEEP_INTERVAL_SECONDS, name="expiry_sweep",
        )
        await scheduler.schedule_periodic(
            run_orphan_sweep, config.ORPHAN_SWEEP_INTERVAL_SECONDS, name="orphan_sweep",
            initial_delay=60,
        )
    yield
    await scheduler.stop()


# ─── App created FIRST before any include_router ─────────────────────────────
app = FastAPI(
    title="Transfer API",
    description="Large-file transfers: chunked and multipart uploads, share links, expiry",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ─── Register routers ─────────────────────────────────────────────────────────
from upload_routes import router as upload_router
from transfer_routes import router as transfer_router
from admin_routes import router as admin_router
app.include_router(upload_router)
app.include_router(transfer_router)
app.include_router(admin_router)


# ─── Exception handlers ───────────────────────────────────────────────────────

@app.exception_handler(IncompleteUpload)
async def incomplete_upload_handler(request: Request, exc: IncompleteUpload):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "file_id": exc.file_id, "missing": exc.missing},
    )


@app.exception_handler(TransferError)
async def transfer_error_handler(request: Request, exc: TransferError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"detail": f"{type(exc).__name__}: {str(exc)}"}
    )


# ─── Health ───────────────────────────────────────────────────────────────────

@app.get("/health", tags=["System"])
def health(store: RemoteObjectStore = Depends(get_remote_store)):
    storage = store.get_health()
    return {
        "status": "ok" if storage["status"] == "healthy" else "degraded",
        "service": "transfers",
        "version": app.version,
        "storage": storage,
    }
