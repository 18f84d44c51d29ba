"""FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from bucketdrive.config import settings
from bucketdrive.database import engine, get_db
from bucketdrive.models import Base
from bucketdrive.services.errors import DriveError

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup, start background worker."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Recover any jobs stuck in "running" from a previous crash
    from bucketdrive.services.job_worker import recover_stale_jobs, worker_loop
    await recover_stale_jobs()

    # Start background job worker
    worker_task = asyncio.create_task(worker_loop())

    yield

    # Cleanup
    worker_task.cancel()
    from bucketdrive.services.object_store import get_object_store
    await get_object_store().close()
    await engine.dispose()


app = FastAPI(
    title="Bucket Drive API",
    version="1.0.0",
    description="File-manager backend over an S3-compatible bucket and a metadata database.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DriveError)
async def drive_error_handler(request: Request, exc: DriveError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.get("/api/health")
async def health_check():
    """Verify API and database connectivity."""
    try:
        async for db in get_db():
            await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected"}
    except Exception as e:
        return {"status": "error", "database": str(e)}


# Register routers
from bucketdrive.routes.files import router as files_router
from bucketdrive.routes.folders import router as folders_router
from bucketdrive.routes.upload import router as upload_router
from bucketdrive.routes.objects import router as objects_router
from bucketdrive.routes.jobs import router as jobs_router
from bucketdrive.routes.metrics import router as metrics_router
app.include_router(files_router)
app.include_router(folders_router)
app.include_router(upload_router)
app.include_router(objects_router)
app.include_router(jobs_router)
app.include_router(metrics_router)
