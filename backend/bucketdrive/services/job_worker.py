"""Background job worker.

Polls the jobs table for 'queued' jobs and processes them.
Runs as an asyncio task within the FastAPI process, so a recursive folder
delete keeps going after the request that queued it has returned.
"""
import asyncio
import logging
import time
import traceback
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, select

from bucketdrive.database import async_session
from bucketdrive.models.job import Job
from bucketdrive.services.auth import Actor
from bucketdrive.services.folder_engine import FolderDeleteReport, FolderEngine
from bucketdrive.services.metadata_store import MetadataStore
from bucketdrive.services.object_store import get_object_store

logger = logging.getLogger(__name__)

# ── In-memory cancel cache ───────────────────────────────────────
# mark_job_cancelled() is called by the cancel route AFTER commit.
# is_job_cancelled() checks this set first, DB fallback every 10s.
_cancelled_jobs: set[str] = set()
_cancel_check_times: dict[str, float] = {}
_CANCEL_CHECK_INTERVAL = 10.0  # seconds between DB fallback checks

POLL_INTERVAL = 5.0


async def recover_stale_jobs(stale_minutes: int = 15):
    """Mark jobs stuck in 'running' for longer than `stale_minutes` as failed.

    Call on startup to recover from process crashes that left jobs stranded.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=stale_minutes)
    async with async_session() as db:
        result = await db.execute(
            select(Job).where(
                and_(
                    Job.status == "running",
                    Job.started_at < cutoff,
                )
            )
        )
        stale_jobs = result.scalars().all()
        for job in stale_jobs:
            job.status = "failed"
            job.error_message = f"Recovered on startup: job was running for >{stale_minutes} minutes"
            job.completed_at = datetime.now(timezone.utc)
            logger.warning(f"Recovered stale job {job.id} (started at {job.started_at})")
        if stale_jobs:
            await db.commit()
            logger.info(f"Recovered {len(stale_jobs)} stale job(s)")


def safe_error_message(e: Exception, fallback: str = "Job interrupted") -> str:
    """Extract a meaningful error message, falling back to the exception class name."""
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg


# Job handler registry - add new job types here
JOB_HANDLERS = {}


def register_job_handler(job_type: str):
    """Decorator to register a job handler function."""
    def decorator(func):
        JOB_HANDLERS[job_type] = func
        return func
    return decorator


async def process_job(job_id, job_type: str, params: dict) -> dict:
    """Dispatch job to the appropriate handler."""
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return await handler(job_id, params)


async def update_job_progress(job_id, current: int, total: int, message: str = ""):
    """Update job progress (called from within handlers)."""
    async with async_session() as db:
        job = await db.get(Job, job_id)
        if job:
            job.progress = {"current": current, "total": total, "message": message}
            await db.commit()


def mark_job_cancelled(job_id) -> None:
    """Mark a job as cancelled in the in-memory cache (after the DB commit)."""
    _cancelled_jobs.add(str(job_id))


def _cleanup_cancelled_job(job_id) -> None:
    job_key = str(job_id)
    _cancelled_jobs.discard(job_key)
    _cancel_check_times.pop(job_key, None)


async def is_job_cancelled(job_id) -> bool:
    """Memory first, then a DB check at most once every _CANCEL_CHECK_INTERVAL seconds."""
    job_key = str(job_id)
    if job_key in _cancelled_jobs:
        return True
    now = time.monotonic()
    last_check = _cancel_check_times.get(job_key, 0)
    if now - last_check < _CANCEL_CHECK_INTERVAL:
        return False
    _cancel_check_times[job_key] = now
    async with async_session() as db:
        job = await db.get(Job, job_id)
        if job is not None and job.status == "cancelled":
            _cancelled_jobs.add(job_key)
            return True
    return False


async def run_next_job() -> bool:
    """Pick the oldest queued job and run it to a terminal state. Returns False when idle."""
    async with async_session() as db:
        result = await db.execute(
            select(Job)
            .where(Job.status == "queued")
            .order_by(Job.created_at)
            .limit(1)
        )
        job = result.scalar_one_or_none()
        if not job:
            return False

        logger.info(f"Processing job {job.id} (type={job.job_type})")
        job.status = "running"
        job.started_at = datetime.now(timezone.utc)
        await db.commit()

        try:
            result_data = await process_job(job.id, job.job_type, job.params)

            # Re-check: if job was cancelled during execution, don't overwrite
            await db.refresh(job)
            if job.status == "cancelled":
                job.result = result_data or {}
                await db.commit()
                logger.info(f"Job {job.id} was cancelled during execution")
            else:
                job.status = "completed"
                job.result = result_data or {}
                job.completed_at = datetime.now(timezone.utc)
                await db.commit()
                logger.info(f"Job {job.id} completed")

        except Exception as e:
            logger.error(f"Job {job.id} failed: {e}")
            logger.error(traceback.format_exc())

            # Retry up to 3 times so a transient DB error doesn't
            # leave the job stuck in "running" forever.
            for attempt in range(3):
                try:
                    async with async_session() as db2:
                        j = await db2.get(Job, job.id)
                        if j and j.status not in ("completed", "cancelled"):
                            j.status = "failed"
                            j.error_message = safe_error_message(e)[:2000]
                            j.completed_at = datetime.now(timezone.utc)
                            await db2.commit()
                    break
                except Exception as db_err:
                    logger.error(
                        f"Failed to mark job {job.id} as failed "
                        f"(attempt {attempt + 1}/3): {db_err}"
                    )
                    if attempt < 2:
                        await asyncio.sleep(1)
        finally:
            _cleanup_cancelled_job(job.id)
    return True


async def worker_loop():
    """Main worker loop. Drains queued jobs, then polls every POLL_INTERVAL seconds."""
    logger.info("Job worker started")
    while True:
        try:
            while await run_next_job():
                pass
        except Exception as e:
            logger.error(f"Worker loop error: {e}")

        await asyncio.sleep(POLL_INTERVAL)


# ── Job Handlers ─────────────────────────────────────────────────

@register_job_handler("delete-folder")
async def handle_delete_folder(job_id, params: dict) -> dict:
    """Recursively delete a folder. Authorization is re-checked against the stored actor."""
    actor_id = params.get("actor_id")
    actor = Actor(id=actor_id) if actor_id else None

    async def report_progress(report: FolderDeleteReport) -> None:
        await update_job_progress(
            job_id,
            report.pages,
            0,
            f"{report.deleted_objects} objects deleted, {report.failed_objects} failed",
        )

    async with async_session() as db:
        engine = FolderEngine(get_object_store(), MetadataStore(db))
        report = await engine.delete_folder_recursive(
            params["prefix"],
            actor,
            progress_callback=report_progress,
            should_cancel=lambda: is_job_cancelled(job_id),
        )
    return report.to_dict()
