"""Jobs API - list, check status, cancel background jobs."""
from uuid import UUID
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime, timezone

from bucketdrive.database import get_db
from bucketdrive.models.job import Job
from bucketdrive.schemas.job import JobResponse
from bucketdrive.services.auth import Actor, get_actor, is_elevated, require_actor, resolve_role
from bucketdrive.services.errors import NotFoundError, ValidationError
from bucketdrive.services.metadata_store import MetadataStore

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


async def _visible_job(db: AsyncSession, actor: Optional[Actor], job_id: UUID) -> Job:
    """Jobs are visible to the actor who queued them and to elevated actors."""
    actor = require_actor(actor)
    job = await db.get(Job, job_id)
    if job is None:
        raise NotFoundError("Job not found")
    if job.user_id != actor.id and not is_elevated(await resolve_role(MetadataStore(db), actor)):
        raise NotFoundError("Job not found")
    return job


@router.get("", response_model=list[JobResponse])
async def list_jobs(
    status: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    actor: Optional[Actor] = Depends(get_actor),
):
    """List the caller's jobs, optionally filtered by status."""
    actor = require_actor(actor)
    query = select(Job).order_by(desc(Job.created_at)).limit(limit).offset(offset)
    if not is_elevated(await resolve_role(MetadataStore(db), actor)):
        query = query.where(Job.user_id == actor.id)
    if status:
        query = query.where(Job.status == status)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Optional[Actor] = Depends(get_actor),
):
    """Get job status, progress and (when finished) the delete report."""
    return await _visible_job(db, actor, job_id)


@router.post("/{job_id}/cancel")
async def cancel_job(
    job_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Optional[Actor] = Depends(get_actor),
):
    """Cancel a queued or running job. Pages already deleted stay deleted."""
    job = await _visible_job(db, actor, job_id)
    if job.status in ("completed", "failed"):
        raise ValidationError(f"Cannot cancel job in '{job.status}' state")
    if job.status != "cancelled":
        job.status = "cancelled"
        job.completed_at = datetime.now(timezone.utc)
        await db.commit()
    from bucketdrive.services.job_worker import mark_job_cancelled
    mark_job_cancelled(job_id)
    return {"id": str(job_id), "status": "cancelled"}
