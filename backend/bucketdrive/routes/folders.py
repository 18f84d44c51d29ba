"""Folders API - create folder markers and delete folders recursively."""
from typing import Optional
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from bucketdrive.database import get_db
from bucketdrive.models.job import Job
from bucketdrive.schemas.folder import FolderCreate, FolderDelete, FolderDeleteResponse, FolderResponse
from bucketdrive.services.auth import Actor, get_actor
from bucketdrive.services.folder_engine import FolderEngine
from bucketdrive.services.metadata_store import MetadataStore
from bucketdrive.services.object_store import ObjectStore, get_object_store

router = APIRouter(prefix="/api/folders", tags=["folders"])


@router.post("", response_model=FolderResponse, status_code=201)
async def create_folder(
    body: FolderCreate,
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    actor: Optional[Actor] = Depends(get_actor),
):
    """Create an empty folder under currentPrefix."""
    engine = FolderEngine(store, MetadataStore(db))
    record = await engine.create_folder(actor, body.current_prefix, body.folder_name)
    return {"ok": True, "key": record.key, "message": "Folder created successfully"}


@router.delete("", response_model=FolderDeleteResponse)
async def delete_folder(
    body: FolderDelete,
    background: bool = Query(False, description="Queue the delete as a job and return immediately"),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    actor: Optional[Actor] = Depends(get_actor),
):
    """Delete every object and metadata row under a prefix. Elevated role only."""
    engine = FolderEngine(store, MetadataStore(db))

    if background:
        await engine.authorize_folder_delete(actor, body.prefix)
        job = Job(
            job_type="delete-folder",
            params={"prefix": body.prefix, "actor_id": actor.id},
            user_id=actor.id,
        )
        db.add(job)
        await db.commit()
        await db.refresh(job)
        payload = FolderDeleteResponse(
            ok=True, message=f"Deletion of '{body.prefix}' queued", job_id=job.id,
        )
        return JSONResponse(status_code=202, content=payload.model_dump(mode="json", by_alias=True))

    report = await engine.delete_folder_recursive(body.prefix, actor)
    if report.ok:
        message = f"Folder '{body.prefix}' deleted"
    else:
        message = (
            f"Folder '{body.prefix}' partially deleted: "
            f"{report.failed_objects} object(s) and {report.failed_batches} batch(es) failed"
        )
    return {"ok": report.ok, "message": message, "report": report}
