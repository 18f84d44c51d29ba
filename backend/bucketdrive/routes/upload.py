"""Upload route."""
from typing import Optional
from fastapi import APIRouter, Depends, Form, UploadFile, File as FastAPIFile
from sqlalchemy.ext.asyncio import AsyncSession

from bucketdrive.config import settings
from bucketdrive.database import get_db
from bucketdrive.schemas.file import FileEntry
from bucketdrive.services.auth import Actor, get_actor
from bucketdrive.services.errors import ValidationError
from bucketdrive.services.metadata_store import MetadataStore
from bucketdrive.services.object_store import ObjectStore, get_object_store
from bucketdrive.services.upload_pipeline import UploadPipeline

router = APIRouter(prefix="/api/upload", tags=["upload"])


@router.post("", response_model=FileEntry, status_code=201)
async def upload_file(
    file: UploadFile = FastAPIFile(...),
    target_prefix: str = Form("", alias="targetPrefix"),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    actor: Optional[Actor] = Depends(get_actor),
):
    """Store a file, its thumbnail and its metadata row."""
    if file.size is not None and file.size > settings.MAX_UPLOAD_BYTES:
        raise ValidationError(f"File exceeds the {settings.MAX_UPLOAD_BYTES} byte upload limit")
    # One byte past the limit is enough for the pipeline to reject it
    contents = await file.read(settings.MAX_UPLOAD_BYTES + 1)
    pipeline = UploadPipeline(store, MetadataStore(db))
    result = await pipeline.upload(
        actor,
        contents,
        file.filename or "unnamed",
        file.content_type,
        target_prefix,
    )
    return result.view
