"""Files API routes: paged listing and deletion."""
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from bucketdrive.database import get_db
from bucketdrive.schemas.file import BatchDeleteResponse, DeleteFilesRequest, ListingResponse
from bucketdrive.services.auth import Actor, get_actor
from bucketdrive.services.batch_delete import BatchDeleteCoordinator, BatchDeleteResult, DeleteItem
from bucketdrive.services.metadata_store import MetadataStore
from bucketdrive.services.object_store import ObjectStore, get_object_store
from bucketdrive.services.paginator import ListingPaginator

router = APIRouter(prefix="/api/files", tags=["files"])


@router.get("", response_model=ListingResponse)
async def list_files(
    prefix: str = Query("", description="Folder prefix, '' for root or ending in '/'"),
    page_size: Optional[int] = Query(None, alias="pageSize", ge=1),
    page_token: Optional[str] = Query(None, alias="pageToken"),
    page: int = Query(1, ge=1, description="Page number (search mode only)"),
    search: str = Query("", description="Name filter; switches to metadata pagination"),
    scope: str = Query("current", description="'current' prefix or 'global'"),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
):
    """List one page of files and sub-folders under a prefix."""
    paginator = ListingPaginator(store, MetadataStore(db))
    return await paginator.page(
        prefix=prefix,
        page_size=page_size,
        page_token=page_token,
        page_number=page,
        search_term=search,
        search_scope=scope,
    )


@router.delete("", response_model=BatchDeleteResponse)
async def delete_files(
    body: DeleteFilesRequest,
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    actor: Optional[Actor] = Depends(get_actor),
):
    """Delete several files (object, thumbnail and metadata row each)."""
    coordinator = BatchDeleteCoordinator(store, MetadataStore(db))
    result = await coordinator.delete_many(
        actor, [DeleteItem(key=i.key, thumbnail_key=i.thumbnail_key) for i in body.items]
    )
    return _to_response(result)


@router.delete("/{key:path}", response_model=BatchDeleteResponse)
async def delete_file(
    key: str,
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_object_store),
    actor: Optional[Actor] = Depends(get_actor),
):
    """Delete a single file and its thumbnail. Owner or elevated role only."""
    coordinator = BatchDeleteCoordinator(store, MetadataStore(db))
    return _to_response(await coordinator.delete_one(actor, key))


def _to_response(result: BatchDeleteResult) -> dict:
    return {
        "ok": result.failed_count == 0,
        "deleted_count": result.deleted_count,
        "failed_count": result.failed_count,
        "items": result.items,
    }
