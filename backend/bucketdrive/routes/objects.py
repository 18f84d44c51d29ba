"""Object download route (originals and thumbnails)."""
from fastapi import APIRouter, Depends
from fastapi.responses import Response

from bucketdrive.services import keys as keyrules
from bucketdrive.services.errors import BackendUnavailableError, NotFoundError
from bucketdrive.services.object_store import (
    ObjectNotFoundError, ObjectStore, ObjectStoreError, get_object_store,
)

router = APIRouter(prefix="/api/objects", tags=["objects"])


@router.get("/{key:path}")
async def get_object(
    key: str,
    store: ObjectStore = Depends(get_object_store),
):
    """Stream an object's bytes with its stored content type."""
    keyrules.validate_key(key, allow_reserved=True)
    try:
        obj = await store.get(key)
    except ObjectNotFoundError as e:
        raise NotFoundError(f"Object not found: {key}") from e
    except ObjectStoreError as e:
        raise BackendUnavailableError(f"Failed to fetch '{key}': {e}") from e

    return Response(
        content=obj.data,
        media_type=obj.content_type or "application/octet-stream",
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )
