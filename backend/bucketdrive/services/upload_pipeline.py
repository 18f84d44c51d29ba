"""Upload pipeline: key derivation, dual write and compensation.

Order of writes: primary object, then its thumbnail, then the
metadata row. Nothing is retried automatically. When a later step fails,
whatever the earlier steps wrote is deleted before the error is raised.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from bucketdrive.config import settings
from bucketdrive.models.file_record import FileRecord
from bucketdrive.services import keys as keyrules
from bucketdrive.services.auth import Actor, require_actor
from bucketdrive.services.errors import BackendUnavailableError, ConflictError, ValidationError
from bucketdrive.services.folder_engine import FileView, file_view
from bucketdrive.services.metadata_store import MetadataStore
from bucketdrive.services.object_store import ObjectExistsError, ObjectStore, ObjectStoreError
from bucketdrive.services.thumbnails import Thumbnail, derive_thumbnail, fallback_icon

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    record: FileRecord
    view: FileView
    thumbnail_key: str | None


class UploadPipeline:
    def __init__(self, store: ObjectStore, metadata: MetadataStore):
        self.store = store
        self.metadata = metadata

    async def _compensate(self, keys: list[str], reason: str) -> None:
        """Best-effort removal of objects written before a failed step."""
        if not keys:
            return
        try:
            outcome = await self.store.delete_batch(keys)
        except ObjectStoreError as e:
            logger.error(f"Dangling object(s) {keys} after {reason}; compensation failed: {e}")
            return
        for key, err in outcome.errors.items():
            logger.error(f"Dangling object {key} after {reason}; compensation failed: {err}")

    async def upload(
        self,
        actor: Actor | None,
        data: bytes,
        file_name: str,
        content_type: str | None,
        target_prefix: str = "",
    ) -> UploadResult:
        actor = require_actor(actor)
        keyrules.validate_prefix(target_prefix)
        if not file_name or not file_name.strip():
            raise ValidationError("A file name is required")
        if len(data) > settings.MAX_UPLOAD_BYTES:
            raise ValidationError(f"File exceeds the {settings.MAX_UPLOAD_BYTES} byte upload limit")
        content_type = content_type or "application/octet-stream"

        key, name = keyrules.derive_object_key(target_prefix, file_name)

        # Codec failures never abort the upload
        thumbnail: Thumbnail | None = await derive_thumbnail(data, content_type, settings.THUMBNAIL_SIZE)

        try:
            await self.store.put(key, data, content_type)
        except ObjectExistsError as e:
            raise ConflictError(f"An object already exists at '{key}'") from e
        except ObjectStoreError as e:
            raise BackendUnavailableError(f"Failed to store '{file_name}': {e}") from e

        # The preview is written only once the primary key is ours; an existing
        # thumbnail at the same key belongs to another upload and is left alone
        thumb_key = None
        if thumbnail:
            candidate = keyrules.thumbnail_key_for(key)
            try:
                await self.store.put(candidate, thumbnail.data, thumbnail.content_type)
                thumb_key = candidate
            except ObjectStoreError as e:
                logger.warning(f"Thumbnail write failed for {key}, continuing without preview: {e}")

        record = FileRecord(
            key=key,
            name=name,
            size=len(data),
            content_type=content_type,
            uploaded_at=datetime.now(timezone.utc),
            user_id=actor.id,
            blur_data_url=thumbnail.blur_data_url if thumb_key else None,
        )
        try:
            await self.metadata.insert(record)
        except (BackendUnavailableError, ConflictError):
            written = [key] + ([thumb_key] if thumb_key else [])
            logger.error(f"Metadata write failed for {key}; removing stored object(s)")
            await self._compensate(written, "failed metadata write")
            raise

        logger.info(f"Uploaded {key} ({len(data)} bytes) by {actor.id}")
        view = file_view(key, record)
        if thumb_key is None:
            view.thumbnail_url = fallback_icon(content_type, name)
        return UploadResult(record=record, view=view, thumbnail_key=thumb_key)
