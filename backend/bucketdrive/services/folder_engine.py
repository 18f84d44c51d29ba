"""Folder emulation over the flat object store.

Directories do not exist in the object store. They are derived from key
prefixes when listing, and made explicit with zero-byte folder markers
(key ending in "/") paired with a metadata row so empty folders still list.
"""
import asyncio
import logging
import mimetypes
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable
from urllib.parse import quote

from bucketdrive.models.file_record import FileRecord, FOLDER_CONTENT_TYPE
from bucketdrive.models.profile import Profile
from bucketdrive.services import keys as keyrules
from bucketdrive.services.auth import Actor, can_delete_folder, require_actor, resolve_role
from bucketdrive.services.errors import (
    AuthorizationError, BackendUnavailableError, ConflictError, ValidationError,
)
from bucketdrive.services.metadata_store import MetadataStore
from bucketdrive.services.object_store import (
    MAX_BATCH_DELETE, ObjectExistsError, ObjectInfo, ObjectStore, ObjectStoreError,
)
from bucketdrive.services.thumbnails import fallback_icon, is_image

logger = logging.getLogger(__name__)

# Each listed file also drags its thumbnail into the delete batch
DELETE_PAGE_SIZE = MAX_BATCH_DELETE // 2
_MAX_REPORTED_ERRORS = 50


@dataclass
class FileView:
    """A file as shown to clients: object-store presence joined with its metadata row."""
    key: str
    name: str
    size: int
    content_type: str
    uploaded_at: datetime | None
    url: str
    thumbnail_url: str
    user_id: str | None = None
    uploader: str | None = None
    blur_data_url: str | None = None
    has_metadata: bool = True


@dataclass
class Listing:
    files: list[FileView] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)


@dataclass
class FolderDeleteReport:
    prefix: str
    pages: int = 0
    deleted_objects: int = 0
    failed_objects: int = 0
    deleted_rows: int = 0
    failed_batches: int = 0
    cancelled: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed_batches == 0 and self.failed_objects == 0

    def record_error(self, message: str) -> None:
        logger.warning(f"Recursive delete of '{self.prefix}': {message}")
        if len(self.errors) < _MAX_REPORTED_ERRORS:
            self.errors.append(message)

    def to_dict(self) -> dict:
        return asdict(self)


def object_url(key: str) -> str:
    return f"/api/objects/{quote(key)}"


def derive_immediate_children(
    prefix: str,
    objects: Iterable[ObjectInfo],
    common_prefixes: Iterable[str] = (),
) -> tuple[list[ObjectInfo], list[str]]:
    """Split recursive prefix-listing results into direct files and child directory names.

    A remainder with no "/" is a direct file. Anything else contributes its
    first segment as a directory, which also covers folder markers
    (``prefix + "name/"``) so they never show up as files. The marker for
    ``prefix`` itself is skipped. Directory names come back sorted.
    """
    files = []
    directories = set()
    for info in objects:
        if not info.key.startswith(prefix):
            continue
        rest = info.key[len(prefix):]
        if not rest:
            continue
        head, sep, _ = rest.partition("/")
        if sep:
            directories.add(head)
        else:
            files.append(info)
    for common in common_prefixes:
        head = common[len(prefix):].split("/", 1)[0]
        if head:
            directories.add(head)
    if prefix == "":
        directories.discard(keyrules.reserved_directory())
    return files, sorted(directories)


def file_view(
    key: str,
    record: FileRecord | None,
    info: ObjectInfo | None = None,
    profiles: dict[str, Profile] | None = None,
) -> FileView:
    """Build the client view, degrading gracefully when the metadata row is missing."""
    if record is not None:
        profile = (profiles or {}).get(record.user_id) if record.user_id else None
        content_type = record.content_type
        view = FileView(
            key=key,
            name=record.name,
            size=record.size if record.size is not None else (info.size if info else 0),
            content_type=content_type,
            uploaded_at=record.uploaded_at,
            url=object_url(key),
            thumbnail_url="",
            user_id=record.user_id,
            uploader=(profile.display_name or profile.email) if profile else None,
            blur_data_url=record.blur_data_url,
        )
    else:
        name = keyrules.leaf_name(key)
        content_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
        view = FileView(
            key=key,
            name=name,
            size=info.size if info else 0,
            content_type=content_type,
            uploaded_at=info.last_modified if info else None,
            url=object_url(key),
            thumbnail_url="",
            has_metadata=False,
        )
    if is_image(content_type, view.name):
        view.thumbnail_url = object_url(keyrules.thumbnail_key_for(key))
    else:
        view.thumbnail_url = fallback_icon(content_type, view.name)
    return view


async def load_profiles(metadata: MetadataStore, records: Iterable[FileRecord]) -> dict[str, Profile]:
    """Uploader lookup is best-effort; a failure only blanks the uploader column."""
    user_ids = sorted({r.user_id for r in records if r.user_id})
    try:
        return await metadata.get_profiles(user_ids)
    except BackendUnavailableError as e:
        logger.error(f"Profile lookup failed, uploaders will show as unknown: {e}")
        return {}


async def reconcile(metadata: MetadataStore, infos: list[ObjectInfo]) -> list[FileView]:
    """Join listed objects with their metadata rows. Objects without a row still list."""
    records = await metadata.get_many([info.key for info in infos])
    profiles = await load_profiles(metadata, records.values())
    views = []
    for info in infos:
        record = records.get(info.key)
        if record is None:
            logger.info(f"Object without metadata row: {info.key}")
        views.append(file_view(info.key, record, info, profiles))
    return views


class FolderEngine:
    """Listing derivation plus folder create/delete across both stores."""

    def __init__(self, store: ObjectStore, metadata: MetadataStore):
        self.store = store
        self.metadata = metadata

    async def list_immediate_children(self, prefix: str) -> Listing:
        """Full (unpaginated) logical view of ``prefix``."""
        keyrules.validate_prefix(prefix)
        infos: list[ObjectInfo] = []
        token = None
        try:
            while True:
                page = await self.store.list_by_prefix(prefix, continuation_token=token)
                infos.extend(page.objects)
                if not page.is_truncated or not page.next_token:
                    break
                token = page.next_token
        except ObjectStoreError as e:
            raise BackendUnavailableError(f"Listing '{prefix}' failed: {e}") from e

        file_infos, directories = derive_immediate_children(prefix, infos)
        files = await reconcile(self.metadata, file_infos)
        return Listing(files=files, directories=directories)

    async def create_folder(self, actor: Actor | None, current_prefix: str, folder_name: str) -> FileRecord:
        """Metadata row first, then the placeholder object; undo the row if the object fails."""
        actor = require_actor(actor)
        keyrules.validate_prefix(current_prefix)
        keyrules.validate_folder_name(folder_name)
        key = keyrules.folder_key(current_prefix, folder_name)

        record = FileRecord(
            key=key,
            name=folder_name,
            size=0,
            content_type=FOLDER_CONTENT_TYPE,
            uploaded_at=datetime.now(timezone.utc),
            user_id=actor.id,
        )
        await self.metadata.insert(record)

        try:
            await self.store.put(key, b"", FOLDER_CONTENT_TYPE)
        except ObjectStoreError as e:
            try:
                await self.metadata.delete_by_key(key)
            except BackendUnavailableError as comp_err:
                logger.error(f"Compensation failed: folder row '{key}' left without marker object: {comp_err}")
            if isinstance(e, ObjectExistsError):
                raise ConflictError(f"Folder '{folder_name}' already exists") from e
            raise BackendUnavailableError(f"Failed to create folder '{folder_name}': {e}") from e

        logger.info(f"Folder created: {key} by {actor.id}")
        return record

    async def authorize_folder_delete(self, actor: Actor | None, prefix: str) -> None:
        """Validation and role check for recursive delete, with no side effects."""
        actor = require_actor(actor)
        if not prefix:
            raise ValidationError("Refusing to delete the bucket root")
        keyrules.validate_prefix(prefix)
        role = await resolve_role(self.metadata, actor)
        if not can_delete_folder(actor, role):
            raise AuthorizationError("Deleting folders requires an elevated role")

    async def delete_folder_recursive(
        self,
        prefix: str,
        actor: Actor | None,
        progress_callback: Callable[[FolderDeleteReport], Awaitable[None]] | None = None,
        should_cancel: Callable[[], Awaitable[bool]] | None = None,
    ) -> FolderDeleteReport:
        """Delete every object and metadata row under ``prefix``, page by page.

        Per page the batch object delete and the metadata delete run
        concurrently and both run to completion. Failures are accumulated in
        the report; they never stop the loop.
        """
        await self.authorize_folder_delete(actor, prefix)
        report = FolderDeleteReport(prefix=prefix)
        token = None

        while True:
            if should_cancel is not None and await should_cancel():
                report.cancelled = True
                logger.info(f"Recursive delete of '{prefix}' cancelled after {report.pages} page(s)")
                break

            try:
                page = await self.store.list_by_prefix(
                    prefix, continuation_token=token, max_keys=DELETE_PAGE_SIZE
                )
            except ObjectStoreError as e:
                # Without a listing there is no next token to continue from
                report.failed_batches += 1
                report.record_error(f"listing failed: {e}")
                break

            report.pages += 1
            listed = [o.key for o in page.objects]
            object_keys = list(listed)
            for key in listed:
                if not key.endswith("/"):
                    object_keys.append(keyrules.thumbnail_key_for(key))

            if listed:
                await self._delete_page(report, object_keys, listed)
            if progress_callback is not None:
                await progress_callback(report)

            if not page.is_truncated or not page.next_token:
                break
            token = page.next_token

        if report.failed_batches == 0 and not report.cancelled:
            # Rows whose objects were already gone (dangling metadata)
            try:
                report.deleted_rows += await self.metadata.delete_by_prefix(prefix)
            except BackendUnavailableError as e:
                report.record_error(f"metadata sweep failed: {e}")

        logger.info(
            f"Recursive delete of '{prefix}' finished: {report.deleted_objects} objects, "
            f"{report.deleted_rows} rows, {report.failed_objects} failed objects, "
            f"{report.failed_batches} failed batches"
        )
        return report

    async def _delete_page(self, report: FolderDeleteReport, object_keys: list[str], row_keys: list[str]) -> None:
        store_result, rows_result = await asyncio.gather(
            self.store.delete_batch(object_keys),
            self.metadata.delete_by_keys(row_keys),
            return_exceptions=True,
        )

        if isinstance(store_result, BaseException):
            report.failed_batches += 1
            report.failed_objects += len(object_keys)
            report.record_error(f"object batch delete failed: {store_result}")
        else:
            report.deleted_objects += len(store_result.deleted)
            if store_result.errors:
                report.failed_objects += len(store_result.errors)
                for key, reason in store_result.errors.items():
                    report.record_error(f"{key}: {reason}")

        if isinstance(rows_result, BaseException):
            report.failed_batches += 1
            report.record_error(f"metadata batch delete failed: {rows_result}")
        else:
            report.deleted_rows += rows_result
