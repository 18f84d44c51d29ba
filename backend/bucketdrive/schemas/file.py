"""File listing, upload and delete schemas."""
from typing import Optional
from datetime import datetime
from bucketdrive.schemas.base import CamelModel, CamelORMModel


class FileEntry(CamelORMModel):
    key: str
    name: str
    size: int
    content_type: str
    uploaded_at: Optional[datetime] = None
    url: str
    thumbnail_url: str
    user_id: Optional[str] = None
    uploader: Optional[str] = None
    blur_data_url: Optional[str] = None
    has_metadata: bool = True


class ListingResponse(CamelORMModel):
    files: list[FileEntry]
    directories: list[str]
    next_token: Optional[str] = None
    is_truncated: bool
    total_count: Optional[int] = None
    total_pages: Optional[int] = None
    current_page: int = 1


class DeleteFileItem(CamelModel):
    key: str
    thumbnail_key: Optional[str] = None


class DeleteFilesRequest(CamelModel):
    items: list[DeleteFileItem]


class ItemOutcomeResponse(CamelORMModel):
    key: str
    status: str
    object_deleted: bool
    thumbnail_deleted: Optional[bool] = None
    metadata_deleted: bool
    errors: list[str] = []


class BatchDeleteResponse(CamelModel):
    ok: bool = True
    deleted_count: int
    failed_count: int
    items: list[ItemOutcomeResponse]
