"""Folder request/response schemas."""
import uuid
from typing import Optional
from bucketdrive.schemas.base import CamelModel, CamelORMModel


class FolderCreate(CamelModel):
    folder_name: str
    current_prefix: str = ""


class FolderResponse(CamelModel):
    ok: bool = True
    key: str
    message: str


class FolderDelete(CamelModel):
    prefix: str


class FolderDeleteReportResponse(CamelORMModel):
    prefix: str
    pages: int
    deleted_objects: int
    failed_objects: int
    deleted_rows: int
    failed_batches: int
    cancelled: bool = False
    errors: list[str] = []


class FolderDeleteResponse(CamelModel):
    ok: bool = True
    message: str
    report: Optional[FolderDeleteReportResponse] = None
    job_id: Optional[uuid.UUID] = None
