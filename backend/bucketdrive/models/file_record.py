"""FileRecord model - object metadata (actual bytes live in the object store).

Folder markers are FileRecords too: content_type ``application/x-directory``,
size 0 and a key ending in ``/``.
"""
from datetime import datetime
from sqlalchemy import String, BigInteger, DateTime, Text, Index, func
from sqlalchemy.orm import Mapped, mapped_column
from bucketdrive.models.base import Base, UserMixin

FOLDER_CONTENT_TYPE = "application/x-directory"


class FileRecord(Base, UserMixin):
    __tablename__ = "files"

    key: Mapped[str] = mapped_column(String(1024), primary_key=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, default=0)
    content_type: Mapped[str] = mapped_column(String(255), default="application/octet-stream")
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    blur_data_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_files_uploaded_at", "uploaded_at"),
    )

    @property
    def is_folder(self) -> bool:
        return self.content_type == FOLDER_CONTENT_TYPE and self.key.endswith("/")
