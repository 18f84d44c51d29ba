"""Metadata store - the relational side of every object.

Wraps an AsyncSession over the ``files`` and ``profiles`` tables. Every
write commits immediately: there is no transaction spanning the object
store, so callers sequence and compensate writes themselves.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import select, delete, func, desc
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bucketdrive.models.file_record import FileRecord, FOLDER_CONTENT_TYPE
from bucketdrive.models.profile import Profile
from bucketdrive.services.errors import BackendUnavailableError, ConflictError

logger = logging.getLogger(__name__)


@dataclass
class RecordPage:
    records: list[FileRecord]
    total_count: int


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class MetadataStore:
    """Capability wrapper over the files/profiles tables."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _rollback(self) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Rollback failed: {e}")

    async def insert(self, record: FileRecord) -> FileRecord:
        self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self._rollback()
            raise ConflictError(f"'{record.key}' already exists") from e
        except SQLAlchemyError as e:
            await self._rollback()
            raise BackendUnavailableError(f"Metadata insert failed for '{record.key}': {e}") from e
        return record

    async def get(self, key: str) -> FileRecord | None:
        try:
            return await self.db.get(FileRecord, key)
        except SQLAlchemyError as e:
            raise BackendUnavailableError(f"Metadata lookup failed for '{key}': {e}") from e

    async def get_many(self, keys: list[str]) -> dict[str, FileRecord]:
        if not keys:
            return {}
        try:
            result = await self.db.execute(select(FileRecord).where(FileRecord.key.in_(keys)))
        except SQLAlchemyError as e:
            raise BackendUnavailableError(f"Metadata lookup failed: {e}") from e
        return {r.key: r for r in result.scalars().all()}

    async def delete_by_key(self, key: str) -> int:
        return await self.delete_by_keys([key])

    async def delete_by_keys(self, keys: list[str]) -> int:
        """Delete rows for ``keys`` in one ``IN (...)`` statement. Returns rows removed."""
        if not keys:
            return 0
        try:
            result = await self.db.execute(delete(FileRecord).where(FileRecord.key.in_(keys)))
            await self.db.commit()
        except SQLAlchemyError as e:
            await self._rollback()
            raise BackendUnavailableError(f"Metadata delete failed: {e}") from e
        return result.rowcount or 0

    async def delete_by_prefix(self, prefix: str) -> int:
        """Remove every row under ``prefix`` (rows whose objects are already gone)."""
        try:
            result = await self.db.execute(
                delete(FileRecord)
                .where(FileRecord.key.startswith(prefix, autoescape=True))
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self._rollback()
            raise BackendUnavailableError(f"Metadata delete failed under '{prefix}': {e}") from e
        return result.rowcount or 0

    async def query_by_prefix(self, prefix: str, limit: int, offset: int = 0) -> RecordPage:
        """Direct children of ``prefix`` (no further '/'), newest first."""
        conditions = [
            FileRecord.key.startswith(prefix, autoescape=True),
            FileRecord.key.not_like(f"{_escape_like(prefix)}%/%", escape="\\"),
        ]
        return await self._page(conditions, limit, offset)

    async def query_by_search(
        self, term: str, prefix: str | None, limit: int, offset: int = 0
    ) -> RecordPage:
        """Case-insensitive name search, scoped to ``prefix`` (recursive) or global when None."""
        conditions = [
            FileRecord.name.ilike(f"%{_escape_like(term)}%", escape="\\"),
            FileRecord.content_type != FOLDER_CONTENT_TYPE,
        ]
        if prefix:
            conditions.append(FileRecord.key.startswith(prefix, autoescape=True))
        return await self._page(conditions, limit, offset)

    async def _page(self, conditions: list, limit: int, offset: int) -> RecordPage:
        try:
            total = await self.db.scalar(select(func.count()).select_from(FileRecord).where(*conditions))
            result = await self.db.execute(
                select(FileRecord)
                .where(*conditions)
                .order_by(desc(FileRecord.uploaded_at), FileRecord.key)
                .limit(limit)
                .offset(offset)
            )
        except SQLAlchemyError as e:
            raise BackendUnavailableError(f"Metadata query failed: {e}") from e
        return RecordPage(records=list(result.scalars().all()), total_count=total or 0)

    async def get_profile(self, user_id: str) -> Profile | None:
        try:
            return await self.db.get(Profile, user_id)
        except SQLAlchemyError as e:
            raise BackendUnavailableError(f"Profile lookup failed: {e}") from e

    async def get_profiles(self, user_ids: list[str]) -> dict[str, Profile]:
        if not user_ids:
            return {}
        try:
            result = await self.db.execute(select(Profile).where(Profile.id.in_(user_ids)))
        except SQLAlchemyError as e:
            raise BackendUnavailableError(f"Profile lookup failed: {e}") from e
        return {p.id: p for p in result.scalars().all()}
