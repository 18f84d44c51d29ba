"""Batch deletion of object + thumbnail + metadata triples.

Object-store and metadata deletes run concurrently and are joined with
"wait for all" semantics. A failure on one side never rolls back the
other; each item gets its own outcome instead.
"""
import asyncio
import logging
from dataclasses import dataclass, field

from bucketdrive.services import keys as keyrules
from bucketdrive.services.auth import Actor, can_delete_file, require_actor, resolve_role
from bucketdrive.services.errors import AuthorizationError, ValidationError
from bucketdrive.services.metadata_store import MetadataStore
from bucketdrive.services.object_store import MAX_BATCH_DELETE, BatchDeleteOutcome, ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class DeleteItem:
    key: str
    thumbnail_key: str | None = None


@dataclass
class ItemOutcome:
    key: str
    status: str = "fulfilled"  # or "rejected"
    object_deleted: bool = True
    thumbnail_deleted: bool | None = None
    metadata_deleted: bool = True
    errors: list[str] = field(default_factory=list)

    def reject(self, reason: str) -> None:
        self.status = "rejected"
        self.errors.append(reason)


@dataclass
class BatchDeleteResult:
    items: list[ItemOutcome] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return sum(1 for i in self.items if i.status == "fulfilled")

    @property
    def failed_count(self) -> int:
        return sum(1 for i in self.items if i.status == "rejected")


def _chunks(values: list[str], size: int) -> list[list[str]]:
    return [values[i:i + size] for i in range(0, len(values), size)]


class BatchDeleteCoordinator:
    def __init__(self, store: ObjectStore, metadata: MetadataStore):
        self.store = store
        self.metadata = metadata

    def _normalize(self, items: list[DeleteItem]) -> list[DeleteItem]:
        if not items:
            raise ValidationError("At least one file is required")
        seen: dict[str, DeleteItem] = {}
        for item in items:
            keyrules.validate_key(item.key)
            if item.thumbnail_key is not None and item.thumbnail_key != keyrules.thumbnail_key_for(item.key):
                raise ValidationError(f"Thumbnail key does not belong to '{item.key}'")
            existing = seen.get(item.key)
            if existing is None or (item.thumbnail_key and not existing.thumbnail_key):
                seen[item.key] = item
        return list(seen.values())

    async def authorize(self, actor: Actor | None, items: list[DeleteItem]) -> list[DeleteItem]:
        """Reject the whole request if any item may not be deleted by ``actor``."""
        actor = require_actor(actor)
        items = self._normalize(items)
        records = await self.metadata.get_many([i.key for i in items])
        role = await resolve_role(self.metadata, actor)
        forbidden = [
            i.key for i in items
            if not can_delete_file(actor, records[i.key].user_id if i.key in records else None, role)
        ]
        if forbidden:
            raise AuthorizationError(
                f"Not allowed to delete {len(forbidden)} of {len(items)} file(s): {', '.join(forbidden[:5])}"
            )
        return items

    async def delete_many(self, actor: Actor | None, items: list[DeleteItem]) -> BatchDeleteResult:
        items = await self.authorize(actor, items)

        object_keys = [i.key for i in items] + [i.thumbnail_key for i in items if i.thumbnail_key]
        chunks = _chunks(object_keys, MAX_BATCH_DELETE)
        results = await asyncio.gather(
            *(self.store.delete_batch(chunk) for chunk in chunks),
            self.metadata.delete_by_keys([i.key for i in items]),
            return_exceptions=True,
        )
        store_results, rows_result = results[:-1], results[-1]

        failures: dict[str, str] = {}
        for chunk, outcome in zip(chunks, store_results):
            if isinstance(outcome, BaseException):
                failures.update({k: f"object delete failed: {outcome}" for k in chunk})
            elif isinstance(outcome, BatchDeleteOutcome):
                failures.update(outcome.errors)

        result = BatchDeleteResult()
        for item in items:
            outcome = ItemOutcome(key=item.key)
            if item.key in failures:
                outcome.object_deleted = False
                outcome.reject(failures[item.key])
            if item.thumbnail_key:
                outcome.thumbnail_deleted = item.thumbnail_key not in failures
                if not outcome.thumbnail_deleted:
                    outcome.reject(failures[item.thumbnail_key])
            if isinstance(rows_result, BaseException):
                outcome.metadata_deleted = False
                outcome.reject(f"metadata delete failed: {rows_result}")
            if outcome.status == "rejected":
                logger.warning(f"Partial delete of '{item.key}': {'; '.join(outcome.errors)}")
            result.items.append(outcome)

        logger.info(
            f"Batch delete by {actor.id}: {result.deleted_count} deleted, {result.failed_count} failed"
        )
        return result

    async def delete_one(self, actor: Actor | None, key: str) -> BatchDeleteResult:
        return await self.delete_many(actor, [DeleteItem(key=key, thumbnail_key=keyrules.thumbnail_key_for(key))])
