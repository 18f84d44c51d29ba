import pytest

from bucketdrive.services.auth import Actor
from bucketdrive.services.batch_delete import BatchDeleteCoordinator, DeleteItem
from bucketdrive.services.errors import AuthorizationError, ValidationError
from bucketdrive.services.object_store import LocalObjectStore, ObjectStoreError

from conftest import ADMIN, ALICE, BOB, object_keys, row_keys, seed_file


class OneBadKeyStore(LocalObjectStore):
    """Batch delete that fails for a single chosen key."""

    bad_key = "b.txt"

    async def delete_batch(self, keys):
        outcome = await super().delete_batch([k for k in keys if k != self.bad_key])
        if self.bad_key in keys:
            outcome.errors[self.bad_key] = "AccessDenied: simulated"
        return outcome


class DownStore(LocalObjectStore):
    async def delete_batch(self, keys):
        raise ObjectStoreError("bucket unreachable")


def _items(*keys):
    return [DeleteItem(key=k, thumbnail_key=f"thumbnails/{k}") for k in keys]


async def test_owner_deletes_object_thumbnail_and_row(store, metadata, session_factory):
    await seed_file(store, metadata, "pic.png", user_id=ALICE, content_type="image/png")
    await store.put("thumbnails/pic.png", b"t", "image/png")
    await seed_file(store, metadata, "keep.txt", user_id=ALICE)

    result = await BatchDeleteCoordinator(store, metadata).delete_many(Actor(ALICE), _items("pic.png"))

    assert result.deleted_count == 1
    assert result.failed_count == 0
    assert result.items[0].thumbnail_deleted is True
    assert await object_keys(store) == ["keep.txt"]
    assert await row_keys(session_factory) == ["keep.txt"]


async def test_one_failing_item_does_not_abort_the_others(tmp_path, metadata, session_factory):
    store = OneBadKeyStore(tmp_path / "objects")
    for key in ["a.txt", "b.txt", "c.txt"]:
        await seed_file(store, metadata, key, user_id=ALICE)

    result = await BatchDeleteCoordinator(store, metadata).delete_many(
        Actor(ALICE), _items("a.txt", "b.txt", "c.txt")
    )

    outcomes = {i.key: i for i in result.items}
    assert result.deleted_count == 2
    assert result.failed_count == 1
    assert outcomes["b.txt"].status == "rejected"
    assert outcomes["b.txt"].object_deleted is False
    assert "AccessDenied" in outcomes["b.txt"].errors[0]
    assert outcomes["a.txt"].status == outcomes["c.txt"].status == "fulfilled"
    assert await object_keys(store) == ["b.txt"]
    # Metadata delete ran independently of the object-store outcome
    assert await row_keys(session_factory) == []


async def test_store_outage_reported_per_item(tmp_path, metadata, session_factory):
    store = DownStore(tmp_path / "objects")
    await seed_file(store, metadata, "a.txt", user_id=ALICE)

    result = await BatchDeleteCoordinator(store, metadata).delete_many(Actor(ALICE), _items("a.txt"))

    assert result.failed_count == 1
    item = result.items[0]
    assert item.object_deleted is False
    assert item.thumbnail_deleted is False
    assert item.metadata_deleted is True
    assert await object_keys(store) == ["a.txt"]


async def test_non_owner_is_rejected_before_any_delete(store, metadata):
    await seed_file(store, metadata, "alice.txt", user_id=ALICE)
    await seed_file(store, metadata, "bob.txt", user_id=BOB)

    with pytest.raises(AuthorizationError) as exc:
        await BatchDeleteCoordinator(store, metadata).delete_many(
            Actor(BOB), _items("bob.txt", "alice.txt")
        )
    assert exc.value.status_code == 403
    assert await object_keys(store) == ["alice.txt", "bob.txt"]


async def test_elevated_actor_deletes_any_file(store, metadata):
    await seed_file(store, metadata, "alice.txt", user_id=ALICE)
    await seed_file(store, metadata, "legacy.txt", user_id=None)

    result = await BatchDeleteCoordinator(store, metadata).delete_many(
        Actor(ADMIN), _items("alice.txt", "legacy.txt")
    )
    assert result.deleted_count == 2
    assert await object_keys(store) == []


async def test_unowned_rows_need_elevated_role(store, metadata):
    await seed_file(store, metadata, "legacy.txt", user_id=None)
    await seed_file(store, metadata, "orphan.txt", with_row=False)

    with pytest.raises(AuthorizationError):
        await BatchDeleteCoordinator(store, metadata).delete_many(Actor(ALICE), _items("legacy.txt"))
    with pytest.raises(AuthorizationError):
        await BatchDeleteCoordinator(store, metadata).delete_many(Actor(ALICE), _items("orphan.txt"))


async def test_anonymous_rejected(store, metadata):
    await seed_file(store, metadata, "a.txt")
    with pytest.raises(AuthorizationError) as exc:
        await BatchDeleteCoordinator(store, metadata).delete_many(None, _items("a.txt"))
    assert exc.value.status_code == 401


@pytest.mark.parametrize("items", [
    [],
    [DeleteItem(key="a.txt", thumbnail_key="thumbnails/other.txt")],
    [DeleteItem(key="thumbnails/a.txt")],
    [DeleteItem(key="docs/")],
    [DeleteItem(key="../a.txt")],
])
async def test_malformed_batches_rejected(store, metadata, items):
    with pytest.raises(ValidationError):
        await BatchDeleteCoordinator(store, metadata).delete_many(Actor(ADMIN), items)


async def test_duplicate_items_collapse(store, metadata):
    await seed_file(store, metadata, "a.txt", user_id=ALICE)
    result = await BatchDeleteCoordinator(store, metadata).delete_many(
        Actor(ALICE), [DeleteItem(key="a.txt"), DeleteItem(key="a.txt", thumbnail_key="thumbnails/a.txt")]
    )
    assert len(result.items) == 1
    assert result.items[0].thumbnail_deleted is True


async def test_delete_one_includes_thumbnail(store, metadata):
    await seed_file(store, metadata, "pic.png", user_id=ALICE, content_type="image/png")
    await store.put("thumbnails/pic.png", b"t", "image/png")

    result = await BatchDeleteCoordinator(store, metadata).delete_one(Actor(ALICE), "pic.png")
    assert result.deleted_count == 1
    assert await object_keys(store) == []
