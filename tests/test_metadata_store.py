from datetime import datetime, timedelta, timezone

import pytest

from bucketdrive.models import FileRecord, FOLDER_CONTENT_TYPE
from bucketdrive.services.errors import ConflictError

from conftest import ADMIN, ALICE, row_keys


def _record(key, days=0, content_type="text/plain", user_id=ALICE):
    return FileRecord(
        key=key,
        name=key.rstrip("/").rsplit("/", 1)[-1],
        size=1,
        content_type=content_type,
        uploaded_at=datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(days=days),
        user_id=user_id,
    )


async def test_duplicate_key_is_a_conflict(fresh_metadata):
    await fresh_metadata().insert(_record("a.txt"))
    with pytest.raises(ConflictError):
        await fresh_metadata().insert(_record("a.txt"))


async def test_query_by_prefix_returns_direct_children_newest_first(metadata):
    for i, key in enumerate(["docs/a.txt", "docs/b.txt", "docs/sub/", "docs/sub/c.txt", "other/d.txt"]):
        await metadata.insert(_record(key, days=i, content_type=FOLDER_CONTENT_TYPE if key.endswith("/") else "text/plain"))

    page = await metadata.query_by_prefix("docs/", limit=10)
    assert [r.key for r in page.records] == ["docs/b.txt", "docs/a.txt"]
    assert page.total_count == 2

    limited = await metadata.query_by_prefix("docs/", limit=1, offset=1)
    assert [r.key for r in limited.records] == ["docs/a.txt"]
    assert limited.total_count == 2


async def test_delete_by_prefix_treats_wildcards_literally(metadata, session_factory):
    for key in ["a_b/x.txt", "aXb/y.txt", "a_b/deep/z.txt"]:
        await metadata.insert(_record(key))

    removed = await metadata.delete_by_prefix("a_b/")
    assert removed == 2
    assert await row_keys(session_factory) == ["aXb/y.txt"]


async def test_delete_by_keys_counts_only_existing_rows(metadata):
    await metadata.insert(_record("a.txt"))
    assert await metadata.delete_by_keys(["a.txt", "missing.txt"]) == 1
    assert await metadata.delete_by_keys([]) == 0


async def test_profiles(metadata):
    admin = await metadata.get_profile(ADMIN)
    assert admin.role == "admin"
    assert await metadata.get_profile("nobody") is None
    profiles = await metadata.get_profiles([ALICE, "nobody"])
    assert list(profiles) == [ALICE]
