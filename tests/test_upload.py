import re
from io import BytesIO

import pytest
from PIL import Image

from bucketdrive.config import settings
from bucketdrive.services import keys as keyrules
from bucketdrive.services.auth import Actor
from bucketdrive.services.errors import (
    AuthorizationError, BackendUnavailableError, ConflictError, ValidationError,
)
from bucketdrive.services.folder_engine import FolderEngine
from bucketdrive.services.metadata_store import MetadataStore
from bucketdrive.services.object_store import LocalObjectStore, ObjectStoreError
from bucketdrive.services.thumbnails import derive_thumbnail
from bucketdrive.services.upload_pipeline import UploadPipeline

from conftest import ALICE, object_keys, row_keys


def _image(mode="RGB", size=(400, 300), fmt="PNG") -> bytes:
    buf = BytesIO()
    color = (200, 30, 30, 128) if mode == "RGBA" else (200, 30, 30)
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


class BrokenMetadata(MetadataStore):
    async def insert(self, record):
        raise BackendUnavailableError("database is down")


class PrimaryWriteFails(LocalObjectStore):
    async def put(self, key, data, content_type=None, overwrite=False):
        if not keyrules.is_reserved(key):
            raise ObjectStoreError("bucket unreachable")
        await super().put(key, data, content_type, overwrite)


class ThumbnailWriteFails(LocalObjectStore):
    async def put(self, key, data, content_type=None, overwrite=False):
        if keyrules.is_reserved(key):
            raise ObjectStoreError("bucket unreachable")
        await super().put(key, data, content_type, overwrite)


async def test_folder_then_upload_into_it(store, fresh_metadata):
    await FolderEngine(store, fresh_metadata()).create_folder(Actor(ALICE), "", "photos")
    root = await FolderEngine(store, fresh_metadata()).list_immediate_children("")
    assert root.directories == ["photos"]

    data = b"\x89PNG" + b"\x00" * 2044
    result = await UploadPipeline(store, fresh_metadata()).upload(
        Actor(ALICE), data, "a.png", "image/png", "photos/"
    )

    listing = await FolderEngine(store, fresh_metadata()).list_immediate_children("photos/")
    assert len(listing.files) == 1
    entry = listing.files[0]
    assert re.fullmatch(r"photos/a-[A-Za-z0-9]{6}\.png", entry.key)
    assert entry.key == result.record.key
    assert entry.size == 2048
    assert entry.user_id == ALICE
    # Bytes are not a decodable image, so no preview was stored
    assert result.thumbnail_key is None
    assert result.record.blur_data_url is None
    assert result.view.thumbnail_url == "/file.svg"


async def test_image_upload_stores_thumbnail_and_blur(store, metadata):
    result = await UploadPipeline(store, metadata).upload(
        Actor(ALICE), _image(), "cat.png", "image/png"
    )

    assert result.thumbnail_key == f"thumbnails/{result.record.key}"
    thumb = await store.get(result.thumbnail_key)
    assert thumb.content_type == "image/jpeg"
    with Image.open(BytesIO(thumb.data)) as img:
        assert img.size == (settings.THUMBNAIL_SIZE, settings.THUMBNAIL_SIZE)
    assert result.record.blur_data_url.startswith("data:image/png;base64,")
    assert result.view.thumbnail_url == f"/api/objects/thumbnails/{result.record.key}"


async def test_transparent_image_thumbnail_stays_png(store, metadata):
    result = await UploadPipeline(store, metadata).upload(
        Actor(ALICE), _image(mode="RGBA"), "logo.png", "image/png"
    )
    assert (await store.get(result.thumbnail_key)).content_type == "image/png"


async def test_same_name_twice_gives_distinct_keys(store, fresh_metadata):
    first = await UploadPipeline(store, fresh_metadata()).upload(Actor(ALICE), b"one", "notes.txt", "text/plain")
    second = await UploadPipeline(store, fresh_metadata()).upload(Actor(ALICE), b"two", "notes.txt", "text/plain")

    assert first.record.key != second.record.key
    assert (await store.get(first.record.key)).data == b"one"
    assert (await store.get(second.record.key)).data == b"two"
    listing = await FolderEngine(store, fresh_metadata()).list_immediate_children("")
    assert {f.key for f in listing.files} == {first.record.key, second.record.key}


async def test_key_collision_is_a_conflict(store, fresh_metadata, monkeypatch):
    monkeypatch.setattr(keyrules, "random_suffix", lambda length=6: "fixed1")
    await UploadPipeline(store, fresh_metadata()).upload(Actor(ALICE), b"one", "notes.txt", "text/plain")
    with pytest.raises(ConflictError):
        await UploadPipeline(store, fresh_metadata()).upload(Actor(ALICE), b"two", "notes.txt", "text/plain")
    assert (await store.get("notes-fixed1.txt")).data == b"one"


async def test_image_key_collision_keeps_existing_thumbnail(store, fresh_metadata, monkeypatch):
    monkeypatch.setattr(keyrules, "random_suffix", lambda length=6: "fixed1")
    first = await UploadPipeline(store, fresh_metadata()).upload(Actor(ALICE), _image(), "cat.png", "image/png")
    original_thumb = (await store.get(first.thumbnail_key)).data

    with pytest.raises(ConflictError):
        await UploadPipeline(store, fresh_metadata()).upload(
            Actor(ALICE), _image(size=(50, 80)), "cat.png", "image/png"
        )

    assert first.thumbnail_key == "thumbnails/cat-fixed1.png"
    assert (await store.get(first.thumbnail_key)).data == original_thumb
    assert await object_keys(store) == ["cat-fixed1.png", "thumbnails/cat-fixed1.png"]


async def test_metadata_failure_removes_written_objects(store, db, session_factory):
    with pytest.raises(BackendUnavailableError):
        await UploadPipeline(store, BrokenMetadata(db)).upload(
            Actor(ALICE), _image(), "cat.png", "image/png"
        )
    assert await object_keys(store) == []
    assert await row_keys(session_factory) == []


async def test_primary_failure_writes_no_thumbnail(tmp_path, metadata, session_factory):
    store = PrimaryWriteFails(tmp_path / "objects")
    with pytest.raises(BackendUnavailableError):
        await UploadPipeline(store, metadata).upload(Actor(ALICE), _image(), "cat.png", "image/png")
    assert await object_keys(store) == []
    assert await row_keys(session_factory) == []


async def test_thumbnail_failure_keeps_upload_without_preview(tmp_path, metadata, session_factory):
    store = ThumbnailWriteFails(tmp_path / "objects")
    result = await UploadPipeline(store, metadata).upload(Actor(ALICE), _image(), "cat.png", "image/png")

    assert result.thumbnail_key is None
    assert result.record.blur_data_url is None
    assert result.view.thumbnail_url == "/file.svg"
    assert await object_keys(store) == [result.record.key]
    assert await row_keys(session_factory) == [result.record.key]


async def test_upload_requires_actor(store, metadata):
    with pytest.raises(AuthorizationError) as exc:
        await UploadPipeline(store, metadata).upload(None, b"x", "a.txt", "text/plain")
    assert exc.value.status_code == 401


@pytest.mark.parametrize("prefix", ["docs", "../", "thumbnails/"])
async def test_upload_rejects_bad_target(store, metadata, prefix):
    with pytest.raises(ValidationError):
        await UploadPipeline(store, metadata).upload(Actor(ALICE), b"x", "a.txt", "text/plain", prefix)
    assert await object_keys(store) == []


async def test_upload_size_limit(store, metadata, monkeypatch):
    monkeypatch.setattr(settings, "MAX_UPLOAD_BYTES", 4)
    with pytest.raises(ValidationError):
        await UploadPipeline(store, metadata).upload(Actor(ALICE), b"12345", "a.txt", "text/plain")


async def test_derive_thumbnail_skips_non_images():
    assert await derive_thumbnail(b"hello", "text/plain") is None
    assert await derive_thumbnail(b"not really a png", "image/png") is None
