"""Shared fixtures: in-memory SQLite metadata store, on-disk local object store, ASGI client."""
import os

# Settings are read at import time; point them at test backends first.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("OBJECT_STORE_TYPE", "local")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from bucketdrive.database import get_db
from bucketdrive.main import app
from bucketdrive.models import Base, Profile
from bucketdrive.services.metadata_store import MetadataStore
from bucketdrive.services.object_store import LocalObjectStore, get_object_store

ADMIN = "admin-1"
ALICE = "alice"
BOB = "bob"


@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        session.add_all([
            Profile(id=ADMIN, role="admin", display_name="Admin"),
            Profile(id=ALICE, role="user", display_name="Alice", email="alice@example.com"),
            Profile(id=BOB, role="user", email="bob@example.com"),
        ])
        await session.commit()
        yield session


@pytest.fixture
def metadata(db):
    return MetadataStore(db)


@pytest.fixture
def store(tmp_path):
    return LocalObjectStore(tmp_path / "objects")


@pytest.fixture
async def client(db, session_factory, store):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_object_store] = lambda: store
    # No lifespan: the worker loop stays off and tests drive jobs explicitly
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def as_user(user_id: str) -> dict:
    return {"X-User-Id": user_id}


@pytest.fixture
async def fresh_metadata(session_factory):
    """MetadataStore factory, one new session per call (like one request each)."""
    sessions = []

    def make() -> MetadataStore:
        session = session_factory()
        sessions.append(session)
        return MetadataStore(session)

    yield make
    for session in sessions:
        await session.close()


async def row_keys(session_factory) -> list[str]:
    from sqlalchemy import select
    from bucketdrive.models import FileRecord

    async with session_factory() as session:
        result = await session.execute(select(FileRecord.key).order_by(FileRecord.key))
        return list(result.scalars().all())


async def object_keys(store, prefix: str = "") -> list[str]:
    page = await store.list_by_prefix(prefix)
    return [o.key for o in page.objects]


async def seed_file(store, metadata, key, user_id=ALICE, content_type="text/plain",
                    with_row=True, uploaded_at=None, data=b"data"):
    """Put an object and (optionally) its metadata row, bypassing the upload pipeline."""
    from datetime import datetime, timezone
    from bucketdrive.models import FileRecord

    await store.put(key, data, content_type)
    if with_row:
        await metadata.insert(FileRecord(
            key=key,
            name=key.rsplit("/", 1)[-1],
            size=len(data),
            content_type=content_type,
            uploaded_at=uploaded_at or datetime.now(timezone.utc),
            user_id=user_id,
        ))
