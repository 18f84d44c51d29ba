"""Async SQLAlchemy engine and session factory.

Usage in routes:
    from bucketdrive.database import get_db

    @router.get("/items")
    async def list_items(db: AsyncSession = Depends(get_db)):
        result = await db.execute(select(Item))
        return result.scalars().all()
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from bucketdrive.config import settings


def _engine_options(url: str) -> dict:
    """Pool and timeout options; SQLite (dev/tests) takes none of them."""
    if url.startswith("sqlite"):
        return {}
    options = {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,
    }
    if url.startswith("postgresql+asyncpg"):
        options["connect_args"] = {"command_timeout": settings.DB_TIMEOUT_SECONDS}
    return options


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    **_engine_options(settings.DATABASE_URL),
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    """FastAPI dependency that yields an async DB session."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()
