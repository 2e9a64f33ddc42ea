"""Async SQLAlchemy engine and session factory.

Routes take a session through ``Depends(get_db)``; services that run outside a
request (the job worker, the storage-account manager) open their own with
``async with async_session() as db``.
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from portal_uploads.config import settings


def _engine_options(url: str) -> dict:
    # SQLite (local dev) uses a static pool without sizing options
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_pre_ping": True,
    }


engine = create_async_engine(settings.DATABASE_URL, echo=False, **_engine_options(settings.DATABASE_URL))

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db():
    """FastAPI dependency that yields an async DB session; uncommitted work is rolled back on error."""
    async with async_session() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
