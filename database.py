from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

import config

Base = declarative_base()


def make_engine(url: str = None):
    url = url or config.DATABASE_URL
    if url.startswith("sqlite"):
        return create_async_engine(url)
    return create_async_engine(
        url,
        # Connection pooling for reliability under load
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,     # test connections before use (handles dropped DB connections)
        pool_recycle=3600,      # recycle connections every hour (prevents stale connections)
    )


def make_sessionmaker(engine):
    # Rows are handed back to callers after the session closes.
    return async_sessionmaker(engine, autoflush=False, expire_on_commit=False)


async def init_db(engine):
    import models  # noqa: F401  registers tables on Base.metadata
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(sessionmaker):
    """Yields a session, commits on success, always closes it."""
    async with sessionmaker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands timestamps back without tzinfo; everything is stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
