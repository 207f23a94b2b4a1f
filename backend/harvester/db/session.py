"""Engine and session factory construction.

Every target is processed in its own session, so callers hand the
session factory (not a session) to ScraperService.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from harvester.config import settings
from harvester.models import Base


def create_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """Build an async engine for Postgres (asyncpg) or SQLite (aiosqlite).

    In-memory SQLite shares one connection so every session sees the same
    database.
    """
    url = database_url or settings.DATABASE_URL
    kwargs: dict = {"echo": settings.DEBUG if echo is None else echo}

    if url.startswith("sqlite"):
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
    else:
        kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
        )

    return create_async_engine(url, **kwargs)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Objects stay readable after commit; the writer relies on this
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


async def init_db(bind: AsyncEngine) -> None:
    """Create all harvester tables if they do not exist."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


engine = create_engine()
async_session_factory = create_session_factory(engine)
