"""
Database engine, session factory and table management.

The configured DATABASE_URL may name a sync driver (``postgresql://``,
``sqlite:///``); it is rewritten to the matching async driver. Services
never open sessions themselves: HTTP requests get one from `get_db`, the
daily job opens one per tick from `AsyncSessionLocal`.
"""
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from legalops.config import get_settings

settings = get_settings()

ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "sqlite:///": "sqlite+aiosqlite:///",
}

Base = declarative_base()


def async_url(url: str) -> str:
    for sync_prefix, async_prefix in ASYNC_DRIVERS.items():
        if url.startswith(sync_prefix):
            return async_prefix + url[len(sync_prefix):]
    return url


def make_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    url = async_url(url or settings.DATABASE_URL)
    kwargs = {"echo": settings.DEBUG if echo is None else echo}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **kwargs)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    # Services keep using ORM objects after their unit of work commits
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


async def create_tables(bind: AsyncEngine) -> None:
    # Registers every table on Base.metadata
    import legalops.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables(bind: AsyncEngine) -> None:
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


engine = make_engine()
AsyncSessionLocal = make_session_factory(engine)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Request-scoped session; committed on success, rolled back on error"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
