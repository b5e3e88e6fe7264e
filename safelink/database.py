"""Async engine and session factory for the links database.

The link store is the only consumer of ``async_session``: it opens one
session per operation, which lets fire-and-forget click increments outlive
the request that scheduled them.

Usage::

    await init_db()                           # lifespan startup
    store = SqlAlchemyLinkStore(async_session)
    ...
    await close_db()                          # lifespan shutdown

Notes:
    - ``init_db`` runs ``create_all``; there is no migration tooling.
    - The pool is pre-pinged so connections dropped by PostgreSQL are
      replaced instead of surfacing as store errors.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from safelink.config import get_settings

__all__ = ["Base", "engine", "async_session", "init_db", "close_db"]

settings = get_settings()

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.LOG_LEVEL.upper() == "DEBUG",
    pool_size=20,
    max_overflow=10,
    pool_pre_ping=True,
)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
