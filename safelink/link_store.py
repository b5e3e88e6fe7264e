"""Link store contract and its SQLAlchemy implementation.

The orchestrator and the uniqueness resolver only talk to ``LinkStore``;
``SqlAlchemyLinkStore`` maps that contract onto the ``links`` table.

Responsibilities:
    - Answer "does this short code exist?" without conflating an absent row
      with a failed query.
    - Insert mappings, reporting primary-key conflicts as
      ``DuplicateShortCodeError``.
    - Increment click counters atomically in the database.

Example:
    >>> from safelink.database import async_session
    >>> store = SqlAlchemyLinkStore(async_session)
    >>> await store.insert("aB3xY9", "https://example.com")
    >>> link = await store.find_by_code("aB3xY9")
    >>> link.long_url
    'https://example.com'
"""

import logging
from abc import ABC, abstractmethod

from sqlalchemy import select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from safelink.exceptions import DuplicateShortCodeError, LinkStoreError
from safelink.models import Link

__all__ = ["LinkStore", "SqlAlchemyLinkStore"]

logger = logging.getLogger("safelink.link_store")


class LinkStore(ABC):
    """Interface for link persistence.

    Methods:
        exists(short_code) -> bool:
            True when a mapping with this code is stored.
            Raises LinkStoreError on connection or query failure.

        insert(short_code, long_url) -> Link:
            Persist a new mapping.
            Raises DuplicateShortCodeError if the code is already taken.
            Raises LinkStoreError on any other failure.

        find_by_code(short_code) -> Link | None:
            Return the mapping, or None when no row exists.
            Raises LinkStoreError on connection or query failure.

        increment_click_count(short_code) -> None:
            Atomically add one click. Raises LinkStoreError on failure.

        ping() -> None:
            Cheap connectivity probe for health checks.
    """

    @abstractmethod
    async def exists(self, short_code: str) -> bool:
        pass

    @abstractmethod
    async def insert(self, short_code: str, long_url: str) -> Link:
        pass

    @abstractmethod
    async def find_by_code(self, short_code: str) -> Link | None:
        pass

    @abstractmethod
    async def increment_click_count(self, short_code: str) -> None:
        pass

    @abstractmethod
    async def ping(self) -> None:
        pass


class SqlAlchemyLinkStore(LinkStore):
    """``LinkStore`` backed by PostgreSQL through an async session factory.

    Every operation runs in its own short-lived session, which makes the store
    safe to share across requests and background tasks.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def exists(self, short_code: str) -> bool:
        try:
            async with self._sessions() as session:
                result = await session.execute(select(Link.short_code).where(Link.short_code == short_code).limit(1))
                return result.scalar_one_or_none() is not None
        except SQLAlchemyError as exc:
            logger.error(f"Database error checking code existence for {short_code}: {exc}")
            raise LinkStoreError(f"Database query failed: {exc}") from exc

    async def insert(self, short_code: str, long_url: str) -> Link:
        link = Link(short_code=short_code, long_url=long_url)
        try:
            async with self._sessions() as session:
                session.add(link)
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    raise DuplicateShortCodeError(f"Short code '{short_code}' already exists") from exc
                await session.refresh(link)
                return link
        except DuplicateShortCodeError:
            raise
        except SQLAlchemyError as exc:
            logger.error(f"Database insertion error for {short_code}: {exc}")
            raise LinkStoreError(f"Failed to store URL mapping: {exc}") from exc

    async def find_by_code(self, short_code: str) -> Link | None:
        try:
            async with self._sessions() as session:
                result = await session.execute(select(Link).where(Link.short_code == short_code))
                return result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            logger.error(f"Database error fetching short URL {short_code}: {exc}")
            raise LinkStoreError(f"Database query failed: {exc}") from exc

    async def increment_click_count(self, short_code: str) -> None:
        try:
            async with self._sessions() as session:
                result = await session.execute(
                    update(Link).where(Link.short_code == short_code).values(click_count=Link.click_count + 1)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise LinkStoreError(f"Failed to increment click count: {exc}") from exc

        if result.rowcount == 0:
            logger.warning(f"Short code not found for click increment: {short_code}")

    async def ping(self) -> None:
        try:
            async with self._sessions() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise LinkStoreError(f"Database unavailable: {exc}") from exc
