"""SQLAlchemy link store tests with a mocked async session."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from safelink.exceptions import DuplicateShortCodeError, LinkStoreError
from safelink.link_store import SqlAlchemyLinkStore
from safelink.models import Link


@pytest.fixture
def mock_session() -> AsyncMock:
    session = AsyncMock(spec=AsyncSession)
    session.execute = AsyncMock()
    session.add = MagicMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.refresh = AsyncMock()
    return session


@pytest.fixture
def sql_store(mock_session: AsyncMock) -> SqlAlchemyLinkStore:
    @asynccontextmanager
    async def session_factory():
        yield mock_session

    return SqlAlchemyLinkStore(session_factory)


def db_down() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("connection refused"))


def scalar_result(value) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


@pytest.mark.asyncio
async def test_exists_true(sql_store, mock_session) -> None:
    mock_session.execute.return_value = scalar_result("abc123")
    assert await sql_store.exists("abc123") is True


@pytest.mark.asyncio
async def test_exists_false(sql_store, mock_session) -> None:
    mock_session.execute.return_value = scalar_result(None)
    assert await sql_store.exists("abc123") is False


@pytest.mark.asyncio
async def test_exists_wraps_database_errors(sql_store, mock_session) -> None:
    mock_session.execute.side_effect = db_down()
    with pytest.raises(LinkStoreError):
        await sql_store.exists("abc123")


@pytest.mark.asyncio
async def test_insert_adds_and_commits(sql_store, mock_session) -> None:
    link = await sql_store.insert("abc123", "https://example.com")

    assert isinstance(link, Link)
    assert link.short_code == "abc123"
    assert link.long_url == "https://example.com"
    mock_session.add.assert_called_once_with(link)
    mock_session.commit.assert_awaited_once()
    mock_session.refresh.assert_awaited_once_with(link)


@pytest.mark.asyncio
async def test_insert_duplicate_key(sql_store, mock_session) -> None:
    mock_session.commit.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))

    with pytest.raises(DuplicateShortCodeError):
        await sql_store.insert("abc123", "https://example.com")
    mock_session.rollback.assert_awaited_once()


@pytest.mark.asyncio
async def test_insert_other_failure_is_not_a_duplicate(sql_store, mock_session) -> None:
    mock_session.commit.side_effect = db_down()

    with pytest.raises(LinkStoreError) as exc_info:
        await sql_store.insert("abc123", "https://example.com")
    assert not isinstance(exc_info.value, DuplicateShortCodeError)


@pytest.mark.asyncio
async def test_find_by_code(sql_store, mock_session) -> None:
    link = Link(short_code="abc123", long_url="https://example.com", click_count=4)
    mock_session.execute.return_value = scalar_result(link)
    assert await sql_store.find_by_code("abc123") is link


@pytest.mark.asyncio
async def test_find_by_code_missing(sql_store, mock_session) -> None:
    mock_session.execute.return_value = scalar_result(None)
    assert await sql_store.find_by_code("abc123") is None


@pytest.mark.asyncio
async def test_find_by_code_wraps_database_errors(sql_store, mock_session) -> None:
    mock_session.execute.side_effect = db_down()
    with pytest.raises(LinkStoreError):
        await sql_store.find_by_code("abc123")


@pytest.mark.asyncio
async def test_increment_is_a_single_atomic_update(sql_store, mock_session) -> None:
    mock_session.execute.return_value = MagicMock(rowcount=1)

    await sql_store.increment_click_count("abc123")

    statement = str(mock_session.execute.await_args.args[0])
    assert statement.startswith("UPDATE links SET click_count=")
    assert "links.click_count +" in statement
    assert "WHERE links.short_code =" in statement
    mock_session.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_increment_unknown_code_is_not_an_error(sql_store, mock_session) -> None:
    mock_session.execute.return_value = MagicMock(rowcount=0)
    await sql_store.increment_click_count("zzzzzz")


@pytest.mark.asyncio
async def test_increment_wraps_database_errors(sql_store, mock_session) -> None:
    mock_session.execute.side_effect = db_down()
    with pytest.raises(LinkStoreError):
        await sql_store.increment_click_count("abc123")


@pytest.mark.asyncio
async def test_ping(sql_store, mock_session) -> None:
    await sql_store.ping()
    mock_session.execute.assert_awaited_once()

    mock_session.execute.side_effect = db_down()
    with pytest.raises(LinkStoreError):
        await sql_store.ping()
