"""Shared pytest fixtures: in-memory link store, fake clock, stubbed Safe Browsing API and the ASGI client."""

import datetime
import json
from typing import Any, AsyncGenerator, Callable
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
import redis.asyncio as redis
from httpx import ASGITransport, AsyncClient

from safelink.config import Settings
from safelink.dependencies import ServiceManager, get_service_manager
from safelink.exceptions import DuplicateShortCodeError
from safelink.link_service import drain_pending_increments
from safelink.link_store import LinkStore
from safelink.main import app
from safelink.models import Link
from safelink.threat_client import ThreatCheckClient

BASE_URL = "https://lnk.example.com"
API_KEY = "test-key"


# ============================================================================
# FAKES
# ============================================================================


class InMemoryLinkStore(LinkStore):
    """Dict-backed ``LinkStore`` with hooks for forcing collisions and failures.

    Attributes:
        forced_exists: Answers returned by ``exists`` before the dict is consulted.
        duplicate_inserts: Number of upcoming inserts that report a duplicate key.
        failures: Exception to raise, keyed by operation name.
    """

    def __init__(self) -> None:
        self.links: dict[str, Link] = {}
        self.forced_exists: list[bool] = []
        self.duplicate_inserts = 0
        self.failures: dict[str, Exception] = {}
        self.exists_calls = 0
        self.insert_calls = 0
        self.find_calls = 0
        self.increment_calls: list[str] = []

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failures:
            raise self.failures[operation]

    def add(self, short_code: str, long_url: str, click_count: int = 0) -> Link:
        link = Link(short_code=short_code, long_url=long_url, click_count=click_count)
        self.links[short_code] = link
        return link

    async def exists(self, short_code: str) -> bool:
        self.exists_calls += 1
        self._maybe_fail("exists")
        if self.forced_exists:
            return self.forced_exists.pop(0)
        return short_code in self.links

    async def insert(self, short_code: str, long_url: str) -> Link:
        self.insert_calls += 1
        self._maybe_fail("insert")
        if self.duplicate_inserts > 0 or short_code in self.links:
            self.duplicate_inserts = max(0, self.duplicate_inserts - 1)
            raise DuplicateShortCodeError(f"Short code '{short_code}' already exists")
        return self.add(short_code, long_url)

    async def find_by_code(self, short_code: str) -> Link | None:
        self.find_calls += 1
        self._maybe_fail("find_by_code")
        return self.links.get(short_code)

    async def increment_click_count(self, short_code: str) -> None:
        self.increment_calls.append(short_code)
        self._maybe_fail("increment_click_count")
        link = self.links.get(short_code)
        if link is not None:
            link.click_count += 1

    async def ping(self) -> None:
        self._maybe_fail("ping")


class FakeClock:
    def __init__(self, start: datetime.datetime = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)):
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


class SafeBrowsingStub:
    """``httpx.MockTransport`` handler standing in for ``threatMatches:find``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.matches: list[dict[str, Any]] = []
        self.status_code = 200
        self.raw_body: bytes | None = None
        self.error: type[httpx.HTTPError] | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error("upstream unreachable", request=request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="upstream error")
        if self.raw_body is not None:
            return httpx.Response(200, content=self.raw_body)
        return httpx.Response(200, json={"matches": self.matches} if self.matches else {})

    def flag(self, url: str, threat_type: str = "MALWARE", cache_duration: str = "300s") -> None:
        self.matches.append(
            {
                "threatType": threat_type,
                "platformType": "ANY_PLATFORM",
                "threatEntryType": "URL",
                "threat": {"url": url},
                "cacheDuration": cache_duration,
            }
        )

    @property
    def payloads(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]

    @property
    def checked_urls(self) -> list[str]:
        return [entry["url"] for payload in self.payloads for entry in payload["threatInfo"]["threatEntries"]]


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def settings_overrides() -> dict[str, Any]:
    return {}


@pytest.fixture
def settings(settings_overrides: dict[str, Any]) -> Settings:
    values = {
        "SAFE_BROWSING_API_KEY": API_KEY,
        "THREAT_CACHE_ENABLED": False,
        "LOG_LEVEL": "DEBUG",
    }
    values.update(settings_overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryLinkStore:
    return InMemoryLinkStore()


@pytest.fixture
def safe_browsing() -> SafeBrowsingStub:
    return SafeBrowsingStub()


@pytest.fixture
def client_options() -> dict[str, Any]:
    return {}


@pytest_asyncio.fixture
async def threat_client(
    safe_browsing: SafeBrowsingStub, clock: FakeClock, client_options: dict[str, Any]
) -> AsyncGenerator[ThreatCheckClient, None]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(safe_browsing))
    client = ThreatCheckClient(
        API_KEY,
        "url-shortener",
        "1.0.0",
        http_client=http_client,
        clock=clock,
        **client_options,
    )
    yield client
    await http_client.aclose()


@pytest.fixture
def mock_redis() -> AsyncMock:
    redis_client = AsyncMock(spec=redis.Redis)
    redis_client.mget = AsyncMock(side_effect=lambda keys: [None] * len(keys))
    redis_client.setex = AsyncMock(return_value=True)
    redis_client.ping = AsyncMock(return_value=True)
    return redis_client


@pytest_asyncio.fixture
async def manager(
    settings: Settings,
    store: InMemoryLinkStore,
    mock_redis: AsyncMock,
    threat_client: ThreatCheckClient,
) -> ServiceManager:
    manager = ServiceManager()
    await manager.initialize(
        settings=settings,
        link_store=store,
        redis_client=mock_redis,
        threat_client=threat_client,
    )
    return manager


@pytest_asyncio.fixture
async def unconfigured_manager(store: InMemoryLinkStore, mock_redis: AsyncMock) -> ServiceManager:
    """Manager whose settings lack a Safe Browsing API key."""
    manager = ServiceManager()
    await manager.initialize(
        settings=Settings(_env_file=None, SAFE_BROWSING_API_KEY="", THREAT_CACHE_ENABLED=False),
        link_store=store,
        redis_client=mock_redis,
    )
    return manager


@pytest_asyncio.fixture
async def client_factory() -> AsyncGenerator[Callable[[ServiceManager], AsyncClient], None]:
    """Build ASGI clients for the app wired to a given service manager."""

    def factory(manager: ServiceManager) -> AsyncClient:
        app.dependency_overrides[get_service_manager] = lambda: manager
        return AsyncClient(transport=ASGITransport(app=app), base_url=BASE_URL)

    yield factory
    await drain_pending_increments()
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(
    manager: ServiceManager, client_factory: Callable[[ServiceManager], AsyncClient]
) -> AsyncGenerator[AsyncClient, None]:
    async with client_factory(manager) as ac:
        yield ac
