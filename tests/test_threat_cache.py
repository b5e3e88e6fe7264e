"""Threat verdict cache tests with a mocked Redis client."""

import datetime
from unittest.mock import AsyncMock

import pytest
import redis.asyncio as redis

from safelink.schemas import ThreatDetectionResult, ThreatInfo
from safelink.threat_cache import ThreatResultCache


@pytest.fixture
def cache(mock_redis, clock) -> ThreatResultCache:
    return ThreatResultCache(mock_redis, clock=clock)


def make_result(clock, url: str = "https://example.com", expires_in: float | None = None) -> ThreatDetectionResult:
    expires_at = clock.now + datetime.timedelta(seconds=expires_in) if expires_in is not None else None
    return ThreatDetectionResult(url=url, is_safe=True, checked_at=clock.now, cache_expires_at=expires_at)


def test_key_format() -> None:
    assert ThreatResultCache.key("https://example.com") == "threat:https://example.com"


@pytest.mark.asyncio
async def test_miss_returns_none(cache, mock_redis) -> None:
    assert await cache.get("https://example.com") is None
    mock_redis.mget.assert_awaited_once_with(["threat:https://example.com"])


@pytest.mark.asyncio
async def test_hit_round_trips(cache, mock_redis, clock) -> None:
    result = ThreatDetectionResult(
        url="https://evil.example.com",
        is_safe=False,
        threats=[ThreatInfo(type="MALWARE", platform="ANY_PLATFORM", description="Malicious software")],
        checked_at=clock.now,
        cache_expires_at=clock.now + datetime.timedelta(minutes=5),
    )
    mock_redis.mget = AsyncMock(return_value=[result.model_dump_json(by_alias=True)])

    assert await cache.get("https://evil.example.com") == result


@pytest.mark.asyncio
async def test_undecodable_entry_is_a_miss(cache, mock_redis) -> None:
    mock_redis.mget = AsyncMock(return_value=["{not json"])
    assert await cache.get("https://example.com") is None


@pytest.mark.asyncio
async def test_redis_error_is_a_miss(cache, mock_redis) -> None:
    mock_redis.mget = AsyncMock(side_effect=redis.ConnectionError("down"))
    assert await cache.get("https://example.com") is None
    assert await cache.get_many(["https://a.example.com", "https://b.example.com"]) == [None, None]


@pytest.mark.asyncio
async def test_get_many_uses_one_round_trip(cache, mock_redis, clock) -> None:
    hit = make_result(clock, url="https://b.example.com")
    mock_redis.mget = AsyncMock(return_value=[None, hit.model_dump_json(by_alias=True), b""])

    results = await cache.get_many(["https://a.example.com", "https://b.example.com", "https://c.example.com"])

    assert results == [None, hit, None]
    mock_redis.mget.assert_awaited_once_with(
        ["threat:https://a.example.com", "threat:https://b.example.com", "threat:https://c.example.com"]
    )


@pytest.mark.asyncio
async def test_get_many_empty(cache, mock_redis) -> None:
    assert await cache.get_many([]) == []
    mock_redis.mget.assert_not_awaited()


@pytest.mark.asyncio
async def test_set_uses_default_ttl(cache, mock_redis, clock) -> None:
    result = make_result(clock)
    await cache.set(result)
    mock_redis.setex.assert_awaited_once_with(
        "threat:https://example.com", 86400, result.model_dump_json(by_alias=True)
    )


@pytest.mark.asyncio
async def test_set_uses_shorter_upstream_expiry(cache, mock_redis, clock) -> None:
    await cache.set(make_result(clock, expires_in=300))
    assert mock_redis.setex.await_args.args[1] == 300


@pytest.mark.asyncio
async def test_set_caps_at_configured_ttl(mock_redis, clock) -> None:
    cache = ThreatResultCache(mock_redis, ttl_seconds=60, clock=clock)
    await cache.set(make_result(clock, expires_in=3600))
    assert mock_redis.setex.await_args.args[1] == 60


@pytest.mark.asyncio
async def test_expired_result_is_not_written(cache, mock_redis, clock) -> None:
    await cache.set(make_result(clock, expires_in=-1))
    mock_redis.setex.assert_not_awaited()


@pytest.mark.asyncio
async def test_write_error_is_swallowed(cache, mock_redis, clock) -> None:
    mock_redis.setex = AsyncMock(side_effect=redis.ConnectionError("down"))
    await cache.set(make_result(clock))
