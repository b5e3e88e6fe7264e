"""Redis-backed cache for threat-check verdicts.

Flow Diagram — check with cache
===============================
::
    ┌─────────────┐
    │ sanitized   │
    │ URL         │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ MGET threat:│
    │ <url>       │
    └──────┬──────┘
    HIT?   │
    ┌──────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Call    │  │ Return  │
│ upstream│  │ cached  │
│ + SETEX │  │ verdict │
└─────────┘  └─────────┘

Key Behaviours
===============
- Entries live for 24 hours by default, or until the upstream cache
  duration runs out when that comes first.
- The cache is an optimization: Redis errors and unreadable payloads are
  logged and treated as a miss, never as a failed check.
"""

import logging
import math
from collections.abc import Sequence

import redis.asyncio as redis
from prometheus_client import Counter
from pydantic import ValidationError

from safelink.resilience import Clock, utcnow
from safelink.schemas import ThreatDetectionResult

__all__ = ["ThreatResultCache", "DEFAULT_THREAT_CACHE_TTL_SECONDS"]

logger = logging.getLogger("safelink.threat_cache")

DEFAULT_THREAT_CACHE_TTL_SECONDS = 24 * 3600
CACHE_KEY_PREFIX = "threat"

THREAT_CACHE_HITS_TOTAL = Counter(
    "safelink_threat_cache_hits_total",
    "Threat verdicts served from cache",
)
THREAT_CACHE_MISSES_TOTAL = Counter(
    "safelink_threat_cache_misses_total",
    "Threat verdict cache misses",
)


class ThreatResultCache:
    def __init__(self, client: redis.Redis, ttl_seconds: int = DEFAULT_THREAT_CACHE_TTL_SECONDS, clock: Clock = utcnow):
        self._redis = client
        self._ttl = ttl_seconds
        self._clock = clock

    @staticmethod
    def key(url: str) -> str:
        return f"{CACHE_KEY_PREFIX}:{url}"

    async def get(self, url: str) -> ThreatDetectionResult | None:
        results = await self.get_many([url])
        return results[0]

    async def get_many(self, urls: Sequence[str]) -> list[ThreatDetectionResult | None]:
        """Look up several verdicts with one MGET, ``None`` for each miss."""
        if not urls:
            return []
        try:
            cached = await self._redis.mget([self.key(url) for url in urls])
        except redis.RedisError as exc:
            logger.warning(f"Threat cache read failed for {len(urls)} URL(s): {exc}")
            return [None] * len(urls)
        return [self._decode(url, payload) for url, payload in zip(urls, cached)]

    @staticmethod
    def _decode(url: str, payload: str | bytes | None) -> ThreatDetectionResult | None:
        if not payload:
            THREAT_CACHE_MISSES_TOTAL.inc()
            return None

        try:
            result = ThreatDetectionResult.model_validate_json(payload)
        except ValidationError as exc:
            logger.error(f"Threat cache deserialization error for {url}: {exc}")
            THREAT_CACHE_MISSES_TOTAL.inc()
            return None

        THREAT_CACHE_HITS_TOTAL.inc()
        return result

    async def set(self, result: ThreatDetectionResult) -> None:
        ttl = self._ttl
        if result.cache_expires_at is not None:
            remaining = math.floor((result.cache_expires_at - self._clock()).total_seconds())
            ttl = min(ttl, remaining)
        if ttl <= 0:
            return

        try:
            await self._redis.setex(self.key(result.url), ttl, result.model_dump_json(by_alias=True))
        except redis.RedisError as exc:
            logger.warning(f"Threat cache write failed for {result.url}: {exc}")
