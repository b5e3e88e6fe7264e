"""Google Safe Browsing v4 client with rate limiting, circuit breaking and caching.

Request Flow Diagram
====================
::
    ┌──────────────┐
    │ check_urls() │
    └──────┬───────┘
           ▼
    ┌──────────────┐   empty / > 500 / blank / unparsable
    │ Validate &   │─────────────────────────────────────▶ ThreatCheckError (400 family)
    │ sanitize     │
    └──────┬───────┘
           ▼
    ┌──────────────┐   every URL cached
    │ Cache lookup │──────────────────▶ return cached verdicts
    └──────┬───────┘
           ▼
    ┌──────────────┐   OPEN, cooling down
    │ Circuit      │──────────────────▶ CIRCUIT_BREAKER_OPEN
    │ breaker      │
    └──────┬───────┘
           ▼
    ┌──────────────┐   budget spent
    │ Rate limiter │──────────────────▶ RATE_LIMIT_EXCEEDED
    └──────┬───────┘
           ▼
    ┌──────────────┐   timeout / HTTP error / bad JSON
    │ POST         │──────────────────▶ record_failure() → API_* error
    │ threatMatches│
    └──────┬───────┘
           ▼
    ┌──────────────┐
    │ Parse, cache,│
    │ record_      │
    │ success()    │
    └──────────────┘

How to Use
===========
**Step 1 — Build one client per process**::
    client = create_threat_client(get_settings(), cache=ThreatResultCache(redis_client))

**Step 2 — Check URLs**::
    result = await client.check_url("example.com")
    if not result.is_safe:
        print([threat.description for threat in result.threats])

**Step 3 — Inspect protection state**::
    client.rate_limit_info().remaining
    client.circuit_breaker_info().state

Key Behaviours
===============
- Results keep the input order; duplicates are evaluated independently.
- URLs without an http(s) scheme get an ``http://`` prefix before the check,
  and the sanitized form is what the API sees and what results report.
- Validation, breaker and rate-limit rejections happen before any I/O and do
  not count as upstream failures.
- Every failure in the network or parsing step counts against the breaker
  before it is re-raised as ``ThreatCheckError``.
"""

import asyncio
import logging
import re
import time
from collections.abc import Sequence
from datetime import timedelta
from typing import Any
from urllib.parse import SplitResult, urlsplit

import httpx
from prometheus_client import Counter, Histogram

from safelink.config import Settings
from safelink.enums import PlatformType, ThreatEntryType, ThreatErrorCode, ThreatType
from safelink.exceptions import ThreatCheckError
from safelink.resilience import CircuitBreaker, Clock, RateLimiter, utcnow
from safelink.schemas import CircuitBreakerInfo, RateLimitInfo, ThreatDetectionResult, ThreatInfo
from safelink.threat_cache import ThreatResultCache

__all__ = [
    "ThreatCheckClient",
    "create_threat_client",
    "sanitize_url",
    "parse_url",
    "describe_threat",
    "parse_cache_duration",
    "DEFAULT_API_URL",
    "DEFAULT_THREAT_TYPES",
]

logger = logging.getLogger("safelink.threat_client")

DEFAULT_API_URL = "https://safebrowsing.googleapis.com/v4/threatMatches:find"
DEFAULT_TIMEOUT_MS = 10000
MAX_URLS_PER_REQUEST = 500
DEFAULT_CACHE_DURATION = timedelta(hours=1)

DEFAULT_THREAT_TYPES = [ThreatType.MALWARE, ThreatType.SOCIAL_ENGINEERING, ThreatType.UNWANTED_SOFTWARE]
DEFAULT_PLATFORM_TYPES = [PlatformType.ANY_PLATFORM]
DEFAULT_THREAT_ENTRY_TYPES = [ThreatEntryType.URL]

THREAT_DESCRIPTIONS = {
    ThreatType.MALWARE: "Malicious software that can harm your device",
    ThreatType.SOCIAL_ENGINEERING: "Deceptive content designed to trick users",
    ThreatType.UNWANTED_SOFTWARE: "Software that may be unwanted or harmful",
    ThreatType.POTENTIALLY_UNWANTED_APPLICATION: "Application that may exhibit unwanted behavior",
}
UNKNOWN_THREAT_DESCRIPTION = "Unknown threat type"

_CACHE_DURATION_PATTERN = re.compile(r"(\d+(?:\.\d+)?)s")
_FORBIDDEN_HOST_CHARS = re.compile(r"[\s<>\\^|%\"`{}]")

THREAT_CHECK_REQUESTS_TOTAL = Counter(
    "safelink_threat_check_requests_total",
    "Threat-check calls by outcome",
    ["outcome"],
)
THREAT_CHECK_DURATION = Histogram(
    "safelink_threat_check_duration_seconds",
    "Time spent waiting on the threat-check API",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)
THREATS_DETECTED_TOTAL = Counter(
    "safelink_threats_detected_total",
    "URLs flagged by the threat-check API",
)


def parse_url(url: str) -> SplitResult | None:
    """Split ``url`` when it has a scheme and a usable host, else return ``None``.

    Accepts what a browser ``URL`` parse accepts for web URLs: single-label
    hosts, underscores and unencoded path characters pass, whitespace in the
    host or a non-numeric port does not.
    """
    try:
        parts = urlsplit(url)
        parts.port  # raises ValueError on a non-numeric port
    except ValueError:
        return None
    if not parts.scheme or not parts.hostname or _FORBIDDEN_HOST_CHARS.search(parts.hostname):
        return None
    return parts


def sanitize_url(url: Any) -> str:
    """Trim, add a scheme when missing, and make sure the URL parses.

    Raises:
        ThreatCheckError: ``INVALID_URL`` for blank or non-string input,
            ``INVALID_URL_FORMAT`` when the result is not a usable URL.
    """
    if not isinstance(url, str) or not url.strip():
        raise ThreatCheckError("Invalid URL provided", ThreatErrorCode.INVALID_URL)

    url = url.strip()
    if not url.lower().startswith(("http://", "https://")):
        url = "http://" + url

    if parse_url(url) is None:
        raise ThreatCheckError(f"Invalid URL format: {url}", ThreatErrorCode.INVALID_URL_FORMAT)
    return url


def describe_threat(threat_type: str | None) -> str:
    try:
        return THREAT_DESCRIPTIONS[ThreatType(threat_type)]
    except ValueError:
        return UNKNOWN_THREAT_DESCRIPTION


def parse_cache_duration(duration: str) -> timedelta:
    """Parse a protobuf duration such as ``"300s"``; one hour when unparseable."""
    match = _CACHE_DURATION_PATTERN.fullmatch(duration.strip()) if isinstance(duration, str) else None
    if match is None:
        return DEFAULT_CACHE_DURATION
    return timedelta(seconds=float(match.group(1)))


class ThreatCheckClient:
    """Client for the Safe Browsing ``threatMatches:find`` endpoint.

    Rate-limit and circuit-breaker state live on the instance, so a process
    must share one client across requests for the protection to work.

    Example:
        >>> client = ThreatCheckClient("key", "url-shortener", "1.0.0")
        >>> results = await client.check_urls(["https://example.com", "example.org"])
        >>> [r.is_safe for r in results]
        [True, True]
    """

    def __init__(
        self,
        api_key: str,
        client_id: str,
        client_version: str,
        *,
        api_url: str = DEFAULT_API_URL,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_urls_per_request: int = MAX_URLS_PER_REQUEST,
        rate_limit: int = 1000,
        rate_window_seconds: float = 60,
        failure_threshold: int = 5,
        recovery_timeout_seconds: float = 60,
        cache: ThreatResultCache | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = utcnow,
    ):
        self._validate_config(api_key, client_id, client_version)
        self._api_key = api_key
        self.client_id = client_id
        self.client_version = client_version
        self.api_url = api_url
        self.timeout_ms = timeout_ms
        self.max_urls_per_request = max_urls_per_request
        self._cache = cache
        self._clock = clock
        self._breaker = CircuitBreaker(failure_threshold, recovery_timeout_seconds, clock=clock)
        self._rate_limiter = RateLimiter(rate_limit, rate_window_seconds, clock=clock)
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient()

    # ========================================================================
    # PUBLIC API METHODS
    # ========================================================================

    async def check_url(self, url: str) -> ThreatDetectionResult:
        results = await self.check_urls([url])
        return results[0]

    async def check_urls(self, urls: Sequence[str]) -> list[ThreatDetectionResult]:
        """Check up to 500 URLs, returning one verdict per input URL in order.

        Raises:
            ThreatCheckError: Validation, throttling or upstream failure.
        """
        urls = list(urls) if urls else []
        if not urls:
            raise ThreatCheckError("No URLs provided for checking", ThreatErrorCode.NO_URLS_PROVIDED)
        if len(urls) > self.max_urls_per_request:
            raise ThreatCheckError(
                f"Too many URLs. Maximum {self.max_urls_per_request} allowed per request",
                ThreatErrorCode.TOO_MANY_URLS,
            )

        sanitized = [sanitize_url(url) for url in urls]

        results: list[ThreatDetectionResult | None] = [None] * len(sanitized)
        if self._cache is not None:
            results = await self._cache.get_many(sanitized)

        pending = [url for url, result in zip(sanitized, results) if result is None]
        if not pending:
            THREAT_CHECK_REQUESTS_TOTAL.labels(outcome="cached").inc()
            logger.debug(f"Served {len(sanitized)} threat verdicts from cache")
            return results

        try:
            self._breaker.before_call()
            self._rate_limiter.acquire()
        except ThreatCheckError:
            THREAT_CHECK_REQUESTS_TOTAL.labels(outcome="rejected").inc()
            raise

        start_time = time.perf_counter()
        try:
            payload = self._format_request(pending)
            response = await self._make_api_call(payload)
            fresh = self._parse_response(pending, response)
        except Exception as exc:
            self._breaker.record_failure()
            THREAT_CHECK_REQUESTS_TOTAL.labels(outcome="error").inc()
            logger.error(f"Safe Browsing API error: {exc}")
            if isinstance(exc, ThreatCheckError):
                raise
            raise ThreatCheckError(f"Failed to check URLs: {exc}", ThreatErrorCode.API_ERROR) from exc
        finally:
            THREAT_CHECK_DURATION.observe(time.perf_counter() - start_time)

        self._breaker.record_success()
        THREAT_CHECK_REQUESTS_TOTAL.labels(outcome="success").inc()

        fresh_iter = iter(fresh)
        for index, result in enumerate(results):
            if result is None:
                results[index] = next(fresh_iter)

        if self._cache is not None:
            for result in {item.url: item for item in fresh}.values():
                await self._cache.set(result)

        flagged = sum(1 for result in fresh if not result.is_safe)
        THREATS_DETECTED_TOTAL.inc(flagged)
        logger.info(f"Safe Browsing API: checked {len(pending)} URLs, {flagged} flagged")
        return results

    def rate_limit_info(self) -> RateLimitInfo:
        return self._rate_limiter.info()

    def circuit_breaker_info(self) -> CircuitBreakerInfo:
        return self._breaker.info()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ========================================================================
    # PRIVATE HELPER METHODS
    # ========================================================================

    @staticmethod
    def _validate_config(api_key: str, client_id: str, client_version: str) -> None:
        if not api_key or not api_key.strip():
            raise ThreatCheckError("API key is required", ThreatErrorCode.MISSING_API_KEY)
        if not client_id or not client_id.strip():
            raise ThreatCheckError("Client ID is required", ThreatErrorCode.MISSING_CLIENT_ID)
        if not client_version or not client_version.strip():
            raise ThreatCheckError("Client version is required", ThreatErrorCode.MISSING_CLIENT_VERSION)

    def _format_request(self, urls: list[str]) -> dict[str, Any]:
        return {
            "client": {
                "clientId": self.client_id,
                "clientVersion": self.client_version,
            },
            "threatInfo": {
                "threatTypes": [t.value for t in DEFAULT_THREAT_TYPES],
                "platformTypes": [p.value for p in DEFAULT_PLATFORM_TYPES],
                "threatEntryTypes": [e.value for e in DEFAULT_THREAT_ENTRY_TYPES],
                "threatEntries": [{"url": url} for url in urls],
            },
        }

    async def _make_api_call(self, payload: dict[str, Any]) -> dict[str, Any]:
        timeout = self.timeout_ms / 1000
        try:
            # httpx applies its timeout per phase; the outer deadline bounds the whole call.
            async with asyncio.timeout(timeout):
                response = await self._http.post(
                    self.api_url,
                    params={"key": self._api_key},
                    json=payload,
                    headers={"User-Agent": f"{self.client_id}/{self.client_version}"},
                    timeout=timeout,
                )
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise ThreatCheckError(
                f"Threat check timed out after {self.timeout_ms} ms", ThreatErrorCode.API_TIMEOUT
            ) from exc
        except httpx.HTTPError as exc:
            raise ThreatCheckError(f"Failed to check URLs: {exc}", ThreatErrorCode.API_ERROR) from exc

        self._rate_limiter.consume()

        if not response.is_success:
            raise ThreatCheckError(
                f"API request failed: {response.status_code} {response.reason_phrase} - {response.text}",
                ThreatErrorCode.API_REQUEST_FAILED,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ThreatCheckError("Invalid JSON in API response", ThreatErrorCode.API_ERROR) from exc
        if not isinstance(data, dict):
            raise ThreatCheckError("Unexpected API response shape", ThreatErrorCode.API_ERROR)

        logger.debug(f"Safe Browsing API response: status={response.status_code}, matches={len(data.get('matches') or [])}")
        return data

    def _parse_response(self, urls: list[str], data: dict[str, Any]) -> list[ThreatDetectionResult]:
        matches = data.get("matches") or []
        if not isinstance(matches, list):
            raise ThreatCheckError("Unexpected API response shape", ThreatErrorCode.API_ERROR)

        checked_at = self._clock()
        results = []
        for url in urls:
            url_matches = [match for match in matches if (match.get("threat") or {}).get("url") == url]
            threats = [
                ThreatInfo(
                    type=match.get("threatType", "THREAT_TYPE_UNSPECIFIED"),
                    platform=match.get("platformType", "PLATFORM_TYPE_UNSPECIFIED"),
                    description=describe_threat(match.get("threatType")),
                )
                for match in url_matches
            ]

            cache_expires_at = None
            if url_matches and url_matches[0].get("cacheDuration"):
                cache_expires_at = checked_at + parse_cache_duration(url_matches[0]["cacheDuration"])

            results.append(
                ThreatDetectionResult(
                    url=url,
                    is_safe=not url_matches,
                    threats=threats,
                    checked_at=checked_at,
                    cache_expires_at=cache_expires_at,
                )
            )
        return results


def create_threat_client(settings: Settings, cache: ThreatResultCache | None = None) -> ThreatCheckClient:
    """Build the process-wide client from settings.

    Raises:
        ThreatCheckError: ``MISSING_API_KEY`` (or another config code) when the
            settings are incomplete.
    """
    if not settings.SAFE_BROWSING_API_KEY:
        raise ThreatCheckError(
            "SAFE_BROWSING_API_KEY environment variable is not set", ThreatErrorCode.MISSING_API_KEY
        )

    return ThreatCheckClient(
        settings.SAFE_BROWSING_API_KEY,
        settings.SAFE_BROWSING_CLIENT_ID,
        settings.SAFE_BROWSING_CLIENT_VERSION,
        api_url=settings.SAFE_BROWSING_API_URL,
        timeout_ms=settings.SAFE_BROWSING_TIMEOUT_MS,
        max_urls_per_request=settings.SAFE_BROWSING_MAX_URLS_PER_REQUEST,
        rate_limit=settings.SAFE_BROWSING_RATE_LIMIT,
        rate_window_seconds=settings.SAFE_BROWSING_RATE_WINDOW_SECONDS,
        failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
        recovery_timeout_seconds=settings.CIRCUIT_BREAKER_RECOVERY_SECONDS,
        cache=cache,
    )
