"""Link creation and resolution service - core orchestration.

This module composes the URL checks, the threat-check client, the
uniqueness resolver and the link store into the two public operations of
the service: creating a short link and resolving one.

URL Creation Flow
-----------------
::
    ┌─────────────┐
    │ POST        │
    │ /shorten    │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Validate    │──▶ InvalidURLError (400)
    │ syntax      │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Security    │──▶ InsecureURLError (400)
    │ check       │    blocked scheme / own origin
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Threat      │──▶ UnsafeURLError (400) or ThreatCheckError
    │ check       │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Generate    │──▶ LinkCreationError (500)
    │ unique code │
    └──────┬──────┘
           ▼
    ┌─────────────┐   duplicate key (race) → one fresh code + insert
    │ Store       │──▶ LinkCreationError (500)
    │ mapping     │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Short URL   │
    └─────────────┘

URL Resolution Flow
-------------------
::
    ┌─────────────┐
    │ GET /:code  │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Validate    │──▶ MalformedShortCodeError (400)
    │ format      │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Lookup      │──▶ LinkNotFoundError (404) / LinkLookupError (500)
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Re-validate │──▶ CorruptLinkError (500)
    │ stored URL  │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Schedule    │  asyncio task, errors logged only
    │ increment   │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ 307         │
    └─────────────┘

Key Behaviours
===============
- Nothing is written unless every check before the insert succeeded.
- A redirect is only issued to a stored URL that still validates.
- Click counting never delays or fails a redirect.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlsplit

from prometheus_client import Counter, Histogram

from safelink.config import Settings
from safelink.enums import RequestStatus
from safelink.exceptions import (
    CorruptLinkError,
    DuplicateShortCodeError,
    InsecureURLError,
    InvalidURLError,
    LinkCreationError,
    LinkLookupError,
    LinkNotFoundError,
    LinkServiceError,
    LinkStoreError,
    MalformedShortCodeError,
    ShortCodeGenerationError,
    ThreatCheckError,
    UnsafeURLError,
)
from safelink.link_store import LinkStore
from safelink.shortcode import is_valid_format
from safelink.threat_client import ThreatCheckClient, parse_url
from safelink.uniqueness import ShortCodeResult, generate_unique_code

__all__ = ["CreatedLink", "LinkService", "BLOCKED_SCHEMES", "drain_pending_increments"]

BLOCKED_SCHEMES = frozenset({"javascript", "data", "vbscript", "file", "ftp"})
ALLOWED_SCHEMES = frozenset({"http", "https"})
_DEFAULT_PORTS = {"http": 80, "https": 443}

# Strong references to in-flight click increments; asyncio only keeps weak ones.
_pending_increments: set[asyncio.Task] = set()

LINK_CREATION_REQUESTS_TOTAL = Counter(
    "safelink_link_creation_requests_total",
    "Link creation requests by status",
    ["status"],
)
LINK_CREATION_DURATION = Histogram(
    "safelink_link_creation_duration_seconds",
    "Time taken to create short links",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)
LINK_RESOLUTION_REQUESTS_TOTAL = Counter(
    "safelink_link_resolution_requests_total",
    "Short code resolutions by status",
    ["status"],
)
CLICK_INCREMENT_FAILURES_TOTAL = Counter(
    "safelink_click_increment_failures_total",
    "Click counter increments that failed",
)
INSERT_RACE_RETRIES_TOTAL = Counter(
    "safelink_insert_race_retries_total",
    "Inserts retried after losing a short code race",
)


@dataclass(frozen=True)
class CreatedLink:
    short_code: str
    short_url: str
    long_url: str
    attempts: int
    verified: bool = True


def _origin(url: str) -> tuple[str, str, int | None]:
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    port = parts.port or _DEFAULT_PORTS.get(scheme)
    return scheme, (parts.hostname or "").lower(), port


class LinkService:
    """Orchestrates link creation and resolution.

    The store and the threat client are long-lived objects owned by the service
    manager; a ``LinkService`` is cheap and may be built per request. The
    threat client is obtained through ``threat_client`` (a zero-argument
    callable) only when a link is created, so resolving links never depends on
    the threat API being configured.

    Example:
        >>> service = LinkService(store, lambda: threat_client, settings)
        >>> link = await service.create_link("https://example.com", origin="https://sho.rt")
        >>> link.short_url
        'https://sho.rt/aB3xY9'
        >>> await service.resolve_link(link.short_code)
        'https://example.com'
    """

    def __init__(
        self,
        store: LinkStore,
        threat_client: Callable[[], ThreatCheckClient],
        settings: Settings,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self._store = store
        self._threat_client = threat_client
        self._settings = settings
        self._logger = logger or logging.getLogger("safelink.link_service")

    # ========================================================================
    # PUBLIC API METHODS
    # ========================================================================

    async def create_link(self, url: str | None, origin: str) -> CreatedLink:
        """Validate, threat-check and store ``url``; return its short link.

        Args:
            url: The long URL submitted by the user.
            origin: Origin of this service as seen by the client, e.g. ``https://sho.rt``.

        Raises:
            InvalidURLError, InsecureURLError, UnsafeURLError: Rejected input (400).
            ThreatCheckError: The threat check could not be completed.
            LinkCreationError: Code generation or persistence failed (500).
        """
        start_time = time.perf_counter()
        try:
            link = await self._create_link(url, origin.rstrip("/"))
        except (InvalidURLError, InsecureURLError, UnsafeURLError) as exc:
            LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.VALIDATION_ERROR).inc()
            self._logger.warning(f"Link creation rejected: {exc}")
            raise
        except ThreatCheckError as exc:
            LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.REJECTED).inc()
            self._logger.error(f"Threat check failed during link creation: {exc.code.value} {exc.message}")
            raise
        except LinkServiceError as exc:
            LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            self._logger.error(f"Link creation error: {exc}")
            raise
        finally:
            LINK_CREATION_DURATION.observe(time.perf_counter() - start_time)

        LINK_CREATION_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        self._logger.info(f"Created short URL {link.short_url} for {link.long_url}")
        return link

    async def resolve_link(self, short_code: str) -> str:
        """Return the target URL for ``short_code`` and count the click in the background.

        Raises:
            MalformedShortCodeError: Code has the wrong length or characters (400).
            LinkNotFoundError: No mapping for the code (404).
            LinkLookupError: The store failed (500).
            CorruptLinkError: The stored URL does not validate (500).
        """
        if not is_valid_format(short_code):
            LINK_RESOLUTION_REQUESTS_TOTAL.labels(status=RequestStatus.VALIDATION_ERROR).inc()
            raise MalformedShortCodeError("Invalid short code format")

        try:
            link = await self._store.find_by_code(short_code)
        except LinkStoreError as exc:
            LINK_RESOLUTION_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            self._logger.error(f"Database error fetching short URL {short_code}: {exc}")
            raise LinkLookupError("Database error") from exc

        if link is None or not link.long_url:
            LINK_RESOLUTION_REQUESTS_TOTAL.labels(status=RequestStatus.NOT_FOUND).inc()
            raise LinkNotFoundError("Short URL not found")

        parts = parse_url(link.long_url)
        if parts is None or parts.scheme not in ALLOWED_SCHEMES:
            LINK_RESOLUTION_REQUESTS_TOTAL.labels(status=RequestStatus.ERROR).inc()
            self._logger.error(f"Invalid URL in database for {short_code}: {link.long_url}")
            raise CorruptLinkError("Invalid destination URL")

        self._schedule_increment(short_code)
        LINK_RESOLUTION_REQUESTS_TOTAL.labels(status=RequestStatus.SUCCESS).inc()
        return link.long_url

    # ========================================================================
    # PRIVATE HELPER METHODS
    # ========================================================================

    async def _create_link(self, url: str | None, origin: str) -> CreatedLink:
        url = self._validate_syntax(url)
        self._security_check(url, origin)
        verified = await self._threat_check(url)

        result = await self._generate_code()
        try:
            await self._store.insert(result.short_code, url)
        except DuplicateShortCodeError:
            # The pre-check raced with a concurrent insert; the primary key caught it.
            INSERT_RACE_RETRIES_TOTAL.inc()
            self._logger.warning(f"Short code {result.short_code} taken between check and insert, retrying once")
            result = await self._generate_code()
            await self._insert(result.short_code, url)
        except LinkStoreError as exc:
            raise LinkCreationError("Failed to store URL mapping") from exc

        return CreatedLink(
            short_code=result.short_code,
            short_url=f"{origin}/{result.short_code}",
            long_url=url,
            attempts=result.attempts,
            verified=verified,
        )

    @staticmethod
    def _validate_syntax(url: str | None) -> str:
        if not isinstance(url, str) or not url.strip():
            raise InvalidURLError("URL is required")
        url = url.strip()
        if parse_url(url) is None:
            raise InvalidURLError("Please enter a valid URL starting with http:// or https://")
        return url

    @staticmethod
    def _security_check(url: str, origin: str) -> None:
        scheme = urlsplit(url).scheme.lower()
        if scheme in BLOCKED_SCHEMES:
            raise InsecureURLError(f"URLs with the '{scheme}:' scheme are not allowed")
        if scheme not in ALLOWED_SCHEMES:
            raise InsecureURLError("Only http:// and https:// URLs can be shortened")
        if _origin(url) == _origin(origin):
            raise InsecureURLError("Cannot shorten URLs that point to this service")

    async def _threat_check(self, url: str) -> bool:
        """Return True when the URL was verified, False when it passed unverified."""
        try:
            verdict = await self._threat_client().check_url(url)
        except ThreatCheckError as exc:
            if self._settings.THREAT_CHECK_FAIL_OPEN and exc.code.is_upstream_failure:
                self._logger.warning(f"Threat check unavailable ({exc.code.value}); creating unverified link for {url}")
                return False
            raise

        if not verdict.is_safe:
            descriptions = ", ".join(threat.description for threat in verdict.threats)
            raise UnsafeURLError(f"URL flagged as unsafe: {descriptions}", threats=verdict.threats)
        return True

    async def _generate_code(self) -> ShortCodeResult:
        try:
            return await generate_unique_code(
                self._store,
                length=self._settings.SHORT_CODE_LENGTH,
                max_retries=self._settings.SHORT_CODE_MAX_RETRIES,
            )
        except ShortCodeGenerationError as exc:
            raise LinkCreationError(str(exc)) from exc

    async def _insert(self, short_code: str, url: str) -> None:
        try:
            await self._store.insert(short_code, url)
        except LinkStoreError as exc:
            raise LinkCreationError("Failed to store URL mapping") from exc

    def _schedule_increment(self, short_code: str) -> None:
        task = asyncio.create_task(self._increment(short_code), name=f"click:{short_code}")
        _pending_increments.add(task)
        task.add_done_callback(_pending_increments.discard)

    async def _increment(self, short_code: str) -> None:
        try:
            await self._store.increment_click_count(short_code)
        except Exception as exc:
            CLICK_INCREMENT_FAILURES_TOTAL.inc()
            self._logger.error(f"Failed to increment click count for {short_code}: {exc}")


async def drain_pending_increments() -> None:
    """Wait for click increments that are still running."""
    if _pending_increments:
        await asyncio.gather(*list(_pending_increments), return_exceptions=True)
