"""Shared enums for the safelink URL shortener.

This module defines all status and state enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = [
    "HealthStatus",
    "RequestStatus",
    "CircuitState",
    "ThreatType",
    "PlatformType",
    "ThreatEntryType",
    "ThreatErrorCode",
]


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class RequestStatus(StrEnum):
    """Request status values for metrics and logging."""

    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"
    REJECTED = "rejected"
    ERROR = "error"
    NOT_FOUND = "not_found"


class CircuitState(StrEnum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class ThreatType(StrEnum):
    MALWARE = "MALWARE"
    SOCIAL_ENGINEERING = "SOCIAL_ENGINEERING"
    UNWANTED_SOFTWARE = "UNWANTED_SOFTWARE"
    POTENTIALLY_UNWANTED_APPLICATION = "POTENTIALLY_UNWANTED_APPLICATION"


class PlatformType(StrEnum):
    ANY_PLATFORM = "ANY_PLATFORM"
    WINDOWS = "WINDOWS"
    LINUX = "LINUX"
    OSX = "OSX"
    ANDROID = "ANDROID"
    IOS = "IOS"


class ThreatEntryType(StrEnum):
    URL = "URL"
    EXECUTABLE = "EXECUTABLE"


class ThreatErrorCode(StrEnum):
    """Machine-readable codes carried by ``ThreatCheckError``.

    The HTTP boundary selects a status code from these values.
    """

    # Request validation
    INVALID_REQUEST_BODY = "INVALID_REQUEST_BODY"
    MISSING_URLS = "MISSING_URLS"
    INVALID_URLS_FORMAT = "INVALID_URLS_FORMAT"
    NO_URLS_PROVIDED = "NO_URLS_PROVIDED"
    TOO_MANY_URLS = "TOO_MANY_URLS"
    INVALID_URL = "INVALID_URL"
    INVALID_URL_FORMAT = "INVALID_URL_FORMAT"

    # Server configuration
    MISSING_API_KEY = "MISSING_API_KEY"
    MISSING_CLIENT_ID = "MISSING_CLIENT_ID"
    MISSING_CLIENT_VERSION = "MISSING_CLIENT_VERSION"

    # Upstream failures
    API_ERROR = "API_ERROR"
    API_REQUEST_FAILED = "API_REQUEST_FAILED"
    API_TIMEOUT = "API_TIMEOUT"

    # Throttling
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CIRCUIT_BREAKER_OPEN = "CIRCUIT_BREAKER_OPEN"

    @property
    def is_upstream_failure(self) -> bool:
        return self in _UPSTREAM_FAILURES


_UPSTREAM_FAILURES = frozenset(
    {
        ThreatErrorCode.API_ERROR,
        ThreatErrorCode.API_REQUEST_FAILED,
        ThreatErrorCode.API_TIMEOUT,
        ThreatErrorCode.CIRCUIT_BREAKER_OPEN,
    }
)
