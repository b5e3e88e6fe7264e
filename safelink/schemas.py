"""Pydantic schemas for request/response validation in safelink.

This module defines Pydantic models for API input validation and output
serialization, plus the threat-check value types shared by the client, the
cache and the HTTP layer.

Schema Hierarchy
=================
::
    ShortenRequest (Input)
    └─ url: str | None

    ShortenResponse (Output)
    ├─ success: bool
    ├─ shortUrl: str
    └─ shortCode: str

    ThreatCheckRequest (Input)
    ├─ urls: str | list
    └─ clientId: str | None

    ThreatCheckResponse (Output)
    ├─ success: bool
    ├─ results: list[ThreatDetectionResult] | None
    ├─ error / errorCode: str | None
    └─ metadata: ThreatCheckMetadata

    ThreatDetectionResult
    ├─ url: str
    ├─ isSafe: bool
    ├─ threats: list[ThreatInfo]
    ├─ checkedAt: datetime
    └─ cacheExpiresAt: datetime | None

Key Behaviours
===============
- Python attributes are snake_case; JSON uses camelCase aliases.
- Models accept either form on input (``populate_by_name``).
- ThreatDetectionResult round-trips through JSON for the Redis cache.

Classes:
    ShortenRequest / ShortenResponse:  POST /shorten.
    ThreatCheckRequest / ThreatCheckResponse:  POST /threat-check.
    ThreatDetectionResult / ThreatInfo:  Verdict for a single URL.
    RateLimitInfo / CircuitBreakerInfo:  Snapshots of client protection state.
    ErrorResponse:  Error body for the shorten and redirect endpoints.
    HealthResponse:  Output schema for health checks.
"""

import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from safelink.enums import CircuitState, HealthStatus

__all__ = [
    "ShortenRequest",
    "ShortenResponse",
    "ErrorResponse",
    "ThreatInfo",
    "ThreatDetectionResult",
    "RateLimitInfo",
    "CircuitBreakerInfo",
    "ThreatCheckRequest",
    "ThreatCheckMetadata",
    "ThreatCheckResponse",
    "ThreatCheckServiceInfo",
    "HealthResponse",
]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ShortenRequest(BaseModel):
    url: str | None = None


class ShortenResponse(CamelModel):
    success: bool = True
    short_url: str
    short_code: str


class ThreatInfo(BaseModel):
    type: str
    platform: str
    description: str


class ErrorResponse(CamelModel):
    success: bool = False
    error: str
    error_code: str | None = None
    threats: list[ThreatInfo] | None = None


class ThreatDetectionResult(CamelModel):
    url: str
    is_safe: bool
    threats: list[ThreatInfo] = Field(default_factory=list)
    checked_at: datetime.datetime
    cache_expires_at: datetime.datetime | None = None


class RateLimitInfo(CamelModel):
    remaining: int
    reset_time: datetime.datetime
    limit: int


class CircuitBreakerInfo(CamelModel):
    state: CircuitState
    failure_count: int
    last_failure_time: datetime.datetime | None = None
    next_attempt_time: datetime.datetime | None = None


class ThreatCheckRequest(CamelModel):
    """Body of POST /threat-check; ``urls`` may be a single URL or a list."""

    urls: Any = None
    client_id: str | None = None


class ThreatCheckMetadata(CamelModel):
    urls_checked: int
    checked_at: datetime.datetime
    processing_time_ms: int


class ThreatCheckResponse(CamelModel):
    success: bool
    results: list[ThreatDetectionResult] | None = None
    error: str | None = None
    error_code: str | None = None
    metadata: ThreatCheckMetadata


class ThreatCheckServiceInfo(CamelModel):
    service: str = "Safe Browsing API"
    version: str
    status: HealthStatus
    max_urls_per_request: int | None = None
    rate_limit: RateLimitInfo | None = None
    circuit_breaker: CircuitBreakerInfo | None = None
    error: str | None = None


class HealthResponse(BaseModel):
    status: HealthStatus
    database: HealthStatus
    cache: HealthStatus
