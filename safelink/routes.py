"""FastAPI route definitions for the safelink REST API.

API Endpoint Overview
=====================
::
    GET  /health
        └─ HealthResponse (200)

    POST /shorten
        ├─ ShortenRequest (request body)
        └─ ShortenResponse (200) or ErrorResponse (400/429/500/502/503)

    GET  /threat-check
        └─ ThreatCheckServiceInfo (200) or 503

    POST /threat-check
        ├─ ThreatCheckRequest (request body)
        └─ ThreatCheckResponse (200) or error status by error code

    GET  /:short_code
        └─ 307 Redirect or {"error"} (400/404/500)

Key Behaviours
===============
- Threat-check failures map to HTTP statuses by error code; throttling
  responses carry ``Retry-After``.
- The short URL origin is the origin the client used to reach the service.
- 307 redirects preserve the HTTP method.
"""

import datetime
import time
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from safelink.dependencies import RequestContext, get_link_service, get_request_context
from safelink.enums import HealthStatus, ThreatErrorCode
from safelink.exceptions import LinkServiceError, ThreatCheckError, UnsafeURLError
from safelink.link_service import LinkService
from safelink.schemas import (
    ErrorResponse,
    HealthResponse,
    ShortenRequest,
    ShortenResponse,
    ThreatCheckMetadata,
    ThreatCheckRequest,
    ThreatCheckResponse,
    ThreatCheckServiceInfo,
)

__all__ = ["router", "threat_error_status", "threat_error_response"]

router = APIRouter()

THREAT_ERROR_STATUS = {
    ThreatErrorCode.INVALID_REQUEST_BODY: 400,
    ThreatErrorCode.MISSING_URLS: 400,
    ThreatErrorCode.INVALID_URLS_FORMAT: 400,
    ThreatErrorCode.NO_URLS_PROVIDED: 400,
    ThreatErrorCode.TOO_MANY_URLS: 400,
    ThreatErrorCode.INVALID_URL: 400,
    ThreatErrorCode.INVALID_URL_FORMAT: 400,
    ThreatErrorCode.MISSING_API_KEY: 500,
    ThreatErrorCode.MISSING_CLIENT_ID: 500,
    ThreatErrorCode.MISSING_CLIENT_VERSION: 500,
    ThreatErrorCode.API_ERROR: 502,
    ThreatErrorCode.API_REQUEST_FAILED: 502,
    ThreatErrorCode.API_TIMEOUT: 502,
    ThreatErrorCode.RATE_LIMIT_EXCEEDED: 429,
    ThreatErrorCode.CIRCUIT_BREAKER_OPEN: 503,
}

SAFE_BROWSING_API_VERSION = "v4"


def threat_error_status(code: Any) -> int:
    return THREAT_ERROR_STATUS.get(code, 500)


def _retry_headers(exc: ThreatCheckError) -> dict[str, str] | None:
    if exc.retry_after is None:
        return None
    return {"Retry-After": str(exc.retry_after)}


def threat_error_response(exc: ThreatCheckError) -> JSONResponse:
    """Error body for a threat-check failure outside the /threat-check endpoint."""
    body = ErrorResponse(error=exc.message, error_code=exc.code.value)
    return JSONResponse(
        status_code=threat_error_status(exc.code),
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers=_retry_headers(exc),
    )


def _threat_check_failure(
    message: str,
    code: ThreatErrorCode,
    started: float,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ThreatCheckResponse(
        success=False,
        error=message,
        error_code=code.value,
        metadata=ThreatCheckMetadata(
            urls_checked=0,
            checked_at=datetime.datetime.now(datetime.timezone.utc),
            processing_time_ms=round((time.perf_counter() - started) * 1000),
        ),
    )
    return JSONResponse(
        status_code=threat_error_status(code),
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers=headers,
    )


# ============================================================================
# HEALTH
# ============================================================================


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(ctx: RequestContext = Depends(get_request_context)) -> HealthResponse:
    db_status = HealthStatus.HEALTHY
    cache_status = HealthStatus.HEALTHY

    try:
        await ctx.link_store.ping()
    except Exception as e:
        ctx.logger.error(f"Database health check failed: {e}")
        db_status = HealthStatus.UNHEALTHY

    try:
        await ctx.cache.ping()
    except Exception as e:
        ctx.logger.error(f"Cache health check failed: {e}")
        cache_status = HealthStatus.UNHEALTHY

    status = (
        HealthStatus.HEALTHY
        if db_status is HealthStatus.HEALTHY and cache_status is HealthStatus.HEALTHY
        else HealthStatus.UNHEALTHY
    )
    ctx.logger.debug(f"Health check completed: {status.value}")
    return HealthResponse(status=status, database=db_status, cache=cache_status)


# ============================================================================
# LINKS
# ============================================================================


@router.post("/shorten", response_model=ShortenResponse, tags=["links"])
async def shorten_url(
    payload: ShortenRequest,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
):
    origin = str(request.base_url).rstrip("/")
    try:
        link = await service.create_link(payload.url, origin)
    except UnsafeURLError as exc:
        body = ErrorResponse(error=exc.message, threats=exc.threats)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json", by_alias=True, exclude_none=True))
    except LinkServiceError as exc:
        body = ErrorResponse(error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json", by_alias=True, exclude_none=True))
    except ThreatCheckError as exc:
        return threat_error_response(exc)

    ctx.logger.info(f"Shortened in {ctx.get_duration():.1f} ms: {link.short_code}")
    return ShortenResponse(short_url=link.short_url, short_code=link.short_code)


# ============================================================================
# THREAT CHECK
# ============================================================================


@router.get(
    "/threat-check", response_model=ThreatCheckServiceInfo, response_model_exclude_none=True, tags=["threat-check"]
)
async def threat_check_info(ctx: RequestContext = Depends(get_request_context)):
    try:
        client = ctx.service_manager.get_threat_client()
    except ThreatCheckError as exc:
        ctx.logger.error(f"Safe Browsing service misconfigured: {exc.message}")
        body = ThreatCheckServiceInfo(
            version=SAFE_BROWSING_API_VERSION,
            status=HealthStatus.UNHEALTHY,
            error=exc.message,
        )
        return JSONResponse(status_code=503, content=body.model_dump(mode="json", by_alias=True, exclude_none=True))

    return ThreatCheckServiceInfo(
        version=SAFE_BROWSING_API_VERSION,
        status=HealthStatus.HEALTHY,
        max_urls_per_request=client.max_urls_per_request,
        rate_limit=client.rate_limit_info(),
        circuit_breaker=client.circuit_breaker_info(),
    )


@router.post(
    "/threat-check", response_model=ThreatCheckResponse, response_model_exclude_none=True, tags=["threat-check"]
)
async def check_threats(payload: ThreatCheckRequest, ctx: RequestContext = Depends(get_request_context)):
    started = time.perf_counter()

    if payload.urls is None:
        return _threat_check_failure("URLs are required", ThreatErrorCode.MISSING_URLS, started)
    urls = [payload.urls] if isinstance(payload.urls, str) else payload.urls
    if not isinstance(urls, list):
        return _threat_check_failure(
            "URLs must be a string or an array of strings", ThreatErrorCode.INVALID_URLS_FORMAT, started
        )

    try:
        client = ctx.service_manager.get_threat_client()
        results = await client.check_urls(urls)
    except ThreatCheckError as exc:
        ctx.logger.warning(f"Threat check failed ({exc.code.value}): {exc.message}")
        return _threat_check_failure(exc.message, exc.code, started, headers=_retry_headers(exc))

    ctx.logger.info(f"Threat check for client {payload.client_id or 'anonymous'}: {len(results)} URLs")
    return ThreatCheckResponse(
        success=True,
        results=results,
        metadata=ThreatCheckMetadata(
            urls_checked=len(results),
            checked_at=datetime.datetime.now(datetime.timezone.utc),
            processing_time_ms=round((time.perf_counter() - started) * 1000),
        ),
    )


# ============================================================================
# REDIRECT
# ============================================================================


@router.get("/{short_code}", tags=["redirect"])
async def redirect_to_url(
    short_code: str,
    ctx: RequestContext = Depends(get_request_context),
    service: LinkService = Depends(get_link_service),
):
    try:
        long_url = await service.resolve_link(short_code)
    except LinkServiceError as exc:
        ctx.logger.warning(f"Redirect failed for {short_code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    ctx.logger.info(f"Redirect {short_code} -> {long_url}")
    return RedirectResponse(url=long_url, status_code=307)
