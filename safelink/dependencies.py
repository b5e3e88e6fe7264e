"""Dependency injection with a process-wide service manager.

Shared resources (settings, logger, link store, Redis client, threat-check
client) are created once and handed to request handlers through FastAPI
dependencies. Only the request context is built per request.

Resource Ownership
==================
::
    ServiceManager (one per process)
    ├─ settings          Settings (lru_cache)
    ├─ logger            "safelink" logger, configured once
    ├─ link_store        SqlAlchemyLinkStore(async_session)
    ├─ redis             redis.asyncio client (threat cache, health)
    └─ threat client     ThreatCheckClient, built on first use

Key Behaviours
===============
- The threat client holds the rate limiter and circuit breaker, so it must be
  shared; it is created lazily because a missing API key should fail the
  requests that need it, not the whole process.
- Click increments still in flight are awaited before connections close.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Request

from safelink.config import Settings, get_settings
from safelink.database import async_session
from safelink.link_service import LinkService, drain_pending_increments
from safelink.link_store import LinkStore, SqlAlchemyLinkStore
from safelink.threat_cache import ThreatResultCache
from safelink.threat_client import ThreatCheckClient, create_threat_client

__all__ = [
    "ServiceManager",
    "RequestContext",
    "get_service_manager",
    "get_request_context",
    "get_link_service",
]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# ============================================================================
# SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Owner of the shared resources used by every request.

    Components may be passed to ``initialize`` to replace the defaults built
    from settings.
    """

    def __init__(self) -> None:
        self._initialized = False
        self._threat_client: Optional[ThreatCheckClient] = None
        self.threat_cache: Optional[ThreatResultCache] = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(
        self,
        settings: Optional[Settings] = None,
        link_store: Optional[LinkStore] = None,
        redis_client: Optional[redis.Redis] = None,
        threat_client: Optional[ThreatCheckClient] = None,
    ) -> None:
        """Initialize shared resources once at startup."""
        if self._initialized:
            return

        self.settings = settings or get_settings()
        self.logger = self._setup_logger()
        self.link_store = link_store or SqlAlchemyLinkStore(async_session)
        self.redis = redis_client or redis.from_url(self.settings.REDIS_URL, encoding="utf-8", decode_responses=True)
        if self.settings.THREAT_CACHE_ENABLED:
            self.threat_cache = ThreatResultCache(self.redis, ttl_seconds=self.settings.THREAT_CACHE_TTL_SECONDS)
        self._threat_client = threat_client
        self._initialized = True
        self.logger.info(f"{self.settings.APP_NAME} services initialized ({self.settings.APP_ENV})")

    def _setup_logger(self) -> logging.Logger:
        logger = logging.getLogger("safelink")
        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
        logger.setLevel(self.settings.LOG_LEVEL.upper())
        return logger

    def get_threat_client(self) -> ThreatCheckClient:
        """Return the shared threat client, building it on first use.

        Raises:
            ThreatCheckError: The Safe Browsing settings are incomplete.
        """
        if self._threat_client is None:
            self._threat_client = create_threat_client(self.settings, cache=self.threat_cache)
            self.logger.info("Safe Browsing client created")
        return self._threat_client

    async def cleanup(self) -> None:
        """Release shared resources at shutdown."""
        if not self._initialized:
            return
        await drain_pending_increments()
        if self._threat_client is not None:
            await self._threat_client.aclose()
            self._threat_client = None
        await self.redis.aclose()
        self._initialized = False


# Global instance
_service_manager = ServiceManager()


# ============================================================================
# REQUEST CONTEXT
# ============================================================================


@dataclass
class RequestContext:
    """Per-request tracking data plus access to the shared resources.

    Attributes:
        service_manager: Process-wide resources
        request_id: Unique identifier for this request
        client_ip: Client IP address
        user_agent: Client user agent string
        start_time: Request start timestamp
    """

    service_manager: ServiceManager
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    start_time: float = field(default_factory=time.perf_counter)

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def link_store(self) -> LinkStore:
        return self.service_manager.link_store

    @property
    def cache(self) -> redis.Redis:
        return self.service_manager.redis

    @property
    def logger(self) -> logging.LoggerAdapter:
        """Shared logger tagged with this request."""
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {"request_id": self.request_id, "client_ip": self.client_ip},
        )

    def get_duration(self) -> float:
        """Request duration in milliseconds."""
        return (time.perf_counter() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


async def get_service_manager() -> ServiceManager:
    if not _service_manager.initialized:
        await _service_manager.initialize()
    return _service_manager


async def get_request_context(
    request: Request,
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    return RequestContext(
        service_manager=manager,
        request_id=request_id,
        client_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def get_link_service(ctx: RequestContext = Depends(get_request_context)) -> LinkService:
    """Build the orchestrator for this request from the shared resources."""
    return LinkService(
        ctx.link_store,
        ctx.service_manager.get_threat_client,
        ctx.settings,
        logger=ctx.logger,
    )
