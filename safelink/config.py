"""Runtime settings for safelink, read from the environment.

Every knob of the service lives on ``Settings``: database and Redis URLs,
short-code length and retry budget, the Safe Browsing credentials and
timeouts, the client-side rate limit, the circuit breaker thresholds and the
verdict cache TTL. ``get_settings()`` builds the object once per process.

Example::

    SAFE_BROWSING_API_KEY=... THREAT_CHECK_FAIL_OPEN=true uvicorn safelink.main:app

An empty ``SAFE_BROWSING_API_KEY`` does not stop the process from starting;
requests that need the threat-check client fail with ``MISSING_API_KEY``
instead, while redirects keep working.
"""

__all__ = ["Settings", "get_settings"]

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "safelink"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # PostgreSQL
    DATABASE_URL: str = "postgresql+asyncpg://safelink:safelink@db:5432/safelink"

    # Redis (threat-check result cache)
    REDIS_URL: str = "redis://redis:6379/0"

    # Short code generation
    SHORT_CODE_LENGTH: int = 6
    SHORT_CODE_MAX_RETRIES: int = 10

    # Google Safe Browsing v4
    SAFE_BROWSING_API_KEY: str = ""
    SAFE_BROWSING_API_URL: str = "https://safebrowsing.googleapis.com/v4/threatMatches:find"
    SAFE_BROWSING_CLIENT_ID: str = "url-shortener"
    SAFE_BROWSING_CLIENT_VERSION: str = "1.0.0"
    SAFE_BROWSING_TIMEOUT_MS: int = 10000
    SAFE_BROWSING_MAX_URLS_PER_REQUEST: int = 500

    # Client-side rate limiting (the upstream does not publish its quota)
    SAFE_BROWSING_RATE_LIMIT: int = 1000
    SAFE_BROWSING_RATE_WINDOW_SECONDS: int = 60

    # Circuit breaker
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5
    CIRCUIT_BREAKER_RECOVERY_SECONDS: int = 60

    # Threat result cache
    THREAT_CACHE_ENABLED: bool = True
    THREAT_CACHE_TTL_SECONDS: int = 86400

    # Allow link creation when the threat API is down (links are logged as unverified)
    THREAT_CHECK_FAIL_OPEN: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
