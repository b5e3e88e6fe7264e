"""Unique short code allocation.

Random codes are generated and checked against the link store until an
unused one is found or the retry budget runs out.

Flow Diagram — generate_unique_code()
=====================================
::
    ┌─────────────┐
    │ Validate    │──── bad length / retries ──▶ InvalidCodeConfigError (0 attempts)
    │ config      │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ generate_   │◀─────────────┐
    │ code()      │              │
    └──────┬──────┘              │
           ▼                     │ collision
    ┌─────────────┐              │ (attempts < max)
    │ store.      │──── exists ──┘
    │ exists()    │
    └──────┬──────┘
     free  │   store error ──▶ CodeStoreError (no further attempts)
           ▼
    ┌─────────────┐
    │ Return code │
    │ + attempts  │
    └─────────────┘

Key Behaviours
===============
- 62^6 ≈ 5.68e10 codes at the default length, so a bounded
  generate-and-check loop is enough; grow the length (up to 8) before
  reaching for a reservation scheme.
- The existence check races with concurrent inserts. The primary key is the
  real guarantee; the check only avoids wasted writes.
- Store failures abort immediately because retries cannot fix them.
"""

import logging
from dataclasses import dataclass

from prometheus_client import Counter

from safelink.exceptions import CodeStoreError, InvalidCodeConfigError, LinkStoreError, RetriesExhaustedError
from safelink.link_store import LinkStore
from safelink.shortcode import (
    DEFAULT_CODE_LENGTH,
    DEFAULT_MAX_RETRIES,
    MAX_CODE_LENGTH,
    MIN_CODE_LENGTH,
    generate_code,
)

__all__ = ["ShortCodeResult", "generate_unique_code", "MIN_RETRIES", "MAX_RETRIES"]

logger = logging.getLogger("safelink.uniqueness")

MIN_RETRIES = 1
MAX_RETRIES = 100

SHORT_CODE_COLLISIONS_TOTAL = Counter(
    "safelink_short_code_collisions_total",
    "Generated short codes that were already taken",
)
SHORT_CODE_ATTEMPTS_TOTAL = Counter(
    "safelink_short_code_attempts_total",
    "Short code candidates generated",
)


def _int_between(value: object, low: int, high: int) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and low <= value <= high


@dataclass(frozen=True)
class ShortCodeResult:
    short_code: str
    attempts: int


async def generate_unique_code(
    store: LinkStore,
    length: int = DEFAULT_CODE_LENGTH,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> ShortCodeResult:
    """Generate a short code that is not yet present in ``store``.

    Args:
        store: Link store used for existence checks.
        length: Code length, 4 to 8.
        max_retries: Maximum number of candidates to try, 1 to 100.

    Returns:
        ShortCodeResult: The free code and the number of attempts used.

    Raises:
        InvalidCodeConfigError: Bad ``length`` or ``max_retries`` (no attempt made).
        CodeStoreError: The store failed; ``attempts`` counts the failing attempt.
        RetriesExhaustedError: Every candidate collided.
    """
    if not _int_between(length, MIN_CODE_LENGTH, MAX_CODE_LENGTH):
        raise InvalidCodeConfigError(
            f"Invalid code length. Must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH} characters.",
            attempts=0,
        )
    if not _int_between(max_retries, MIN_RETRIES, MAX_RETRIES):
        raise InvalidCodeConfigError(
            f"Invalid max_retries. Must be between {MIN_RETRIES} and {MAX_RETRIES}.",
            attempts=0,
        )

    logger.debug(f"Starting short code generation with length {length}, max retries {max_retries}")

    last_error: str | None = None
    for attempt in range(1, max_retries + 1):
        short_code = generate_code(length)
        SHORT_CODE_ATTEMPTS_TOTAL.inc()

        try:
            taken = await store.exists(short_code)
        except LinkStoreError as exc:
            logger.error(f"Error checking short code (attempt {attempt}): {exc}")
            raise CodeStoreError(f"Database error: {exc}", attempts=attempt) from exc

        if not taken:
            logger.info(f"Generated unique short code after {attempt} attempt(s)")
            return ShortCodeResult(short_code=short_code, attempts=attempt)

        SHORT_CODE_COLLISIONS_TOTAL.inc()
        logger.warning(f"Short code collision detected: {short_code} (attempt {attempt})")
        last_error = f"Code collision on attempt {attempt}"

    message = f"Failed to generate unique short code after {max_retries} attempts. Last error: {last_error}"
    logger.error(message)
    raise RetriesExhaustedError(message, attempts=max_retries, last_error=last_error)
