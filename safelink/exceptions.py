"""Exception taxonomy for the safelink URL shortener.

Classes:
    ShortCodeGenerationError:
        Base class for code generation failures; carries ``attempts``.

    InvalidLengthError / InvalidCodeConfigError:
        Generator or resolver called with an out-of-range configuration.

    CodeStoreError:
        The store failed while checking a candidate (fail fast).

    RetriesExhaustedError:
        Every candidate collided with an existing code.

    LinkStoreError / DuplicateShortCodeError:
        Persistence failures raised by ``LinkStore`` implementations.

    ThreatCheckError:
        The single tagged error type of the threat-check client.

    LinkServiceError and subclasses:
        Orchestrator failures, each carrying the HTTP status the boundary uses.

Example:
    >>> from safelink.exceptions import ThreatCheckError
    >>> from safelink.enums import ThreatErrorCode
    >>> raise ThreatCheckError("Invalid URL provided", ThreatErrorCode.INVALID_URL)
    Traceback (most recent call last):
        ...
    safelink.exceptions.ThreatCheckError: Invalid URL provided
"""

from safelink.enums import ThreatErrorCode

__all__ = [
    "ShortCodeGenerationError",
    "InvalidLengthError",
    "InvalidCodeConfigError",
    "CodeStoreError",
    "RetriesExhaustedError",
    "LinkStoreError",
    "DuplicateShortCodeError",
    "ThreatCheckError",
    "LinkServiceError",
    "InvalidURLError",
    "InsecureURLError",
    "UnsafeURLError",
    "MalformedShortCodeError",
    "LinkNotFoundError",
    "LinkLookupError",
    "CorruptLinkError",
    "LinkCreationError",
]


# ============================================================================
# SHORT CODE GENERATION
# ============================================================================


class ShortCodeGenerationError(Exception):
    """Base class for short code generation failures."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class InvalidLengthError(ShortCodeGenerationError, ValueError):
    """Requested code length is outside the supported range."""


class InvalidCodeConfigError(ShortCodeGenerationError, ValueError):
    """Resolver configuration (length or retry budget) is out of range."""


class CodeStoreError(ShortCodeGenerationError):
    """The link store failed during an existence check."""


class RetriesExhaustedError(ShortCodeGenerationError):
    """All attempts produced codes that already exist."""

    def __init__(self, message: str, attempts: int, last_error: str | None = None):
        super().__init__(message, attempts)
        self.last_error = last_error


# ============================================================================
# LINK STORE
# ============================================================================


class LinkStoreError(Exception):
    """Raised when the data store fails (connection issues, timeouts, bad queries)."""


class DuplicateShortCodeError(LinkStoreError):
    """Raised when inserting a short code that already exists."""


# ============================================================================
# THREAT CHECK
# ============================================================================


class ThreatCheckError(Exception):
    """Error raised by the threat-check client.

    Attributes:
        code: Machine-readable error code.
        status_code: Upstream HTTP status, when the API answered with an error.
        retry_after: Seconds until a throttled call may succeed.
    """

    def __init__(
        self,
        message: str,
        code: ThreatErrorCode,
        status_code: int | None = None,
        retry_after: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.retry_after = retry_after

    def __repr__(self) -> str:
        return f"ThreatCheckError(code={self.code.value!r}, message={self.message!r})"


# ============================================================================
# ORCHESTRATION
# ============================================================================


class LinkServiceError(Exception):
    """Base class for link creation and resolution failures."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidURLError(LinkServiceError):
    status_code = 400


class InsecureURLError(LinkServiceError):
    status_code = 400


class UnsafeURLError(LinkServiceError):
    """The threat-check API flagged the URL."""

    status_code = 400

    def __init__(self, message: str, threats: list | None = None):
        super().__init__(message)
        self.threats = threats or []


class MalformedShortCodeError(LinkServiceError):
    status_code = 400


class LinkNotFoundError(LinkServiceError):
    status_code = 404


class LinkLookupError(LinkServiceError):
    status_code = 500


class CorruptLinkError(LinkServiceError):
    status_code = 500


class LinkCreationError(LinkServiceError):
    status_code = 500
