"""Short code generation utilities.

Codes are drawn from a 62-symbol alphabet using the ``secrets`` CSPRNG. Each
symbol consumes two random bytes (a 16-bit value reduced modulo 62), which
keeps the modulo bias below 0.1%.

Functions:
    generate_code(length):  Random code of ``length`` symbols.
    is_valid_format(code):  Check length and alphabet of a candidate code.
    short_code_info():  Alphabet and keyspace figures for diagnostics.

Example:
    >>> from safelink.shortcode import generate_code, is_valid_format
    >>> code = generate_code(6)
    >>> is_valid_format(code)
    True
    >>> is_valid_format("abc-123")
    False
"""

import secrets
import string
from collections.abc import Callable

from safelink.exceptions import InvalidLengthError

__all__ = [
    "ALPHABET",
    "DEFAULT_CODE_LENGTH",
    "MIN_CODE_LENGTH",
    "MAX_CODE_LENGTH",
    "DEFAULT_MAX_RETRIES",
    "generate_code",
    "is_valid_format",
    "short_code_info",
]

ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits
_ALPHABET_SET = frozenset(ALPHABET)

DEFAULT_CODE_LENGTH = 6
MIN_CODE_LENGTH = 4
MAX_CODE_LENGTH = 8
DEFAULT_MAX_RETRIES = 10


def generate_code(length: int = DEFAULT_CODE_LENGTH, random_bytes: Callable[[int], bytes] = secrets.token_bytes) -> str:
    """Generate a random alphanumeric short code.

    Args:
        length: Number of symbols, between 4 and 8 inclusive.
        random_bytes: Byte source, ``secrets.token_bytes`` unless overridden.

    Returns:
        str: The generated code.

    Raises:
        InvalidLengthError: If ``length`` is outside [4, 8].
    """
    if isinstance(length, bool) or not isinstance(length, int) or not MIN_CODE_LENGTH <= length <= MAX_CODE_LENGTH:
        raise InvalidLengthError(
            f"Code length must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH} characters (given value: {length!r})"
        )

    data = random_bytes(length * 2)
    base = len(ALPHABET)
    return "".join(ALPHABET[((data[i * 2] << 8) | data[i * 2 + 1]) % base] for i in range(length))


def is_valid_format(code: object) -> bool:
    if not isinstance(code, str) or not code:
        return False
    if not MIN_CODE_LENGTH <= len(code) <= MAX_CODE_LENGTH:
        return False
    return all(char in _ALPHABET_SET for char in code)


def short_code_info() -> dict:
    """Describe the alphabet, length bounds and keyspace per code length."""
    base = len(ALPHABET)
    return {
        "character_set": ALPHABET,
        "character_set_size": base,
        "default_length": DEFAULT_CODE_LENGTH,
        "min_length": MIN_CODE_LENGTH,
        "max_length": MAX_CODE_LENGTH,
        "max_retries": DEFAULT_MAX_RETRIES,
        "possible_combinations": {f"length{n}": base**n for n in (6, 7, 8)},
    }
