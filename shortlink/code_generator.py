"""Short-code derivation with a bounded generate-and-verify loop.

Flow Diagram — generate()
=========================
::
    ┌──────────────────┐
    │ seed, domain     │
    │ ts = clock()     │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ code = base62(   │◄──────────┐
    │  sha256(seed+ts))│           │
    └────────┬─────────┘           │
             ▼                     │
    ┌──────────────────┐   maybe   │
    │ filter.might_    ├──present──┤ ts += 1
    │ contain(domain/  │           │ attempts += 1
    │         code)    │           │
    └────────┬─────────┘           │
        absent│            attempts == max
             ▼                     ▼
    ┌──────────────────┐   ┌──────────────────┐
    │ return code      │   │ GenerationExhau- │
    └──────────────────┘   │ sted             │
                           └──────────────────┘

Key Behaviours
===============
- The filter is only a fast reject. The database unique constraint remains
  the source of truth; see ``ShortLinkService.create_short_link`` for the
  post-insert reconciliation.
- Exhaustion is surfaced, not retried. The caller decides whether to resubmit.
"""

import hashlib
import logging
import time
from collections.abc import Callable

from prometheus_client import Counter

from shortlink.errors import GenerationExhausted
from shortlink.existence_filter import ExistenceFilter

__all__ = ["BASE62_ALPHABET", "CodeGenerator", "hash_to_base62"]

logger = logging.getLogger(__name__)

BASE62_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"

CODE_GENERATION_ATTEMPTS_TOTAL = Counter(
    "shortlink_code_generation_attempts_total",
    "Candidate short codes tested against the existence filter",
)
CODE_GENERATION_EXHAUSTED_TOTAL = Counter(
    "shortlink_code_generation_exhausted_total",
    "Short code generations that ran out of attempts",
)


def _base62_encode(number: int) -> str:
    """Encode a non-negative integer to base62.

    Example:
        >>> _base62_encode(12345)
        '3d7'
    """
    if number < 0:
        raise ValueError("Number must be non-negative")

    if number == 0:
        return BASE62_ALPHABET[0]

    base = len(BASE62_ALPHABET)
    result = []

    while number > 0:
        number, remainder = divmod(number, base)
        result.append(BASE62_ALPHABET[remainder])

    return "".join(result[::-1])


def hash_to_base62(value: str, length: int = 6) -> str:
    """One-way, fixed-width base62 digest of ``value``."""
    assert isinstance(length, int) and length > 0, f"length must be a positive integer, got {length!r}"
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    number = int.from_bytes(digest[:16], "big") % (len(BASE62_ALPHABET) ** length)
    return _base62_encode(number).rjust(length, BASE62_ALPHABET[0])


class CodeGenerator:
    """Derives short codes that the existence filter reports as free."""

    def __init__(
        self,
        existence_filter: ExistenceFilter,
        code_length: int = 6,
        max_attempts: int = 10,
        clock: Callable[[], int] = time.time_ns,
    ) -> None:
        assert max_attempts > 0, f"max_attempts must be positive, got {max_attempts!r}"
        self._filter = existence_filter
        self._code_length = code_length
        self._max_attempts = max_attempts
        self._clock = clock

    async def generate(self, seed: str, domain: str) -> str:
        """Return a code whose ``domain/code`` is definitely not in the filter.

        Raises:
            GenerationExhausted: every one of ``max_attempts`` candidates hit
                the filter.
        """
        assert isinstance(seed, str) and seed, f"seed must be a non-empty string, got {seed!r}"
        assert isinstance(domain, str) and domain, f"domain must be a non-empty string, got {domain!r}"

        timestamp = self._clock()
        for attempt in range(1, self._max_attempts + 1):
            code = hash_to_base62(f"{seed}{timestamp}", self._code_length)
            CODE_GENERATION_ATTEMPTS_TOTAL.inc()
            if not await self._filter.might_contain(f"{domain}/{code}"):
                if attempt > 1:
                    logger.debug(f"Short code {domain}/{code} found on attempt {attempt}")
                return code
            timestamp += 1

        CODE_GENERATION_EXHAUSTED_TOTAL.inc()
        logger.warning(f"Short code generation exhausted for {domain} after {self._max_attempts} attempts")
        raise GenerationExhausted(domain, self._max_attempts)
