"""Error taxonomy of the coordination layer.

Every error here is terminal for the current request or delivery; none of
them is retried inside the layer. The HTTP boundary maps them to status codes
in ``shortlink.main``.
"""

__all__ = [
    "CoordinationError",
    "StoreUnavailable",
    "GenerationExhausted",
    "ConflictDetected",
    "LockBusy",
    "AuthenticationFailed",
]


class CoordinationError(Exception):
    """Base class for all coordination-layer errors."""


class StoreUnavailable(CoordinationError):
    """The key-value store could not be reached or timed out.

    Never interpreted as "key absent" by any primitive.
    """


class GenerationExhausted(CoordinationError):
    """No free short code was found within the attempt bound."""

    def __init__(self, domain: str, attempts: int) -> None:
        super().__init__(f"Failed to generate a short code for {domain} after {attempts} attempts")
        self.domain = domain
        self.attempts = attempts


class ConflictDetected(CoordinationError):
    """A verified duplicate: the key already exists in the source of truth."""

    def __init__(self, key: str, message: str | None = None) -> None:
        super().__init__(message or f"'{key}' already exists")
        self.key = key


class LockBusy(CoordinationError):
    """Another operation for the same key is already in flight."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Operation already in progress for '{name}'")
        self.name = name


class AuthenticationFailed(CoordinationError):
    """Credentials did not match an active user."""
