"""Shared enums for the short-link service.

This module defines all status and state enums used across the codebase.
Several of them double as tagged results: callers branch on the value
instead of catching an exception for the expected "absent" or "skipped" case.
"""

from enum import StrEnum

__all__ = [
    "HealthStatus",
    "RequestStatus",
    "IdempotencyState",
    "ConsumeOutcome",
    "InsertStatus",
    "LogoutStatus",
    "LockOutcome",
]


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class RequestStatus(StrEnum):
    """Request status values for metrics and logging."""

    SUCCESS = "success"
    CONFLICT = "conflict"
    ERROR = "error"


class IdempotencyState(StrEnum):
    """Values stored under an idempotency key.

    ``ABSENT`` is never written; it is what a missing key means.
    """

    ABSENT = ""
    IN_PROGRESS = "0"
    DONE = "1"

    @classmethod
    def from_stored(cls, value: str | None) -> "IdempotencyState":
        if value is None:
            return cls.ABSENT
        try:
            return cls(value)
        except ValueError:
            return cls.IN_PROGRESS


class ConsumeOutcome(StrEnum):
    """Why a delivery was (or was not) processed."""

    PROCESSED = "processed"
    SKIPPED_DONE = "skipped_done"
    SKIPPED_IN_PROGRESS = "skipped_in_progress"


class InsertStatus(StrEnum):
    """Result of a row insert through a repository."""

    INSERTED = "inserted"
    UNIQUE_VIOLATION = "unique_violation"


class LogoutStatus(StrEnum):
    """Result of a logout attempt."""

    LOGGED_OUT = "logged_out"
    SESSION_NOT_FOUND = "session_not_found"


class LockOutcome(StrEnum):
    """Lock acquisition outcomes for metrics."""

    ACQUIRED = "acquired"
    BUSY = "busy"
    RELEASED = "released"
    LOST = "lost"
