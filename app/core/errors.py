"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TypedDict


class ErrorDetails(TypedDict, total=False):
    """Client-visible context attached to limiter errors."""

    identifier: str
    timeout_seconds: float
    store: str


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class RateLimitExceededAppError(AppError):
    """Raised when a client has no tokens left in its bucket."""


class LimiterUnavailableError(AppError):
    """Raised when the limiter cannot reach a decision.

    Covers failed commits, timeouts and an unreachable store. Callers must
    never read this as either an allow or a deny.
    """


class BucketStoreError(Exception):
    """Raised by store adapters when a write or script call fails."""
