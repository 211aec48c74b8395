"""Rate limiting dependency for FastAPI routes.

This module wires the token bucket limiter into the HTTP layer.

Design goals:
- Minimal coupling: API routes depend on a dependency function only.
- Swap-friendly: the bucket store (Redis or in-memory) is chosen by settings
  behind an abstract interface.
- Fail closed but distinguishable: an unavailable limiter yields 503, never
  a silent allow and never a 429.

Identifier strategy: the client's originating address. Requests without a
usable address are rejected with 400 before the limiter is consulted.
"""

from __future__ import annotations

import logging

from fastapi import Request

from app.adapters.rate_limit.base import AbstractBucketStore
from app.adapters.rate_limit.in_memory import InMemoryBucketStore
from app.adapters.rate_limit.redis_store import RedisBucketStore
from app.core.config import settings
from app.core.errors import RateLimitExceededAppError, ValidationAppError
from app.services.bucket_math import BucketConfig
from app.services.token_bucket import TokenBucketLimiter, hash_identifier

logger = logging.getLogger(__name__)


_limiter: TokenBucketLimiter | None = None


def build_bucket_store() -> AbstractBucketStore:
    """Create the bucket store selected by ``LIMITER_STORE_BACKEND``."""

    if settings.limiter.store_backend == "memory":
        logger.warning(
            "rate_limit.memory_store",
            extra={"reason": "per_process_limits"},
        )
        return InMemoryBucketStore()
    return RedisBucketStore.from_settings(settings.redis)


def get_rate_limiter() -> TokenBucketLimiter:
    """Return the process-wide limiter instance.

    The limiter holds no bucket state itself; caching it only keeps one
    connection pool per process.

    Returns:
        TokenBucketLimiter: Configured limiter instance.
    """

    global _limiter

    if _limiter is None:
        cfg = settings.limiter
        _limiter = TokenBucketLimiter(
            build_bucket_store(),
            BucketConfig(
                capacity=cfg.capacity,
                refill_rate=cfg.refill_rate,
                ttl_seconds=cfg.ttl_seconds,
            ),
            strategy=cfg.strategy,
            key_prefix=cfg.key_prefix,
            call_timeout_seconds=cfg.call_timeout_seconds,
        )

    return _limiter


async def close_rate_limiter() -> None:
    """Close the cached limiter's store and drop the instance."""

    global _limiter

    if _limiter is not None:
        await _limiter.store.close()
        _limiter = None


def extract_identifier(request: Request) -> str:
    """Return the per-client identifier for ``request``.

    Raises:
        ValidationAppError: If the originating address is unknown.
    """

    host = request.client.host if request.client else None
    if not host:
        logger.error(
            "rate_limit.identifier_missing",
            extra={"request_path": request.url.path},
        )
        raise ValidationAppError(
            code="identifier_unavailable",
            message="Unable to determine client IP",
        )
    return host


async def enforce_rate_limit(request: Request) -> None:
    """FastAPI dependency enforcing the per-client token bucket.

    Consumes one token from the requester's bucket. Store failures propagate
    as LimiterUnavailableError (503) from the limiter.

    Args:
        request: FastAPI request.

    Raises:
        ValidationAppError: 400 when the client address cannot be determined.
        RateLimitExceededAppError: 429 when the bucket is empty.
    """

    if not settings.app.rate_limit_enabled:
        return

    identifier = extract_identifier(request)
    limiter = get_rate_limiter()
    identifier_hash = hash_identifier(identifier)

    if await limiter.allow(identifier):
        logger.info(
            "rate_limit.allowed",
            extra={
                "identifier_hash": identifier_hash,
                "request_path": request.url.path,
            },
        )
        return

    logger.warning(
        "rate_limit.exceeded",
        extra={
            "identifier_hash": identifier_hash,
            "request_path": request.url.path,
            "capacity": limiter.config.capacity,
            "refill_rate": limiter.config.refill_rate,
        },
    )
    raise RateLimitExceededAppError(
        code="rate_limit_exceeded",
        message=settings.app.failure_message,
        details={"identifier": identifier},
    )
