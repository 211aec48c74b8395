"""Token bucket limiter backed by a shared key-value store.

Each ``allow`` call is a fresh read-refill-decide-write cycle against the
store; nothing is cached in-process, so any number of service instances can
share one bucket per identifier.

Two strategies are supported:
- ``read_write``: two GETs, decide locally, then one MULTI/EXEC batch. This is
  the layout existing deployments use. Concurrent calls for the same
  identifier can both read the same state and both be admitted.
- ``atomic``: the whole cycle runs inside the store (a Redis script), which
  removes that over-admission window.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Callable, Literal

from app.adapters.rate_limit.base import AbstractBucketStore, SetOperation
from app.core.errors import BucketStoreError, LimiterUnavailableError
from app.services.bucket_math import (
    BucketConfig,
    evaluate_bucket,
    format_timestamp,
    format_tokens,
    state_from_raw,
)

logger = logging.getLogger(__name__)

Strategy = Literal["read_write", "atomic"]

DEFAULT_KEY_PREFIX = "rate_limit:ip"


def hash_identifier(identifier: str) -> str:
    """Hash an identifier for logging without exposing client addresses."""
    return hashlib.sha256(identifier.encode()).hexdigest()[:16]


class TokenBucketLimiter:
    """Per-identifier token bucket limiter.

    The configuration is injected once and shared by reference across all
    concurrent calls; it is never mutated.
    """

    def __init__(
        self,
        store: AbstractBucketStore,
        config: BucketConfig,
        *,
        strategy: Strategy = "read_write",
        key_prefix: str = DEFAULT_KEY_PREFIX,
        call_timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Bucket store adapter.
            config: Validated bucket configuration.
            strategy: ``read_write`` or ``atomic``.
            key_prefix: Namespace for the two per-identifier keys.
            call_timeout_seconds: Default deadline for one ``allow`` call.
            clock: Time source function returning UNIX time in seconds.

        Raises:
            ValueError: If strategy, key_prefix or call_timeout_seconds are invalid.
        """
        if strategy not in ("read_write", "atomic"):
            raise ValueError(f"unknown strategy: {strategy!r}")
        if not key_prefix:
            raise ValueError("key_prefix must be a non-empty string")
        if call_timeout_seconds is not None and call_timeout_seconds <= 0:
            raise ValueError("call_timeout_seconds must be > 0")

        self._store = store
        self._config = config
        self._strategy = strategy
        self._key_prefix = key_prefix
        self._call_timeout_seconds = call_timeout_seconds
        self._clock = clock

    @property
    def config(self) -> BucketConfig:
        return self._config

    @property
    def store(self) -> AbstractBucketStore:
        return self._store

    @property
    def strategy(self) -> Strategy:
        return self._strategy

    def tokens_key(self, identifier: str) -> str:
        return f"{self._key_prefix}:{identifier}:tokens"

    def last_updated_key(self, identifier: str) -> str:
        return f"{self._key_prefix}:{identifier}:last_updated"

    async def allow(self, identifier: str, *, timeout: float | None = None) -> bool:
        """Consume one token for ``identifier`` if one is available.

        Args:
            identifier: Client key, e.g. the originating address.
            timeout: Deadline in seconds for the store calls; defaults to the
                limiter's configured ``call_timeout_seconds``.

        Returns:
            True when the request is allowed, False when the bucket is empty.

        Raises:
            LimiterUnavailableError: If the commit fails or the deadline
                passes. This is never reported as an allow or a deny.
        """
        deadline = timeout if timeout is not None else self._call_timeout_seconds
        try:
            if deadline is None:
                return await self._decide(identifier)
            return await asyncio.wait_for(self._decide(identifier), timeout=deadline)
        except asyncio.TimeoutError as exc:
            logger.error(
                "rate_limit.timeout",
                extra={
                    "identifier_hash": hash_identifier(identifier),
                    "timeout_s": deadline,
                    "strategy": self._strategy,
                },
            )
            raise LimiterUnavailableError(
                code="rate_limiter_timeout",
                message="Rate limiter did not respond in time",
                details={"timeout_seconds": deadline, "store": self._store.name},
            ) from exc

    async def _decide(self, identifier: str) -> bool:
        if self._strategy == "atomic":
            return await self._decide_atomically(identifier)
        return await self._decide_read_write(identifier)

    async def _decide_read_write(self, identifier: str) -> bool:
        now = int(self._clock())
        tokens_key = self.tokens_key(identifier)
        updated_key = self.last_updated_key(identifier)

        # Store.get absorbs errors as None, so both reads fall back to a full bucket.
        raw_tokens = await self._store.get(tokens_key)
        raw_updated = await self._store.get(updated_key)
        state = state_from_raw(raw_tokens, raw_updated, now=now, capacity=self._config.capacity)

        decision = evaluate_bucket(state, now, self._config)
        if decision.new_state is None:
            self._log_denied(identifier, decision.refilled)
            return False

        ttl = self._config.ttl_seconds
        try:
            await self._store.atomic_batch(
                [
                    SetOperation(tokens_key, format_tokens(decision.new_state.tokens), ttl),
                    SetOperation(updated_key, format_timestamp(decision.new_state.last_updated), ttl),
                ]
            )
        except BucketStoreError as exc:
            raise self._commit_failed(identifier, exc) from exc

        logger.debug(
            "rate_limit.committed",
            extra={
                "identifier_hash": hash_identifier(identifier),
                "tokens_left": decision.new_state.tokens,
                "strategy": self._strategy,
            },
        )
        return True

    async def _decide_atomically(self, identifier: str) -> bool:
        try:
            result = await self._store.consume_atomically(
                tokens_key=self.tokens_key(identifier),
                updated_key=self.last_updated_key(identifier),
                capacity=self._config.capacity,
                refill_rate=self._config.refill_rate,
                ttl_seconds=self._config.ttl_seconds,
                now=int(self._clock()),
            )
        except BucketStoreError as exc:
            raise self._commit_failed(identifier, exc) from exc

        if not result.allowed:
            self._log_denied(identifier, result.tokens)
        return result.allowed

    def _log_denied(self, identifier: str, tokens_available: float) -> None:
        logger.info(
            "rate_limit.bucket_empty",
            extra={
                "identifier_hash": hash_identifier(identifier),
                "tokens_available": round(tokens_available, 3),
                "capacity": self._config.capacity,
                "strategy": self._strategy,
            },
        )

    def _commit_failed(self, identifier: str, exc: Exception) -> LimiterUnavailableError:
        logger.error(
            "rate_limit.commit_failed",
            extra={
                "identifier_hash": hash_identifier(identifier),
                "store": self._store.name,
                "strategy": self._strategy,
                "error_type": type(exc).__name__,
                "error_msg": str(exc),
            },
        )
        return LimiterUnavailableError(
            code="rate_limiter_unavailable",
            message="Rate limiter is temporarily unavailable",
            details={"store": self._store.name},
        )
