"""In-memory bucket store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state.
- Expiry is evaluated lazily on read against the injected clock.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from app.adapters.rate_limit.base import (
    AbstractBucketStore,
    AtomicConsumeResult,
    SetOperation,
)
from app.services.bucket_math import (
    BucketConfig,
    evaluate_bucket,
    format_timestamp,
    format_tokens,
    state_from_raw,
)


@dataclass
class _Entry:
    value: str
    expires_at: float


class InMemoryBucketStore(AbstractBucketStore):
    """Bucket store keeping ``(value, expires_at)`` pairs in a dict.

    Important:
        This store is per-process only. Use it for local development and
        tests; multiple workers each enforce their own independent limits.
    """

    name = "memory"

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        """Initialize the store.

        Args:
            clock: Time source function returning UNIX time in seconds.
        """
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: dict[str, _Entry] = {}

    def _read(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry.value

    def _write(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)

    def ttl(self, key: str) -> float | None:
        """Seconds until ``key`` expires, or None when absent."""
        with self._lock:
            if self._read(key) is None:
                return None
            return self._entries[key].expires_at - self._clock()

    async def get(self, key: str) -> str | None:
        with self._lock:
            return self._read(key)

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._write(key, value, ttl_seconds)

    async def atomic_batch(self, operations: Sequence[SetOperation]) -> None:
        with self._lock:
            for op in operations:
                self._write(op.key, op.value, op.ttl_seconds)

    async def consume_atomically(
        self,
        *,
        tokens_key: str,
        updated_key: str,
        capacity: float,
        refill_rate: float,
        ttl_seconds: int,
        now: int,
    ) -> AtomicConsumeResult:
        config = BucketConfig(capacity=capacity, refill_rate=refill_rate, ttl_seconds=ttl_seconds)
        with self._lock:
            state = state_from_raw(
                self._read(tokens_key),
                self._read(updated_key),
                now=now,
                capacity=capacity,
            )
            decision = evaluate_bucket(state, now, config)
            if decision.new_state is None:
                return AtomicConsumeResult(allowed=False, tokens=decision.refilled)

            self._write(tokens_key, format_tokens(decision.new_state.tokens), ttl_seconds)
            self._write(updated_key, format_timestamp(decision.new_state.last_updated), ttl_seconds)
            return AtomicConsumeResult(allowed=True, tokens=decision.new_state.tokens)

    async def ping(self) -> bool:
        return True
