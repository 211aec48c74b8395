"""Bucket store interfaces.

The limiter depends on this abstraction (not the concrete implementation) so
the same bucket protocol runs against Redis in production and an in-process
store in development and tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True)
class SetOperation:
    """One ``SET key value EX ttl`` write inside an atomic batch."""

    key: str
    value: str
    ttl_seconds: int


@dataclass(frozen=True)
class AtomicConsumeResult:
    """Outcome of a server-side read-modify-write of one bucket.

    Attributes:
        allowed: Whether a token was consumed.
        tokens: Token count after the decision (refilled value when denied).
    """

    allowed: bool
    tokens: float


class AbstractBucketStore(ABC):
    """Key-value contract backing the token bucket limiter.

    Values are stored as strings; parsing them is the limiter's job so that
    malformed contents never raise out of the store.
    """

    name: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value for ``key``.

        Absence and store errors both return None.
        """
        raise NotImplementedError

    @abstractmethod
    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        """Overwrite ``key`` and refresh its expiry to now + ``ttl_seconds``.

        Raises:
            BucketStoreError: If the write fails.
        """
        raise NotImplementedError

    @abstractmethod
    async def atomic_batch(self, operations: Sequence[SetOperation]) -> None:
        """Apply all writes as one unit, visible fully or not at all.

        This is a grouped write, not a compare-and-swap.

        Raises:
            BucketStoreError: If the batch fails.
        """
        raise NotImplementedError

    @abstractmethod
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
        """Run the whole read-refill-decide-write cycle as one store operation.

        Raises:
            BucketStoreError: If the operation fails.
        """
        raise NotImplementedError

    @abstractmethod
    async def ping(self) -> bool:
        """Return True when the store is reachable. Never raises."""
        raise NotImplementedError

    async def close(self) -> None:  # noqa: B027
        """Release any held connections."""
