"""Pure token bucket state transitions.

Nothing here touches a store: the limiter reads raw values, hands them to
these helpers, and writes back whatever ``evaluate_bucket`` decides. Absent
state is folded into defaults so a new identifier needs no setup step.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

# Plain decimal or exponent notation; hex, underscores and named values are rejected.
_DECIMAL = re.compile(r"[0-9.eE+\- \t]+")


@dataclass(frozen=True)
class BucketConfig:
    """Immutable limiter configuration shared by every ``allow`` call.

    Attributes:
        capacity: Maximum tokens a bucket can hold.
        refill_rate: Tokens added per second.
        ttl_seconds: Idle time after which stored state expires.

    Raises:
        ValueError: If any value is out of range.
    """

    capacity: float
    refill_rate: float
    ttl_seconds: int

    def __post_init__(self) -> None:
        if not math.isfinite(self.capacity) or self.capacity <= 0:
            raise ValueError("capacity must be > 0")
        if not math.isfinite(self.refill_rate) or self.refill_rate < 0:
            raise ValueError("refill_rate must be >= 0")
        if isinstance(self.ttl_seconds, bool) or not isinstance(self.ttl_seconds, int):
            raise ValueError("ttl_seconds must be an integer")
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")


@dataclass(frozen=True)
class BucketState:
    tokens: float
    last_updated: int


@dataclass(frozen=True)
class BucketDecision:
    """Result of evaluating one request against a bucket.

    Attributes:
        allowed: Whether the request may proceed.
        refilled: Tokens available before consumption.
        new_state: State to persist when allowed, None when denied.
    """

    allowed: bool
    refilled: float
    new_state: BucketState | None


def _parse_decimal(raw: str | None) -> float | None:
    if raw is None or not _DECIMAL.fullmatch(raw):
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def parse_tokens(raw: str | None) -> float | None:
    """Parse a stored token count; None for absent or malformed values."""
    value = _parse_decimal(raw)
    if value is None or not math.isfinite(value):
        return None
    return max(0.0, value)


def parse_timestamp(raw: str | None) -> int | None:
    """Parse a stored unix-seconds timestamp; None for absent or malformed values."""
    value = _parse_decimal(raw)
    if value is None or not value.is_integer():
        return None
    return int(value)


def state_from_raw(
    raw_tokens: str | None,
    raw_last_updated: str | None,
    *,
    now: int,
    capacity: float,
) -> BucketState:
    """Build bucket state from stored strings, defaulting each field on its own.

    Missing or malformed tokens mean a full bucket; a missing or malformed
    timestamp means no elapsed refill.
    """
    tokens = parse_tokens(raw_tokens)
    last_updated = parse_timestamp(raw_last_updated)
    return BucketState(
        tokens=capacity if tokens is None else tokens,
        last_updated=now if last_updated is None else last_updated,
    )


def format_tokens(tokens: float) -> str:
    return repr(float(tokens))


def format_timestamp(timestamp: int) -> str:
    return str(int(timestamp))


def refill_tokens(
    *,
    tokens: float,
    last_updated: int,
    now: int,
    capacity: float,
    refill_rate: float,
) -> float:
    """Return the token count after refilling up to ``now``.

    A clock that moved backwards counts as zero elapsed time.
    """
    elapsed = max(0, now - last_updated)
    return min(capacity, tokens + elapsed * refill_rate)


def evaluate_bucket(state: BucketState | None, now: int, config: BucketConfig) -> BucketDecision:
    """Decide one request and compute the state to persist.

    Args:
        state: Prior state, or None for an unseen (or expired) identifier.
        now: Current unix time in whole seconds.
        config: Limiter configuration.

    Returns:
        BucketDecision. ``new_state`` carries ``refilled - 1`` tokens stamped
        with ``now``.
    """
    if state is None:
        state = BucketState(tokens=config.capacity, last_updated=now)

    refilled = refill_tokens(
        tokens=state.tokens,
        last_updated=state.last_updated,
        now=now,
        capacity=config.capacity,
        refill_rate=config.refill_rate,
    )
    if refilled < 1:
        return BucketDecision(allowed=False, refilled=refilled, new_state=None)

    return BucketDecision(
        allowed=True,
        refilled=refilled,
        new_state=BucketState(tokens=refilled - 1, last_updated=now),
    )
