"""Behavioral tests for the token bucket limiter.

All scenarios run against the in-memory store with a mocked clock, so
refill and expiry are driven by advancing time instead of sleeping.
"""

from __future__ import annotations

import asyncio
from typing import Sequence
from unittest.mock import Mock

import pytest

from app.adapters.rate_limit.base import SetOperation
from app.adapters.rate_limit.in_memory import InMemoryBucketStore
from app.core.errors import BucketStoreError, LimiterUnavailableError
from app.services.bucket_math import BucketConfig
from app.services.token_bucket import TokenBucketLimiter

STRATEGIES = ["read_write", "atomic"]


class FailingCommitStore(InMemoryBucketStore):
    """Reads work, every write fails."""

    async def atomic_batch(self, operations: Sequence[SetOperation]) -> None:
        raise BucketStoreError("connection reset")

    async def consume_atomically(self, **kwargs) -> None:
        raise BucketStoreError("connection reset")


class SlowStore(InMemoryBucketStore):
    async def get(self, key: str) -> str | None:
        await asyncio.sleep(1)
        return None

    async def consume_atomically(self, **kwargs):
        await asyncio.sleep(1)
        raise AssertionError("should have been cancelled")


def _limiter(
    clock: Mock,
    *,
    capacity: float,
    refill_rate: float,
    ttl_seconds: int,
    strategy: str = "read_write",
    store: InMemoryBucketStore | None = None,
) -> tuple[TokenBucketLimiter, InMemoryBucketStore]:
    store = store or InMemoryBucketStore(clock=clock)
    limiter = TokenBucketLimiter(
        store,
        BucketConfig(capacity=capacity, refill_rate=refill_rate, ttl_seconds=ttl_seconds),
        strategy=strategy,
        clock=clock,
    )
    return limiter, store


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", STRATEGIES)
async def test_refills_one_token_after_one_second(clock: Mock, strategy: str) -> None:
    limiter, _ = _limiter(clock, capacity=3, refill_rate=1, ttl_seconds=10, strategy=strategy)
    ip = "192.168.1.100"

    assert await limiter.allow(ip) is True
    assert await limiter.allow(ip) is True
    assert await limiter.allow(ip) is True
    assert await limiter.allow(ip) is False

    clock.return_value += 1

    assert await limiter.allow(ip) is True


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", STRATEGIES)
async def test_bucket_resets_after_ttl_expiry(clock: Mock, strategy: str) -> None:
    limiter, store = _limiter(clock, capacity=2, refill_rate=1, ttl_seconds=5, strategy=strategy)
    ip = "192.168.1.200"

    assert await limiter.allow(ip) is True
    assert await limiter.allow(ip) is True
    assert await limiter.allow(ip) is False

    clock.return_value += 6

    assert await store.get(limiter.tokens_key(ip)) is None
    assert await store.get(limiter.last_updated_key(ip)) is None
    assert await limiter.allow(ip) is True
    assert await store.get(limiter.tokens_key(ip)) == "1.0"


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", STRATEGIES)
@pytest.mark.parametrize("capacity", [1, 2, 5])
async def test_first_capacity_calls_allowed_then_denied(
    clock: Mock, strategy: str, capacity: int
) -> None:
    limiter, _ = _limiter(clock, capacity=capacity, refill_rate=1, ttl_seconds=60, strategy=strategy)

    results = [await limiter.allow("10.0.0.1") for _ in range(capacity + 1)]

    assert results == [True] * capacity + [False]


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", STRATEGIES)
async def test_waiting_one_refill_interval_allows_exactly_once(clock: Mock, strategy: str) -> None:
    limiter, _ = _limiter(clock, capacity=2, refill_rate=0.5, ttl_seconds=60, strategy=strategy)
    ip = "10.0.0.2"

    assert await limiter.allow(ip) is True
    assert await limiter.allow(ip) is True
    assert await limiter.allow(ip) is False

    clock.return_value += 2  # 1 / refill_rate

    assert await limiter.allow(ip) is True
    assert await limiter.allow(ip) is False


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", STRATEGIES)
async def test_denied_request_does_not_reset_refill_clock(clock: Mock, strategy: str) -> None:
    limiter, store = _limiter(clock, capacity=1, refill_rate=0.5, ttl_seconds=60, strategy=strategy)
    ip = "10.0.0.3"

    assert await limiter.allow(ip) is True
    stamp = await store.get(limiter.last_updated_key(ip))

    clock.return_value += 1
    assert await limiter.allow(ip) is False
    assert await store.get(limiter.last_updated_key(ip)) == stamp

    # Two seconds after the allow, not after the deny.
    clock.return_value += 1
    assert await limiter.allow(ip) is True


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", STRATEGIES)
async def test_stored_tokens_stay_within_bounds(clock: Mock, strategy: str) -> None:
    limiter, store = _limiter(clock, capacity=3, refill_rate=2, ttl_seconds=60, strategy=strategy)
    ip = "10.0.0.4"

    for step in range(20):
        if await limiter.allow(ip):
            tokens = float(await store.get(limiter.tokens_key(ip)))
            assert 0 <= tokens < 3
        if step % 3 == 0:
            clock.return_value += 1


@pytest.mark.asyncio
async def test_identifiers_are_isolated(clock: Mock) -> None:
    limiter, _ = _limiter(clock, capacity=1, refill_rate=0, ttl_seconds=60)

    assert await limiter.allow("a") is True
    assert await limiter.allow("a") is False
    assert await limiter.allow("b") is True


@pytest.mark.asyncio
async def test_zero_refill_rate_never_refills(clock: Mock) -> None:
    limiter, _ = _limiter(clock, capacity=1, refill_rate=0, ttl_seconds=3600)

    assert await limiter.allow("ip") is True
    clock.return_value += 1000
    assert await limiter.allow("ip") is False


@pytest.mark.asyncio
async def test_key_layout_matches_existing_deployments(clock: Mock) -> None:
    limiter, store = _limiter(clock, capacity=3, refill_rate=1, ttl_seconds=10)

    assert limiter.tokens_key("1.2.3.4") == "rate_limit:ip:1.2.3.4:tokens"
    assert limiter.last_updated_key("1.2.3.4") == "rate_limit:ip:1.2.3.4:last_updated"

    await limiter.allow("1.2.3.4")

    assert await store.get("rate_limit:ip:1.2.3.4:tokens") == "2.0"
    assert await store.get("rate_limit:ip:1.2.3.4:last_updated") == "1700000000"
    assert store.ttl("rate_limit:ip:1.2.3.4:tokens") == pytest.approx(10)
    assert store.ttl("rate_limit:ip:1.2.3.4:last_updated") == pytest.approx(10)


@pytest.mark.asyncio
async def test_custom_key_prefix(clock: Mock) -> None:
    store = InMemoryBucketStore(clock=clock)
    limiter = TokenBucketLimiter(
        store,
        BucketConfig(capacity=2, refill_rate=1, ttl_seconds=10),
        key_prefix="edge:rl",
        clock=clock,
    )

    await limiter.allow("client")

    assert await store.get("edge:rl:client:tokens") == "1.0"


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", STRATEGIES)
@pytest.mark.parametrize("raw", ["not-a-number", "nan", "inf", ""])
async def test_malformed_tokens_treated_as_full_bucket(clock: Mock, strategy: str, raw: str) -> None:
    limiter, store = _limiter(clock, capacity=3, refill_rate=1, ttl_seconds=10, strategy=strategy)
    await store.set_with_expiry(limiter.tokens_key("ip"), raw, 10)

    assert await limiter.allow("ip") is True
    assert await store.get(limiter.tokens_key("ip")) == "2.0"


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", STRATEGIES)
async def test_malformed_timestamp_means_no_refill(clock: Mock, strategy: str) -> None:
    limiter, store = _limiter(clock, capacity=3, refill_rate=1, ttl_seconds=10, strategy=strategy)
    await store.set_with_expiry(limiter.tokens_key("ip"), "0.0", 10)
    await store.set_with_expiry(limiter.last_updated_key("ip"), "yesterday", 10)

    assert await limiter.allow("ip") is False


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", STRATEGIES)
async def test_negative_stored_tokens_clamped_to_zero(clock: Mock, strategy: str) -> None:
    limiter, store = _limiter(clock, capacity=3, refill_rate=1, ttl_seconds=60, strategy=strategy)
    await store.set_with_expiry(limiter.tokens_key("ip"), "-5", 60)
    await store.set_with_expiry(limiter.last_updated_key("ip"), str(int(clock())), 60)

    assert await limiter.allow("ip") is False
    clock.return_value += 1
    assert await limiter.allow("ip") is True


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", STRATEGIES)
async def test_backward_clock_does_not_remove_tokens(clock: Mock, strategy: str) -> None:
    limiter, store = _limiter(clock, capacity=3, refill_rate=1, ttl_seconds=600, strategy=strategy)
    future = int(clock()) + 100
    await store.set_with_expiry(limiter.tokens_key("ip"), "2.0", 600)
    await store.set_with_expiry(limiter.last_updated_key("ip"), str(future), 600)

    assert await limiter.allow("ip") is True
    assert await store.get(limiter.tokens_key("ip")) == "1.0"
    assert await store.get(limiter.last_updated_key("ip")) == str(int(clock()))


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", STRATEGIES)
async def test_future_timestamp_does_not_stall_refill(clock: Mock, strategy: str) -> None:
    limiter, store = _limiter(clock, capacity=3, refill_rate=1, ttl_seconds=600, strategy=strategy)
    await store.set_with_expiry(limiter.tokens_key("ip"), "2.0", 600)
    await store.set_with_expiry(limiter.last_updated_key("ip"), str(int(clock()) + 100), 600)

    assert await limiter.allow("ip") is True
    clock.return_value += 5

    assert [await limiter.allow("ip") for _ in range(3)] == [True, True, True]


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", STRATEGIES)
async def test_hex_tokens_treated_as_full_bucket(clock: Mock, strategy: str) -> None:
    limiter, store = _limiter(clock, capacity=3, refill_rate=1, ttl_seconds=10, strategy=strategy)
    await store.set_with_expiry(limiter.tokens_key("ip"), "0x10", 10)

    assert await limiter.allow("ip") is True
    assert await store.get(limiter.tokens_key("ip")) == "2.0"


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", STRATEGIES)
async def test_commit_failure_raises_unavailable_not_deny(clock: Mock, strategy: str) -> None:
    store = FailingCommitStore(clock=clock)
    limiter, _ = _limiter(
        clock, capacity=3, refill_rate=1, ttl_seconds=10, strategy=strategy, store=store
    )

    with pytest.raises(LimiterUnavailableError) as exc_info:
        await limiter.allow("ip")

    assert exc_info.value.code == "rate_limiter_unavailable"
    assert await store.get(limiter.tokens_key("ip")) is None
    assert await store.get(limiter.last_updated_key("ip")) is None


@pytest.mark.asyncio
async def test_commit_failure_leaves_existing_bucket_untouched(clock: Mock) -> None:
    store = FailingCommitStore(clock=clock)
    limiter, _ = _limiter(clock, capacity=3, refill_rate=1, ttl_seconds=10, store=store)
    await store.set_with_expiry(limiter.tokens_key("ip"), "1.5", 10)

    with pytest.raises(LimiterUnavailableError):
        await limiter.allow("ip")

    assert await store.get(limiter.tokens_key("ip")) == "1.5"


@pytest.mark.asyncio
async def test_denied_call_does_not_write(clock: Mock) -> None:
    store = FailingCommitStore(clock=clock)
    limiter, _ = _limiter(clock, capacity=3, refill_rate=1, ttl_seconds=10, store=store)
    await store.set_with_expiry(limiter.tokens_key("ip"), "0.2", 10)

    # Would raise if a write were attempted.
    assert await limiter.allow("ip") is False


@pytest.mark.asyncio
@pytest.mark.parametrize("strategy", STRATEGIES)
async def test_timeout_raises_unavailable(clock: Mock, strategy: str) -> None:
    store = SlowStore(clock=clock)
    limiter, _ = _limiter(
        clock, capacity=3, refill_rate=1, ttl_seconds=10, strategy=strategy, store=store
    )

    with pytest.raises(LimiterUnavailableError) as exc_info:
        await limiter.allow("ip", timeout=0.01)

    assert exc_info.value.code == "rate_limiter_timeout"


@pytest.mark.asyncio
async def test_configured_call_timeout_applies_by_default(clock: Mock) -> None:
    limiter = TokenBucketLimiter(
        SlowStore(clock=clock),
        BucketConfig(capacity=3, refill_rate=1, ttl_seconds=10),
        call_timeout_seconds=0.01,
        clock=clock,
    )

    with pytest.raises(LimiterUnavailableError):
        await limiter.allow("ip")


@pytest.mark.asyncio
async def test_cancellation_propagates(clock: Mock) -> None:
    limiter, _ = _limiter(clock, capacity=3, refill_rate=1, ttl_seconds=10, store=SlowStore(clock=clock))

    task = asyncio.create_task(limiter.allow("ip"))
    await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_atomic_strategy_never_over_admits_concurrent_calls(clock: Mock) -> None:
    limiter, _ = _limiter(clock, capacity=3, refill_rate=0, ttl_seconds=60, strategy="atomic")

    results = await asyncio.gather(*(limiter.allow("burst") for _ in range(10)))

    assert results.count(True) == 3


@pytest.mark.parametrize(
    "kwargs",
    [
        {"strategy": "leaky"},
        {"key_prefix": ""},
        {"call_timeout_seconds": 0},
    ],
)
def test_invalid_limiter_args(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        TokenBucketLimiter(
            InMemoryBucketStore(),
            BucketConfig(capacity=1, refill_rate=1, ttl_seconds=1),
            **kwargs,
        )
