"""Redis-backed bucket store shared by every service instance."""

from __future__ import annotations

import logging
from typing import Sequence

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.adapters.rate_limit.base import (
    AbstractBucketStore,
    AtomicConsumeResult,
    SetOperation,
)
from app.core.config import RedisSettings
from app.core.errors import BucketStoreError

logger = logging.getLogger(__name__)


# KEYS[1]=tokens key, KEYS[2]=last-updated key
# ARGV: capacity, refill_rate, ttl_seconds, now
CONSUME_SCRIPT = """
local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])
local now = tonumber(ARGV[4])

-- plain decimals only, so hex and named values read as absent
local function decimal(raw)
    if not raw or string.find(raw, "[^%d%.eE%+%- \t]") then
        return nil
    end
    return tonumber(raw)
end

local tokens = decimal(redis.call('GET', KEYS[1]))
if tokens == nil or tokens ~= tokens or tokens == math.huge or tokens == -math.huge then
    tokens = capacity
end
if tokens < 0 then
    tokens = 0
end

local last_updated = decimal(redis.call('GET', KEYS[2]))
if last_updated == nil or last_updated ~= math.floor(last_updated) then
    last_updated = now
end

local elapsed = math.max(0, now - last_updated)
local refilled = math.min(capacity, tokens + elapsed * refill_rate)
if refilled < 1 then
    return {0, tostring(refilled)}
end

local remaining = refilled - 1
redis.call('SET', KEYS[1], tostring(remaining), 'EX', ttl)
redis.call('SET', KEYS[2], string.format('%d', now), 'EX', ttl)
return {1, tostring(remaining)}
"""


class RedisBucketStore(AbstractBucketStore):
    """Bucket store over a shared ``redis.asyncio`` client.

    The client's connection pool is safe to use from many concurrent
    ``allow`` calls without extra locking.
    """

    name = "redis"

    def __init__(self, client: redis.Redis) -> None:
        self._client = client
        self._consume_script = client.register_script(CONSUME_SCRIPT)

    @classmethod
    def from_settings(cls, redis_settings: RedisSettings) -> "RedisBucketStore":
        """Build a store from connection settings.

        No connection is opened until the first command is sent.
        """
        client = redis.from_url(
            redis_settings.connection_url(),
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=redis_settings.socket_timeout_seconds,
            socket_timeout=redis_settings.socket_timeout_seconds,
            health_check_interval=30,
        )
        return cls(client)

    async def get(self, key: str) -> str | None:
        try:
            value = await self._client.get(key)
        except RedisError as exc:
            logger.warning(
                "store.read_failed",
                extra={"store": self.name, "error_type": type(exc).__name__, "error_msg": str(exc)},
            )
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        return value

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds)
        except RedisError as exc:
            raise BucketStoreError(f"Redis SET failed: {exc}") from exc

    async def atomic_batch(self, operations: Sequence[SetOperation]) -> None:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                for op in operations:
                    pipe.set(op.key, op.value, ex=op.ttl_seconds)
                await pipe.execute()
        except RedisError as exc:
            raise BucketStoreError(f"Redis MULTI/EXEC failed: {exc}") from exc

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
        try:
            allowed, tokens = await self._consume_script(
                keys=[tokens_key, updated_key],
                args=[repr(float(capacity)), repr(float(refill_rate)), ttl_seconds, now],
            )
        except RedisError as exc:
            raise BucketStoreError(f"Redis script call failed: {exc}") from exc
        return AtomicConsumeResult(allowed=bool(int(allowed)), tokens=float(tokens))

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError) as exc:
            logger.warning(
                "store.unreachable",
                extra={"store": self.name, "error_type": type(exc).__name__, "error_msg": str(exc)},
            )
            return False

    async def close(self) -> None:
        await self._client.aclose()
