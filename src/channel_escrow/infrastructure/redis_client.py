"""Redis client for outbound-transfer idempotency keys.

The in-memory deal record already refuses a second payout. When Redis is
configured, every payout or refund additionally claims a key with SET NX,
so a restarted process, or a second replica, cannot submit the same
withdrawal again.

Usage:
    from channel_escrow.infrastructure.redis_client import init_redis, RedisPayoutGuard

    redis = await init_redis()
    guard = RedisPayoutGuard(redis)
    if await guard.claim("chan-123", "payout"):
        ...
"""

from __future__ import annotations

import redis.asyncio as aioredis

from channel_escrow.config import get_settings
from channel_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Payout idempotency guards ---


def payout_key(deal_id: str, kind: str) -> str:
    return f"escrow:{kind}:{deal_id}"


class RedisPayoutGuard:
    """PayoutGuard backed by Redis SET NX with a long TTL."""

    def __init__(self, redis: aioredis.Redis, ttl_seconds: int | None = None) -> None:
        self._redis = redis
        self._ttl = ttl_seconds or get_settings().redis_payout_key_ttl_seconds

    async def claim(self, deal_id: str, kind: str) -> bool:
        """Return True only for the first claim of ``(deal_id, kind)``."""
        claimed = await self._redis.set(payout_key(deal_id, kind), "1", nx=True, ex=self._ttl)
        if not claimed:
            logger.warning("redis.payout_key_exists", deal_id=deal_id, kind=kind)
        return bool(claimed)


class InMemoryPayoutGuard:
    """PayoutGuard for single-process deployments and tests."""

    def __init__(self) -> None:
        self._claimed: set[tuple[str, str]] = set()

    async def claim(self, deal_id: str, kind: str) -> bool:
        key = (deal_id, kind)
        if key in self._claimed:
            return False
        self._claimed.add(key)
        return True
