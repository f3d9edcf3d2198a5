"""Pending-exit markers that stop two ticks from selling the same position.

One Redis key per (user, symbol). The key is claimed with SET NX before an
automated exit is submitted, then re-pointed at the broker order id once the
broker accepts the sell. Every tick renews it while that order is still working,
so it is cleared only when the order reaches a terminal status, or by TTL if
ticks stop running mid-exit.
"""

import logging

import redis.asyncio as aioredis

from app.config import settings

logger = logging.getLogger(__name__)

REDIS_KEY_EXIT_PREFIX = "paperdesk:exit:"
CLAIMED = "claimed"


def _key(user_id: str, symbol: str) -> str:
    return f"{REDIS_KEY_EXIT_PREFIX}{user_id}:{symbol}"


class ExitGuard:
    """Check-and-set marker for automated exits in flight."""

    def __init__(self, redis_client: aioredis.Redis | None = None, ttl_seconds: int | None = None) -> None:
        self._redis = redis_client
        self._ttl = ttl_seconds or settings.exit_lock_ttl_seconds

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(
                settings.redis_url, decode_responses=True,
                max_connections=5,
            )
        return self._redis

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def claim(self, user_id: str, symbol: str) -> bool:
        """Take the marker. False if an exit for this position is already in flight."""
        r = await self._get_redis()
        acquired = await r.set(_key(user_id, symbol), CLAIMED, nx=True, ex=self._ttl)
        return bool(acquired)

    async def attach_order(self, user_id: str, symbol: str, order_id: str) -> None:
        """Record which broker order the held marker is waiting on."""
        r = await self._get_redis()
        await r.set(_key(user_id, symbol), order_id, ex=self._ttl)

    async def renew(self, user_id: str, symbol: str, order_id: str) -> bool:
        """Keep the marker alive while ``order_id`` is still working at the broker.

        Restores an expired marker; leaves a marker held by another order alone.
        """
        r = await self._get_redis()
        key = _key(user_id, symbol)
        current = await r.get(key)
        if current not in (None, order_id):
            return False
        await r.set(key, order_id, ex=self._ttl)
        return True

    async def holder(self, user_id: str, symbol: str) -> str | None:
        """Order id (or CLAIMED) holding the marker, None when free."""
        r = await self._get_redis()
        return await r.get(_key(user_id, symbol))

    async def release(self, user_id: str, symbol: str, order_id: str | None = None) -> bool:
        """Clear the marker. With ``order_id``, only if that order still holds it."""
        r = await self._get_redis()
        key = _key(user_id, symbol)
        if order_id is not None and await r.get(key) != order_id:
            return False
        await r.delete(key)
        logger.info("Exit marker released: %s %s", user_id, symbol)
        return True
