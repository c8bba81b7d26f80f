from __future__ import annotations

import math
import time
from typing import Callable, Optional

import redis.asyncio as aioredis
from redis import Redis

from authcore.logging import get_logger
from authcore.storage.rate_limit import RateLimitData

logger = get_logger(__name__)


class RedisRateLimitStore:
    """Rate-limit counters in Redis hashes shared across server processes.

    Keys carry a native TTL so no sweep is needed; the per-request update is a
    server-side script so concurrent processes never lose an increment.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Increment only a live counter; a missing key must not be recreated without a TTL
    _INCREMENT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return nil
end
return redis.call('HINCRBY', KEYS[1], 'count', 1)
"""

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "rate_limit:",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        clock: Callable[[], float] = time.time,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self._clock = clock
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    @staticmethod
    def verify_connection(redis_url: str) -> None:
        """Assert Redis connectivity before this backend is constructed."""
        # Short-lived sync client so no async client is bound to a temporary loop
        sync_client = Redis.from_url(redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[RateLimitData]:
        count_raw, reset_raw = await self.client.hmget(self._key(key), "count", "reset_time")
        if count_raw is None or reset_raw is None:
            return None
        try:
            data = RateLimitData(count=int(count_raw), reset_time=float(reset_raw))
        except (TypeError, ValueError):
            logger.warning("rate_limit_counter_corrupt", key=key)
            await self.delete(key)
            return None
        if data.reset_time <= self._clock():
            await self.delete(key)
            return None
        return data

    async def set(self, key: str, data: RateLimitData, ttl_seconds: float) -> None:
        full_key = self._key(key)
        pipe = self.client.pipeline(transaction=True)
        pipe.hset(full_key, mapping={"count": data.count, "reset_time": data.reset_time})
        pipe.expire(full_key, max(1, math.ceil(ttl_seconds)))
        await pipe.execute()

    async def increment(self, key: str) -> int:
        result = await self._increment(keys=[self._key(key)])
        if result is None:
            raise KeyError(key)
        return int(result)

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def cleanup(self) -> None:
        # Redis expires keys natively
        return None

    async def close(self) -> None:
        """Close the Redis connection pool on shutdown."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
