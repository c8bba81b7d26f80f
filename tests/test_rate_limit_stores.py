"""Tests for the in-process and Redis rate-limit stores."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from authcore.storage.rate_limit import MemoryRateLimitStore, RateLimitData
from authcore.storage.redis_cache import RedisRateLimitStore


class TestMemoryRateLimitStore:
    async def test_set_get_increment(self, timer):
        store = MemoryRateLimitStore(clock=timer)
        await store.set("k", RateLimitData(count=1, reset_time=timer.now + 10), 10)

        assert await store.increment("k") == 2
        data = await store.get("k")
        assert data.count == 2
        assert data.reset_time == timer.now + 10

    async def test_returned_data_is_a_copy(self, timer):
        store = MemoryRateLimitStore(clock=timer)
        await store.set("k", RateLimitData(count=1, reset_time=timer.now + 10), 10)

        data = await store.get("k")
        data.count = 99

        assert (await store.get("k")).count == 1

    async def test_expired_counter_is_invisible(self, timer):
        store = MemoryRateLimitStore(clock=timer)
        await store.set("k", RateLimitData(count=3, reset_time=timer.now + 1), 1)

        timer.advance(1)

        assert await store.get("k") is None
        with pytest.raises(KeyError):
            await store.increment("k")

    async def test_increment_missing_key_raises(self, timer):
        store = MemoryRateLimitStore(clock=timer)

        with pytest.raises(KeyError):
            await store.increment("missing")

    async def test_cleanup_removes_only_expired(self, timer):
        store = MemoryRateLimitStore(clock=timer)
        await store.set("old", RateLimitData(count=1, reset_time=timer.now + 1), 1)
        await store.set("new", RateLimitData(count=1, reset_time=timer.now + 60), 60)
        timer.advance(2)

        await store.cleanup()

        assert len(store) == 1
        assert await store.get("new") is not None

    async def test_delete(self, timer):
        store = MemoryRateLimitStore(clock=timer)
        await store.set("k", RateLimitData(count=1, reset_time=timer.now + 10), 10)

        await store.delete("k")
        await store.delete("k")

        assert await store.get("k") is None

    async def test_sweep_runs_and_stops(self, timer):
        store = MemoryRateLimitStore(sweep_interval=0.01, clock=timer)
        await store.set("k", RateLimitData(count=1, reset_time=timer.now + 1), 1)
        timer.advance(5)

        await store.start()
        assert store.sweeping is True
        await asyncio.sleep(0.05)
        assert len(store) == 0

        await store.stop()
        assert store.sweeping is False

    async def test_double_start_is_ignored(self):
        store = MemoryRateLimitStore(sweep_interval=60)
        await store.start()
        try:
            with patch("authcore.storage.rate_limit.logger") as mock_logger:
                await store.start()
            mock_logger.warning.assert_called_once_with("rate_limit_sweep_already_running")
        finally:
            await store.close()

    async def test_stop_without_start(self):
        store = MemoryRateLimitStore()

        await store.stop()

        assert store.sweeping is False

    async def test_context_manager_owns_sweep(self, timer):
        async with MemoryRateLimitStore(sweep_interval=60, clock=timer) as store:
            assert store.sweeping is True
            await store.set("k", RateLimitData(count=1, reset_time=timer.now + 10), 10)

        assert store.sweeping is False
        assert len(store) == 0

    async def test_sweep_survives_cleanup_error(self):
        store = MemoryRateLimitStore(sweep_interval=0.01)
        calls = []

        async def flaky_cleanup():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        store.cleanup = flaky_cleanup

        with patch("authcore.storage.rate_limit.logger") as mock_logger:
            await store.start()
            await asyncio.sleep(0.05)
            await store.stop()

        assert len(calls) >= 2
        errors = [c.args[0] for c in mock_logger.error.call_args_list]
        assert errors == ["rate_limit_sweep_error"]


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.hmget = AsyncMock()
    client.delete = AsyncMock()
    client.close = AsyncMock()
    client.connection_pool.disconnect = AsyncMock()
    client.register_script.return_value = AsyncMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, True])
    client.pipeline.return_value = pipe
    return client


class TestRedisRateLimitStore:
    def _store(self, client, timer):
        return RedisRateLimitStore("redis://cache:6379/0", client=client, clock=timer)

    def test_registers_increment_script(self, redis_client, timer):
        self._store(redis_client, timer)

        script = redis_client.register_script.call_args[0][0]
        assert "EXISTS" in script
        assert "HINCRBY" in script

    async def test_get_parses_hash(self, redis_client, timer):
        redis_client.hmget.return_value = ["3", str(timer.now + 30)]
        store = self._store(redis_client, timer)

        data = await store.get("auth:1.2.3.4")

        redis_client.hmget.assert_awaited_once_with("rate_limit:auth:1.2.3.4", "count", "reset_time")
        assert data == RateLimitData(count=3, reset_time=timer.now + 30)

    async def test_get_missing(self, redis_client, timer):
        redis_client.hmget.return_value = [None, None]

        assert await self._store(redis_client, timer).get("k") is None

    async def test_get_expired_deletes(self, redis_client, timer):
        redis_client.hmget.return_value = ["3", str(timer.now - 1)]

        assert await self._store(redis_client, timer).get("k") is None
        redis_client.delete.assert_awaited_once_with("rate_limit:k")

    async def test_get_corrupt_deletes(self, redis_client, timer):
        redis_client.hmget.return_value = ["three", "soon"]

        with patch("authcore.storage.redis_cache.logger") as mock_logger:
            assert await self._store(redis_client, timer).get("k") is None

        mock_logger.warning.assert_called_once()
        redis_client.delete.assert_awaited_once_with("rate_limit:k")

    async def test_set_writes_hash_with_ttl(self, redis_client, timer):
        store = self._store(redis_client, timer)

        await store.set("k", RateLimitData(count=1, reset_time=timer.now + 1.5), 1.5)

        pipe = redis_client.pipeline.return_value
        redis_client.pipeline.assert_called_once_with(transaction=True)
        pipe.hset.assert_called_once_with(
            "rate_limit:k", mapping={"count": 1, "reset_time": timer.now + 1.5}
        )
        pipe.expire.assert_called_once_with("rate_limit:k", 2)
        pipe.execute.assert_awaited_once()

    async def test_increment(self, redis_client, timer):
        redis_client.register_script.return_value.return_value = 4
        store = self._store(redis_client, timer)

        assert await store.increment("k") == 4
        redis_client.register_script.return_value.assert_awaited_once_with(keys=["rate_limit:k"])

    async def test_increment_missing_raises(self, redis_client, timer):
        redis_client.register_script.return_value.return_value = None
        store = self._store(redis_client, timer)

        with pytest.raises(KeyError):
            await store.increment("k")

    async def test_close(self, redis_client, timer):
        store = self._store(redis_client, timer)

        await store.cleanup()
        await store.close()

        redis_client.close.assert_awaited_once()
        redis_client.connection_pool.disconnect.assert_awaited_once()

    def test_verify_connection_pings(self):
        with patch("authcore.storage.redis_cache.Redis") as sync_redis:
            RedisRateLimitStore.verify_connection("redis://cache:6379/0")

        sync_redis.from_url.assert_called_once_with("redis://cache:6379/0", decode_responses=True)
        sync_redis.from_url.return_value.ping.assert_called_once()
        sync_redis.from_url.return_value.close.assert_called_once()

    def test_verify_connection_closes_after_failed_ping(self):
        with patch("authcore.storage.redis_cache.Redis") as sync_redis:
            sync_redis.from_url.return_value.ping.side_effect = ConnectionRefusedError()
            with pytest.raises(ConnectionRefusedError):
                RedisRateLimitStore.verify_connection("redis://cache:6379/0")

        sync_redis.from_url.return_value.close.assert_called_once()
