"""
Concurrency safety tests.

Demonstrates:
1. Distributed lock prevents simultaneous acquire (mocked Redis).
2. The in-memory active-ride index serialises work per ride.
3. The Redis active-ride index stores one hash per ride plus an id set.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.infrastructure.active_rides import (
    ActiveRide,
    InMemoryActiveRideStore,
    RedisActiveRideStore,
)
from src.infrastructure.locks import DistributedLock, LockNotAcquired


class TestDistributedLock:
    """Tests the Redis distributed lock logic (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_acquire_succeeds(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        lock = DistributedLock(mock_redis, "ride:RD1", ttl_seconds=10)
        assert await lock.acquire() is True
        mock_redis.set.assert_awaited_once_with(
            "lock:ride:RD1", lock.token, nx=True, ex=10
        )

    @pytest.mark.asyncio
    async def test_acquire_fails_if_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "ride:RD1", ttl_seconds=10)
        assert await lock.acquire() is False

    @pytest.mark.asyncio
    async def test_acquire_waits_for_release(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(side_effect=[None, None, True])

        lock = DistributedLock(
            mock_redis, "ride:RD1", wait_seconds=1.0, poll_interval=0.01
        )
        assert await lock.acquire() is True
        assert mock_redis.set.await_count == 3

    @pytest.mark.asyncio
    async def test_release_calls_eval(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)

        lock = DistributedLock(mock_redis, "ride:RD1", ttl_seconds=10)
        await lock.acquire()
        await lock.release()

        mock_redis.eval.assert_awaited_once()
        assert mock_redis.eval.await_args.args[2:] == ("lock:ride:RD1", lock.token)

    @pytest.mark.asyncio
    async def test_context_manager_acquire_fail_raises(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "ride:RD1", ttl_seconds=10)
        with pytest.raises(LockNotAcquired, match="Could not acquire lock"):
            async with lock:
                pass
        mock_redis.eval.assert_not_awaited()


class TestInMemoryIndex:
    @pytest.mark.asyncio
    async def test_put_get_remove(self):
        store = InMemoryActiveRideStore()
        await store.put(ActiveRide("RD1", "DRV1", "u-1", (72.86, 19.08)))

        assert (await store.get("RD1")).driver_id == "DRV1"
        assert [e.ride_id for e in await store.entries()] == ["RD1"]

        await store.remove("RD1")
        await store.remove("RD1")
        assert await store.get("RD1") is None

    @pytest.mark.asyncio
    async def test_lock_serialises_same_ride(self):
        store = InMemoryActiveRideStore()
        events: list[str] = []

        async def worker(name: str):
            async with store.lock("RD1"):
                events.append(f"{name}-in")
                await asyncio.sleep(0.01)
                events.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert events in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_rides_do_not_block(self):
        store = InMemoryActiveRideStore()
        async with store.lock("RD1"):
            await asyncio.wait_for(self._enter(store, "RD2"), timeout=0.5)

    @staticmethod
    async def _enter(store, ride_id):
        async with store.lock(ride_id):
            pass


def _redis_with_pipeline():
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    client = MagicMock()
    client.pipeline.return_value.__aenter__.return_value = pipe
    return client, pipe


class TestRedisIndex:
    @pytest.mark.asyncio
    async def test_put_writes_hash_and_index(self):
        client, pipe = _redis_with_pipeline()
        store = RedisActiveRideStore(client)

        await store.put(ActiveRide("RD1", "DRV1", "u-1", (72.86, 19.08)))

        client.pipeline.assert_called_once_with(transaction=True)
        pipe.hset.assert_called_once_with(
            "active_ride:RD1",
            mapping={
                "ride_id": "RD1",
                "driver_id": "DRV1",
                "rider_id": "u-1",
                "last_lon": "72.86",
                "last_lat": "19.08",
            },
        )
        pipe.sadd.assert_called_once_with("active_rides", "RD1")
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_remove_deletes_hash_and_index(self):
        client, pipe = _redis_with_pipeline()
        store = RedisActiveRideStore(client)

        await store.remove("RD1")

        pipe.delete.assert_called_once_with("active_ride:RD1")
        pipe.srem.assert_called_once_with("active_rides", "RD1")

    @pytest.mark.asyncio
    async def test_get_decodes_hash(self):
        client = MagicMock()
        client.hgetall = AsyncMock(
            return_value={
                "ride_id": "RD1",
                "driver_id": "DRV1",
                "rider_id": "u-1",
                "last_lon": "72.86",
                "last_lat": "19.08",
            }
        )
        entry = await RedisActiveRideStore(client).get("RD1")
        assert entry == ActiveRide("RD1", "DRV1", "u-1", (72.86, 19.08))

    @pytest.mark.asyncio
    async def test_get_missing(self):
        client = MagicMock()
        client.hgetall = AsyncMock(return_value={})
        assert await RedisActiveRideStore(client).get("RD1") is None

    @pytest.mark.asyncio
    async def test_entries_skips_stale_ids(self):
        client = MagicMock()
        client.smembers = AsyncMock(return_value={"RD1", "RD2"})
        client.hgetall = AsyncMock(
            side_effect=[{"ride_id": "RD1", "driver_id": "DRV1", "rider_id": "u-1"}, {}]
        )
        entries = await RedisActiveRideStore(client).entries()
        assert [e.ride_id for e in entries] == ["RD1"]
        assert entries[0].last_location is None

    def test_lock_is_per_ride(self):
        store = RedisActiveRideStore(MagicMock(), lock_wait_seconds=2.0)
        lock = store.lock("RD1")
        assert isinstance(lock, DistributedLock)
        assert lock.key == "lock:ride:RD1"
        assert lock.wait_seconds == 2.0
