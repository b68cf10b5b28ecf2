"""
Active-ride index.

Maps a ride id to the live context of an in-flight ride: who drives it,
who rides it and where the driver was last seen.  Entries exist only while
the ride is non-terminal; completion and cancellation remove them.

Two backends behind one interface, selected by ``settings.active_ride_backend``:

* ``InMemoryActiveRideStore`` -- dict + one ``asyncio.Lock`` per ride.
  Process-local; rebuilt from the database on startup.
* ``RedisActiveRideStore``    -- one hash per ride plus a set of ride ids,
  locked per ride with ``DistributedLock``.  Shared by all API processes.
"""

from __future__ import annotations

import asyncio
import weakref
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis

from .locks import DistributedLock
from .redis_client import get_redis
from src.config import settings


@dataclass
class ActiveRide:
    ride_id: str
    driver_id: str
    rider_id: str
    last_location: Optional[tuple[float, float]] = None


class ActiveRideStore(ABC):
    @abstractmethod
    async def get(self, ride_id: str) -> Optional[ActiveRide]: ...

    @abstractmethod
    async def put(self, entry: ActiveRide) -> None: ...

    @abstractmethod
    async def remove(self, ride_id: str) -> None: ...

    @abstractmethod
    async def entries(self) -> list[ActiveRide]: ...

    @abstractmethod
    def lock(self, ride_id: str):
        """Async context manager serialising updates to one ride."""


class InMemoryActiveRideStore(ActiveRideStore):
    def __init__(self):
        self._entries: dict[str, ActiveRide] = {}
        # A lock lives only while some coroutine holds or awaits it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def get(self, ride_id: str) -> Optional[ActiveRide]:
        return self._entries.get(ride_id)

    async def put(self, entry: ActiveRide) -> None:
        self._entries[entry.ride_id] = entry

    async def remove(self, ride_id: str) -> None:
        self._entries.pop(ride_id, None)

    async def entries(self) -> list[ActiveRide]:
        return list(self._entries.values())

    @asynccontextmanager
    async def lock(self, ride_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(ride_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[ride_id] = lock
        async with lock:
            yield


class RedisActiveRideStore(ActiveRideStore):
    INDEX_KEY = "active_rides"

    def __init__(self, client: aioredis.Redis, lock_wait_seconds: float = 5.0):
        self.redis = client
        self.lock_wait_seconds = lock_wait_seconds

    @staticmethod
    def _key(ride_id: str) -> str:
        return f"active_ride:{ride_id}"

    @staticmethod
    def _encode(entry: ActiveRide) -> dict[str, str]:
        data = {
            "ride_id": entry.ride_id,
            "driver_id": entry.driver_id,
            "rider_id": entry.rider_id,
        }
        if entry.last_location is not None:
            data["last_lon"] = repr(entry.last_location[0])
            data["last_lat"] = repr(entry.last_location[1])
        return data

    @staticmethod
    def _decode(data: dict[str, str]) -> ActiveRide:
        location = None
        if "last_lon" in data and "last_lat" in data:
            location = (float(data["last_lon"]), float(data["last_lat"]))
        return ActiveRide(
            ride_id=data["ride_id"],
            driver_id=data["driver_id"],
            rider_id=data["rider_id"],
            last_location=location,
        )

    async def get(self, ride_id: str) -> Optional[ActiveRide]:
        data = await self.redis.hgetall(self._key(ride_id))
        return self._decode(data) if data else None

    async def put(self, entry: ActiveRide) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(entry.ride_id))
            pipe.hset(self._key(entry.ride_id), mapping=self._encode(entry))
            pipe.sadd(self.INDEX_KEY, entry.ride_id)
            await pipe.execute()

    async def remove(self, ride_id: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(ride_id))
            pipe.srem(self.INDEX_KEY, ride_id)
            await pipe.execute()

    async def entries(self) -> list[ActiveRide]:
        entries = []
        for ride_id in sorted(await self.redis.smembers(self.INDEX_KEY)):
            entry = await self.get(ride_id)
            if entry is not None:
                entries.append(entry)
        return entries

    def lock(self, ride_id: str) -> DistributedLock:
        return DistributedLock(
            self.redis,
            f"ride:{ride_id}",
            ttl_seconds=30,
            wait_seconds=self.lock_wait_seconds,
        )


_store: Optional[ActiveRideStore] = None


async def get_active_ride_store() -> ActiveRideStore:
    """Process-wide store for the configured backend."""
    global _store
    if _store is None:
        if settings.active_ride_backend == "memory":
            _store = InMemoryActiveRideStore()
        else:
            _store = RedisActiveRideStore(await get_redis())
    return _store
