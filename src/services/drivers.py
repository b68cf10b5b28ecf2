"""
Driver Directory
================

Driver registration, availability, nearby lookup and the mutations the
ride lifecycle applies to a driver (location, status, statistics, rating).
Every mutation is persisted through ``DriverRepository`` in the caller's
session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.domain.entities import Driver, Location, ScheduleSlot, Vehicle, VehicleDocument
from src.domain.enums import DocumentKind, DriverStatus
from src.domain.errors import DriverNotFound, ValidationError
from src.domain.geo import eta_minutes, haversine_km
from src.infrastructure.repositories import DriverRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NearbyDriver:
    driver: Driver
    distance_km: float
    eta_minutes: int


class DriverDirectory:
    def __init__(
        self,
        session: AsyncSession,
        *,
        default_radius_m: float = 5000,
        average_speed_kmh: float = 30.0,
    ):
        self.repo = DriverRepository(session)
        self.default_radius_m = default_radius_m
        self.average_speed_kmh = average_speed_kmh

    # ── Queries ───────────────────────────────────────────────────────

    async def get_driver(self, driver_id: str) -> Driver:
        driver = await self.repo.get_by_id(driver_id)
        if driver is None:
            raise DriverNotFound(driver_id)
        return driver

    async def get_driver_for_user(self, user_id: str) -> Driver:
        driver = await self.repo.get_by_user_id(user_id)
        if driver is None:
            raise DriverNotFound(f"user {user_id}")
        return driver

    async def find_nearby_drivers(
        self, coordinates, max_distance_m: Optional[float] = None
    ) -> list[Driver]:
        """Available, active drivers nearest first within *max_distance_m*."""
        point = Location.from_coordinates(coordinates).coordinates
        return await self.repo.find_nearby(
            point, max_distance_m or self.default_radius_m
        )

    async def nearby_with_eta(
        self, coordinates, max_distance_m: Optional[float] = None
    ) -> list[NearbyDriver]:
        point = Location.from_coordinates(coordinates).coordinates
        result = []
        for driver in await self.find_nearby_drivers(point, max_distance_m):
            distance = haversine_km(point, driver.location.coordinates)
            result.append(
                NearbyDriver(
                    driver=driver,
                    distance_km=distance,
                    eta_minutes=eta_minutes(distance, self.average_speed_kmh),
                )
            )
        return result

    # ── Registration / availability ───────────────────────────────────

    async def register_driver(
        self,
        user_id: str,
        vehicle: Vehicle,
        coordinates,
        documents: Optional[dict[DocumentKind, VehicleDocument]] = None,
        schedule: Optional[list[ScheduleSlot]] = None,
    ) -> Driver:
        if await self.repo.get_by_user_id(user_id) is not None:
            raise ValidationError(f"User {user_id} is already registered as a driver")
        driver = Driver(
            user_id=user_id,
            vehicle=vehicle,
            documents=documents or {},
            location=Location.from_coordinates(coordinates),
            schedule=schedule or [],
        )
        await self.repo.add(driver)
        logger.info("Registered driver %s for user %s", driver.id, user_id)
        return driver

    async def go_online(self, driver: Driver) -> Driver:
        driver.is_active = True
        if driver.status == DriverStatus.OFFLINE:
            driver.update_status(DriverStatus.AVAILABLE)
        return await self.repo.save(driver)

    async def go_offline(self, driver: Driver) -> Driver:
        if driver.status == DriverStatus.ENGAGED:
            raise ValidationError("Cannot go offline during a ride")
        driver.is_active = False
        driver.update_status(DriverStatus.OFFLINE)
        return await self.repo.save(driver)

    # ── Mutations used by the ride lifecycle ──────────────────────────

    async def update_location(self, driver: Driver, coordinates) -> Driver:
        driver.update_location(coordinates)
        return await self.repo.save(driver)

    async def update_status(self, driver: Driver, status: DriverStatus) -> Driver:
        driver.update_status(status)
        return await self.repo.save(driver)

    async def claim(self, driver: Driver, ride_id: str) -> bool:
        """Atomically engage *driver* for *ride_id*; False if someone was faster."""
        if not await self.repo.claim(driver.id, ride_id):
            return False
        driver.engage(ride_id)
        return True

    async def release(self, driver: Driver) -> Driver:
        driver.release()
        return await self.repo.save(driver)

    # Counters are incremented in SQL; *driver* is refreshed from the row.

    async def update_statistics(
        self, driver: Driver, fare: float, distance_km: float
    ) -> Driver:
        stored = await self.repo.record_trip(driver.id, fare, distance_km)
        driver.statistics = stored.statistics
        return driver

    async def update_rating(self, driver: Driver, rating: float) -> Driver:
        stored = await self.repo.record_rating(driver.id, rating)
        driver.rating_average = stored.rating_average
        driver.rating_count = stored.rating_count
        return driver
