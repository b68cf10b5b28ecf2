"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 12 drivers spread around Mumbai airport (mix of classes, online/offline)
  - 3 rides: one in progress, one completed, one canceled
"""

import asyncio
from datetime import date, timedelta

from sqlalchemy import text

from src.domain.entities import (
    Driver,
    Location,
    Ride,
    ScheduleSlot,
    Vehicle,
    VehicleDocument,
    utcnow,
)
from src.domain.enums import (
    CanceledBy,
    DocumentKind,
    DriverStatus,
    RideClass,
    RideStatus,
    Weekday,
)
from src.domain.geo import haversine_km, round_half_up
from src.infrastructure.database import async_session_factory, engine
from src.infrastructure.repositories import DriverRepository, RideRepository

# Mumbai airport coordinates (approx), [lon, lat]
AIRPORT = (72.8656, 19.0896)


DRIVERS = [
    {"user": "u-drv-01", "class": RideClass.SEDAN, "model": "Maruti Dzire", "number": "MH01AB1001", "at": (72.8660, 19.0900), "online": True},
    {"user": "u-drv-02", "class": RideClass.SEDAN, "model": "Honda Amaze", "number": "MH01AB1002", "at": (72.8640, 19.0880), "online": True},
    {"user": "u-drv-03", "class": RideClass.SEDAN, "model": "Hyundai Aura", "number": "MH01AB1003", "at": (72.8670, 19.0910), "online": True},
    {"user": "u-drv-04", "class": RideClass.SUV, "model": "Toyota Innova", "number": "MH02CD2001", "at": (72.8665, 19.0905), "online": True},
    {"user": "u-drv-05", "class": RideClass.SUV, "model": "Mahindra XUV700", "number": "MH02CD2002", "at": (72.8655, 19.0895), "online": True},
    {"user": "u-drv-06", "class": RideClass.LUXURY, "model": "Mercedes E-Class", "number": "MH03EF3001", "at": (72.8675, 19.0915), "online": True},
    {"user": "u-drv-07", "class": RideClass.BIKE, "model": "Honda Activa", "number": "MH04GH4001", "at": (72.8630, 19.0870), "online": True},
    {"user": "u-drv-08", "class": RideClass.BIKE, "model": "TVS Jupiter", "number": "MH04GH4002", "at": (72.8690, 19.0930), "online": True},
    {"user": "u-drv-09", "class": RideClass.SEDAN, "model": "Maruti Ciaz", "number": "MH01AB1004", "at": (72.8620, 19.0860), "online": False},
    {"user": "u-drv-10", "class": RideClass.SUV, "model": "Kia Carens", "number": "MH02CD2003", "at": (72.8610, 19.0850), "online": False},
    {"user": "u-drv-11", "class": RideClass.SEDAN, "model": "Tata Tigor", "number": "MH01AB1005", "at": (72.8700, 19.0940), "online": True},
    {"user": "u-drv-12", "class": RideClass.LUXURY, "model": "BMW 5 Series", "number": "MH03EF3002", "at": (72.8705, 19.0945), "online": True},
]

WEEKDAYS = [Weekday.MONDAY, Weekday.TUESDAY, Weekday.WEDNESDAY, Weekday.THURSDAY, Weekday.FRIDAY]


def _documents() -> dict:
    expiry = date.today() + timedelta(days=365)
    return {
        kind: VehicleDocument(number=f"{kind.value[:3].upper()}-0001", expiry_date=expiry, verified=True)
        for kind in DocumentKind
    }


def _ride(rider_id: str, dropoff: tuple, address: str) -> Ride:
    pickup = Location(*AIRPORT, "Chhatrapati Shivaji Maharaj International Airport")
    distance = haversine_km(pickup.coordinates, dropoff)
    duration = round_half_up(distance * 3)
    ride = Ride(
        rider_id=rider_id,
        pickup=pickup,
        dropoff=Location(*dropoff, address),
        ride_class=RideClass.SEDAN,
        estimated_distance_km=distance,
        estimated_duration_min=duration,
    )
    ride.calculate_fare(distance, duration)
    return ride


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM drivers"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        driver_repo = DriverRepository(session)
        ride_repo = RideRepository(session)

        # ── Drivers ───────────────────────────────────────────────────
        drivers = []
        for d in DRIVERS:
            driver = Driver(
                user_id=d["user"],
                vehicle=Vehicle(type=d["class"], model=d["model"], number=d["number"], color="white"),
                documents=_documents(),
                location=Location(*d["at"]),
                status=DriverStatus.AVAILABLE if d["online"] else DriverStatus.OFFLINE,
                is_active=d["online"],
                rating_average=4.6,
                rating_count=25,
                schedule=[ScheduleSlot(day, "08:00", "20:00") for day in WEEKDAYS],
            )
            await driver_repo.add(driver)
            drivers.append(driver)
        print(f"  Created {len(drivers)} drivers")

        # ── Rides ─────────────────────────────────────────────────────
        now = utcnow()

        in_progress = _ride("u-rider-01", (72.8777, 19.0760), "Andheri East")
        in_progress.driver_id = drivers[0].id
        for status in (RideStatus.SEARCHING, RideStatus.ACCEPTED, RideStatus.ARRIVED, RideStatus.IN_PROGRESS):
            in_progress.transition_to(status, at=now)
        in_progress.add_route_point(AIRPORT)
        await ride_repo.add(in_progress)
        drivers[0].engage(in_progress.id)
        await driver_repo.save(drivers[0])

        completed = _ride("u-rider-02", (72.9060, 19.1176), "Powai")
        completed.driver_id = drivers[3].id
        for status in (RideStatus.SEARCHING, RideStatus.ACCEPTED, RideStatus.ARRIVED, RideStatus.IN_PROGRESS):
            completed.transition_to(status, at=now - timedelta(minutes=40))
        completed.add_route_point(AIRPORT)
        completed.add_route_point((72.8900, 19.1000))
        completed.add_route_point((72.9060, 19.1176))
        completed.transition_to(RideStatus.COMPLETED, at=now - timedelta(minutes=5))
        completed.finalize_completion()
        completed.calculate_fare(completed.actual_distance_km, completed.actual_duration_min)
        await ride_repo.add(completed)
        await driver_repo.record_trip(
            drivers[3].id, completed.fare.total, completed.actual_distance_km
        )

        canceled = _ride("u-rider-03", (72.8400, 19.0540), "Bandra")
        canceled.transition_to(RideStatus.CANCELED, at=now - timedelta(minutes=15))
        canceled.record_cancellation("Change of plans", CanceledBy.RIDER)
        await ride_repo.add(canceled)
        print("  Created 3 rides")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
