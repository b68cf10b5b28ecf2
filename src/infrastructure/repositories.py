"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work), exposes
domain-relevant queries only and translates between ORM rows and the
dataclass entities in ``src.domain.entities``.  Repositories flush but
never commit; the caller owns the transaction.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import DriverModel, RideModel
from src.domain.entities import (
    Cancellation,
    Driver,
    DriverStatistics,
    Location,
    RatingSlot,
    Ride,
    ScheduleSlot,
    Vehicle,
    VehicleDocument,
)
from src.domain.enums import (
    IN_FLIGHT_STATUSES,
    DocumentKind,
    DriverStatus,
    RideStatus,
    Weekday,
)
from src.domain.errors import DriverNotFound, RideNotFound
from src.domain.fare import FareBreakdown
from src.domain.geo import bounding_box, haversine_km


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Driver mapping ────────────────────────────────────────────────────


def _encode_documents(documents: dict[DocumentKind, VehicleDocument]) -> dict:
    return {
        kind.value: {
            "number": doc.number,
            "expiry_date": doc.expiry_date.isoformat() if doc.expiry_date else None,
            "verified": doc.verified,
        }
        for kind, doc in documents.items()
    }


def _decode_documents(raw: Optional[dict]) -> dict[DocumentKind, VehicleDocument]:
    documents = {}
    for kind, doc in (raw or {}).items():
        expiry = doc.get("expiry_date")
        documents[DocumentKind(kind)] = VehicleDocument(
            number=doc.get("number"),
            expiry_date=date.fromisoformat(expiry) if expiry else None,
            verified=bool(doc.get("verified")),
        )
    return documents


def _to_driver(m: DriverModel) -> Driver:
    return Driver(
        id=m.id,
        user_id=m.user_id,
        vehicle=Vehicle(
            type=m.vehicle_type,
            model=m.vehicle_model,
            number=m.vehicle_number,
            color=m.vehicle_color,
        ),
        documents=_decode_documents(m.documents),
        location=Location(longitude=m.longitude, latitude=m.latitude),
        status=m.status,
        current_ride_id=m.current_ride_id,
        rating_average=m.rating_average,
        rating_count=m.rating_count,
        statistics=DriverStatistics(
            total_rides=m.total_rides,
            total_earnings=m.total_earnings,
            total_distance_km=m.total_distance_km,
            completion_rate=m.completion_rate,
        ),
        is_active=m.is_active,
        schedule=[
            ScheduleSlot(
                day=Weekday(s["day"]),
                start_time=s["start_time"],
                end_time=s["end_time"],
            )
            for s in m.schedule or []
        ],
        created_at=_aware(m.created_at),
    )


def _apply_driver(d: Driver, m: DriverModel, *, counters: bool = False) -> None:
    """
    Copy entity fields onto the row.

    Rating and statistics counters are only written on insert; afterwards
    they change through single-statement UPDATEs so concurrent writers
    cannot lose each other's increments.
    """
    m.user_id = d.user_id
    if d.vehicle is not None:
        m.vehicle_type = d.vehicle.type
        m.vehicle_model = d.vehicle.model
        m.vehicle_number = d.vehicle.number
        m.vehicle_color = d.vehicle.color
    m.documents = _encode_documents(d.documents)
    m.longitude = d.location.longitude
    m.latitude = d.location.latitude
    m.status = d.status
    m.current_ride_id = d.current_ride_id
    if counters:
        m.rating_average = d.rating_average
        m.rating_count = d.rating_count
        m.total_rides = d.statistics.total_rides
        m.total_earnings = d.statistics.total_earnings
        m.total_distance_km = d.statistics.total_distance_km
    m.completion_rate = d.statistics.completion_rate
    m.is_active = d.is_active
    m.schedule = [
        {"day": s.day.value, "start_time": s.start_time, "end_time": s.end_time}
        for s in d.schedule
    ]


# ── Ride mapping ──────────────────────────────────────────────────────


def _to_ride(m: RideModel) -> Ride:
    fare = None
    if m.fare_total is not None:
        fare = FareBreakdown(
            base=m.fare_base,
            distance=m.fare_distance,
            time=m.fare_time,
            surge=m.fare_surge,
            tax=m.fare_tax,
            total=m.fare_total,
            currency=m.fare_currency,
        )
    cancellation = None
    if m.canceled_by is not None:
        cancellation = Cancellation(
            reason=m.cancellation_reason,
            by=m.canceled_by,
            at=_aware(m.canceled_at),
        )
    return Ride(
        id=m.id,
        rider_id=m.rider_id,
        driver_id=m.driver_id,
        pickup=Location(m.pickup_lon, m.pickup_lat, m.pickup_address),
        dropoff=Location(m.dropoff_lon, m.dropoff_lat, m.dropoff_address),
        status=m.status,
        ride_class=m.ride_class,
        fare=fare,
        payment_status=m.payment_status,
        payment_method=m.payment_method,
        requested_at=_aware(m.requested_at),
        accepted_at=_aware(m.accepted_at),
        arrived_at=_aware(m.arrived_at),
        started_at=_aware(m.started_at),
        completed_at=_aware(m.completed_at),
        canceled_at=_aware(m.canceled_at),
        estimated_distance_km=m.estimated_distance_km,
        actual_distance_km=m.actual_distance_km,
        estimated_duration_min=m.estimated_duration_min,
        actual_duration_min=m.actual_duration_min,
        route=[(p[0], p[1]) for p in m.route or []],
        driver_rating=(
            RatingSlot(m.driver_rating, m.driver_feedback)
            if m.driver_rating is not None
            else None
        ),
        rider_rating=(
            RatingSlot(m.rider_rating, m.rider_feedback)
            if m.rider_rating is not None
            else None
        ),
        cancellation=cancellation,
    )


def _apply_ride(r: Ride, m: RideModel) -> None:
    m.rider_id = r.rider_id
    m.driver_id = r.driver_id
    m.pickup_lon, m.pickup_lat = r.pickup.coordinates
    m.pickup_address = r.pickup.address
    m.dropoff_lon, m.dropoff_lat = r.dropoff.coordinates
    m.dropoff_address = r.dropoff.address
    m.status = r.status
    m.ride_class = r.ride_class
    if r.fare is not None:
        m.fare_base = r.fare.base
        m.fare_distance = r.fare.distance
        m.fare_time = r.fare.time
        m.fare_surge = r.fare.surge
        m.fare_tax = r.fare.tax
        m.fare_total = r.fare.total
        m.fare_currency = r.fare.currency
    m.payment_status = r.payment_status
    m.payment_method = r.payment_method
    m.requested_at = r.requested_at
    m.accepted_at = r.accepted_at
    m.arrived_at = r.arrived_at
    m.started_at = r.started_at
    m.completed_at = r.completed_at
    m.canceled_at = r.canceled_at
    m.estimated_distance_km = r.estimated_distance_km
    m.actual_distance_km = r.actual_distance_km
    m.estimated_duration_min = r.estimated_duration_min
    m.actual_duration_min = r.actual_duration_min
    m.route = [[lon, lat] for lon, lat in r.route]
    if r.driver_rating is not None:
        m.driver_rating = r.driver_rating.rating
        m.driver_feedback = r.driver_rating.feedback
    if r.rider_rating is not None:
        m.rider_rating = r.rider_rating.rating
        m.rider_feedback = r.rider_rating.feedback
    if r.cancellation is not None:
        m.cancellation_reason = r.cancellation.reason
        m.canceled_by = r.cancellation.by


# ── Repositories ──────────────────────────────────────────────────────


class DriverRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, driver: Driver) -> Driver:
        model = DriverModel(id=driver.id)
        _apply_driver(driver, model, counters=True)
        self.session.add(model)
        await self.session.flush()
        return driver

    async def get_by_id(self, driver_id: str) -> Optional[Driver]:
        model = await self.session.get(DriverModel, driver_id)
        return _to_driver(model) if model else None

    async def get_by_user_id(self, user_id: str) -> Optional[Driver]:
        result = await self.session.execute(
            select(DriverModel).where(DriverModel.user_id == user_id)
        )
        model = result.scalar_one_or_none()
        return _to_driver(model) if model else None

    async def save(self, driver: Driver) -> Driver:
        model = await self.session.get(DriverModel, driver.id)
        if model is None:
            raise DriverNotFound(driver.id)
        _apply_driver(driver, model)
        await self.session.flush()
        return driver

    async def find_nearby(
        self, coordinates, max_distance_m: float = 5000
    ) -> list[Driver]:
        """
        Available, active drivers within *max_distance_m*, nearest first.

        Bounding-box prefilter on the indexed lat/lon columns, then an
        exact Haversine filter and sort.  O(k log k) for k drivers in the box.
        Near the antimeridian the longitude prefilter covers both sides.
        """
        radius_km = max_distance_m / 1000
        box = bounding_box(coordinates, radius_km)
        result = await self.session.execute(
            select(DriverModel).where(
                DriverModel.status == DriverStatus.AVAILABLE,
                DriverModel.is_active.is_(True),
                DriverModel.latitude.between(box.min_lat, box.max_lat),
                or_(
                    *(
                        DriverModel.longitude.between(lo, hi)
                        for lo, hi in box.longitude_ranges()
                    )
                ),
            )
        )
        ranked = []
        for model in result.scalars().all():
            driver = _to_driver(model)
            distance = haversine_km(coordinates, driver.location.coordinates)
            if distance <= radius_km:
                ranked.append((distance, driver))
        ranked.sort(key=lambda pair: pair[0])
        return [driver for _, driver in ranked]

    async def claim(self, driver_id: str, ride_id: str) -> bool:
        """
        Compare-and-swap ``available -> engaged``.

        A single conditional UPDATE, so two requests racing for the same
        driver cannot both win: the loser sees ``rowcount == 0``.
        """
        result = await self.session.execute(
            update(DriverModel)
            .where(
                DriverModel.id == driver_id,
                DriverModel.status == DriverStatus.AVAILABLE,
            )
            .values(status=DriverStatus.ENGAGED, current_ride_id=ride_id)
        )
        return result.rowcount == 1

    async def record_trip(
        self, driver_id: str, fare: float, distance_km: float
    ) -> Driver:
        """Add one completed trip to the driver's running statistics."""
        return await self._increment(
            driver_id,
            total_rides=DriverModel.total_rides + 1,
            total_earnings=DriverModel.total_earnings + fare,
            total_distance_km=DriverModel.total_distance_km + distance_km,
        )

    async def record_rating(self, driver_id: str, rating: float) -> Driver:
        """Fold *rating* into the running mean: ``(avg * n + r) / (n + 1)``."""
        return await self._increment(
            driver_id,
            rating_average=(
                DriverModel.rating_average * DriverModel.rating_count + rating
            )
            / (DriverModel.rating_count + 1),
            rating_count=DriverModel.rating_count + 1,
        )

    async def _increment(self, driver_id: str, **values) -> Driver:
        # SET expressions read the row as it was before this statement
        result = await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise DriverNotFound(driver_id)
        refreshed = await self.session.execute(
            select(DriverModel)
            .where(DriverModel.id == driver_id)
            .execution_options(populate_existing=True)
        )
        return _to_driver(refreshed.scalar_one())


class RideRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, ride: Ride) -> Ride:
        model = RideModel(id=ride.id)
        _apply_ride(ride, model)
        self.session.add(model)
        await self.session.flush()
        return ride

    async def get_by_id(
        self, ride_id: str, for_update: bool = False
    ) -> Optional[Ride]:
        """Fetch a ride; ``for_update`` takes a row lock (SELECT ... FOR UPDATE)."""
        query = select(RideModel).where(RideModel.id == ride_id)
        if for_update:
            query = query.with_for_update().execution_options(
                populate_existing=True
            )
        result = await self.session.execute(query)
        model = result.scalar_one_or_none()
        return _to_ride(model) if model else None

    async def save(self, ride: Ride) -> Ride:
        model = await self.session.get(RideModel, ride.id)
        if model is None:
            raise RideNotFound(ride.id)
        _apply_ride(ride, model)
        await self.session.flush()
        return ride

    async def list_for_rider(
        self,
        rider_id: str,
        status: Optional[RideStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Ride], int]:
        """One page of a rider's rides, newest first, plus the total count."""
        conditions = [RideModel.rider_id == rider_id]
        if status is not None:
            conditions.append(RideModel.status == status)

        total = (
            await self.session.execute(
                select(func.count()).select_from(RideModel).where(*conditions)
            )
        ).scalar() or 0
        result = await self.session.execute(
            select(RideModel)
            .where(*conditions)
            .order_by(RideModel.requested_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return [_to_ride(m) for m in result.scalars().all()], total

    async def get_in_flight(
        self,
        *,
        rider_id: Optional[str] = None,
        driver_id: Optional[str] = None,
    ) -> Optional[Ride]:
        query = select(RideModel).where(RideModel.status.in_(list(IN_FLIGHT_STATUSES)))
        if rider_id is not None:
            query = query.where(RideModel.rider_id == rider_id)
        if driver_id is not None:
            query = query.where(RideModel.driver_id == driver_id)
        result = await self.session.execute(
            query.order_by(RideModel.requested_at.desc()).limit(1)
        )
        model = result.scalar_one_or_none()
        return _to_ride(model) if model else None

    async def list_in_flight(self) -> list[Ride]:
        result = await self.session.execute(
            select(RideModel).where(
                RideModel.status.in_(list(IN_FLIGHT_STATUSES)),
                RideModel.driver_id.is_not(None),
            )
        )
        return [_to_ride(m) for m in result.scalars().all()]

    async def get_unmatched(self, limit: int = 100) -> list[Ride]:
        """Rides still ``requested`` with no driver, oldest first."""
        result = await self.session.execute(
            select(RideModel)
            .where(
                RideModel.status == RideStatus.REQUESTED,
                RideModel.driver_id.is_(None),
            )
            .order_by(RideModel.requested_at)
            .limit(limit)
        )
        return [_to_ride(m) for m in result.scalars().all()]
