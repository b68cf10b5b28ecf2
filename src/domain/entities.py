"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``Ride``: enforces valid lifecycle transitions
  (requested -> searching -> accepted -> arrived -> inProgress -> completed,
  with canceled reachable from every non-terminal state).
- ``Driver.engage`` / ``Driver.release`` keep the invariant
  ``status == engaged  <=>  current_ride_id is not None``.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional

from .enums import (
    RIDE_TRANSITIONS,
    TERMINAL_STATUSES,
    CanceledBy,
    DocumentKind,
    DriverStatus,
    PaymentMethod,
    PaymentStatus,
    RideClass,
    RideStatus,
    Weekday,
)
from .errors import InvalidStateTransition, ValidationError
from .fare import DEFAULT_RATES, FareBreakdown, FareRates, calculate_fare
from .geo import route_length_km, round_half_up, validate_coordinates

_ID_ALPHABET = string.ascii_uppercase + string.digits


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _random_id(prefix: str) -> str:
    return prefix + "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))


def new_ride_id() -> str:
    return _random_id("RD")


def new_driver_id() -> str:
    return _random_id("DRV")


# Timestamp slot stamped when a ride enters each status
STATUS_TIMESTAMPS: dict[RideStatus, str] = {
    RideStatus.ACCEPTED: "accepted_at",
    RideStatus.ARRIVED: "arrived_at",
    RideStatus.IN_PROGRESS: "started_at",
    RideStatus.COMPLETED: "completed_at",
    RideStatus.CANCELED: "canceled_at",
}


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    longitude: float
    latitude: float
    address: Optional[str] = None

    @classmethod
    def from_coordinates(
        cls, coordinates, address: Optional[str] = None
    ) -> "Location":
        try:
            lon, lat = validate_coordinates(coordinates)
        except (TypeError, ValueError) as exc:
            raise ValidationError(str(exc)) from exc
        return cls(longitude=lon, latitude=lat, address=address)

    @property
    def coordinates(self) -> tuple[float, float]:
        return (self.longitude, self.latitude)


@dataclass(frozen=True)
class Vehicle:
    type: RideClass
    model: str
    number: str
    color: Optional[str] = None


@dataclass(frozen=True)
class VehicleDocument:
    number: Optional[str] = None
    expiry_date: Optional[date] = None
    verified: bool = False


@dataclass(frozen=True)
class ScheduleSlot:
    day: Weekday
    start_time: str
    end_time: str


@dataclass(frozen=True)
class RatingSlot:
    rating: int
    feedback: Optional[str] = None


@dataclass(frozen=True)
class Cancellation:
    reason: str
    by: CanceledBy
    at: datetime


@dataclass
class DriverStatistics:
    total_rides: int = 0
    total_earnings: float = 0.0
    total_distance_km: float = 0.0
    completion_rate: float = 100.0


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Driver:
    id: str = field(default_factory=new_driver_id)
    user_id: str = ""
    vehicle: Optional[Vehicle] = None
    documents: dict[DocumentKind, VehicleDocument] = field(default_factory=dict)
    location: Location = field(default_factory=lambda: Location(0.0, 0.0))
    status: DriverStatus = DriverStatus.OFFLINE
    current_ride_id: Optional[str] = None
    rating_average: float = 0.0
    rating_count: int = 0
    statistics: DriverStatistics = field(default_factory=DriverStatistics)
    is_active: bool = False
    schedule: list[ScheduleSlot] = field(default_factory=list)
    created_at: Optional[datetime] = None

    @property
    def is_available(self) -> bool:
        return self.status == DriverStatus.AVAILABLE and self.is_active

    @property
    def documents_verified(self) -> bool:
        return all(
            self.documents.get(kind, VehicleDocument()).verified
            for kind in DocumentKind
        )

    def update_location(self, coordinates) -> None:
        self.location = Location.from_coordinates(coordinates)

    def update_status(self, status: DriverStatus) -> None:
        """Set *status* regardless of the current one.

        ``engaged`` is only reachable through :meth:`engage`, which also
        links the ride.
        """
        if status == DriverStatus.ENGAGED:
            raise ValidationError("A driver becomes engaged only by taking a ride")
        self.status = status
        self.current_ride_id = None

    def engage(self, ride_id: str) -> None:
        self.status = DriverStatus.ENGAGED
        self.current_ride_id = ride_id

    def release(self) -> None:
        self.status = DriverStatus.AVAILABLE
        self.current_ride_id = None


@dataclass
class Ride:
    id: str = field(default_factory=new_ride_id)
    rider_id: str = ""
    driver_id: Optional[str] = None
    pickup: Location = field(default_factory=lambda: Location(0.0, 0.0))
    dropoff: Location = field(default_factory=lambda: Location(0.0, 0.0))
    status: RideStatus = RideStatus.REQUESTED
    ride_class: RideClass = RideClass.SEDAN
    fare: Optional[FareBreakdown] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.CASH

    requested_at: datetime = field(default_factory=utcnow)
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    estimated_distance_km: Optional[float] = None
    actual_distance_km: Optional[float] = None
    estimated_duration_min: Optional[int] = None
    actual_duration_min: Optional[int] = None

    route: list[tuple[float, float]] = field(default_factory=list)
    driver_rating: Optional[RatingSlot] = None
    rider_rating: Optional[RatingSlot] = None
    cancellation: Optional[Cancellation] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition_to(self, new_status: RideStatus) -> bool:
        return new_status in RIDE_TRANSITIONS.get(self.status, set())

    def transition_to(
        self, new_status: RideStatus, at: Optional[datetime] = None
    ) -> None:
        """Move to *new_status* if the transition is legal, else raise."""
        if not self.can_transition_to(new_status):
            raise InvalidStateTransition(
                f"Cannot transition from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        slot = STATUS_TIMESTAMPS.get(new_status)
        if slot:
            setattr(self, slot, at or utcnow())

    def calculate_fare(
        self,
        distance_km: float,
        duration_min: float,
        surge_multiplier: float = 1.0,
        rates: FareRates = DEFAULT_RATES,
    ) -> FareBreakdown:
        self.fare = calculate_fare(distance_km, duration_min, surge_multiplier, rates)
        return self.fare

    def add_route_point(self, coordinates) -> None:
        point = Location.from_coordinates(coordinates).coordinates
        self.route.append(point)

    def finalize_completion(self) -> None:
        """Derive actual distance from the route and duration from timestamps."""
        if len(self.route) > 1:
            self.actual_distance_km = route_length_km(self.route)
        if self.started_at and self.completed_at:
            minutes = (self.completed_at - self.started_at).total_seconds() / 60
            self.actual_duration_min = round_half_up(minutes)

    def record_cancellation(
        self, reason: str, by: CanceledBy, at: Optional[datetime] = None
    ) -> None:
        self.cancellation = Cancellation(
            reason=reason, by=by, at=at or self.canceled_at or utcnow()
        )
