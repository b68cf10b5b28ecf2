"""Domain enumerations and state-transition rules."""

import enum


class RideStatus(str, enum.Enum):
    REQUESTED = "requested"
    SEARCHING = "searching"
    ACCEPTED = "accepted"
    ARRIVED = "arrived"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    CANCELED = "canceled"


# State machine: maps current status -> set of valid next statuses
RIDE_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.REQUESTED: {RideStatus.SEARCHING, RideStatus.CANCELED},
    RideStatus.SEARCHING: {RideStatus.ACCEPTED, RideStatus.CANCELED},
    RideStatus.ACCEPTED: {RideStatus.ARRIVED, RideStatus.CANCELED},
    RideStatus.ARRIVED: {RideStatus.IN_PROGRESS, RideStatus.CANCELED},
    RideStatus.IN_PROGRESS: {RideStatus.COMPLETED, RideStatus.CANCELED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELED: set(),
}

TERMINAL_STATUSES = frozenset({RideStatus.COMPLETED, RideStatus.CANCELED})

# Statuses in which a driver is attached and the ride is under way
IN_FLIGHT_STATUSES = frozenset(
    {RideStatus.ACCEPTED, RideStatus.ARRIVED, RideStatus.IN_PROGRESS}
)


class DriverStatus(str, enum.Enum):
    OFFLINE = "offline"
    AVAILABLE = "available"
    ENGAGED = "engaged"


class RideClass(str, enum.Enum):
    SEDAN = "sedan"
    SUV = "suv"
    LUXURY = "luxury"
    BIKE = "bike"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    WALLET = "wallet"


class CanceledBy(str, enum.Enum):
    RIDER = "rider"
    DRIVER = "driver"
    SYSTEM = "system"


class CallerRole(str, enum.Enum):
    RIDER = "rider"
    DRIVER = "driver"


class DocumentKind(str, enum.Enum):
    LICENSE = "license"
    INSURANCE = "insurance"
    VEHICLE_REGISTRATION = "vehicleRegistration"


class Weekday(str, enum.Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"
