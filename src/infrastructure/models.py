"""
SQLAlchemy ORM models.

Tables
------
* ``drivers`` -- driver profiles, live location and lifetime statistics
* ``rides``   -- ride requests through their whole lifecycle

Locations are stored as plain ``longitude`` / ``latitude`` floats with a
composite B-Tree index; nearby-driver lookups prefilter on a bounding box
and refine with Haversine in Python, so the same schema runs on
PostgreSQL and on the SQLite test database.

Indexes
-------
* **B-Tree** on ``(status, latitude, longitude)`` for the driver search.
* **B-Tree** on ``status``, ``rider_id``, ``driver_id`` for ride look-ups
  used by the service, the history endpoint and the re-matching worker.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)

from .database import Base
from src.domain.enums import (
    CanceledBy,
    DriverStatus,
    PaymentMethod,
    PaymentStatus,
    RideClass,
    RideStatus,
)


def _enum(enum_cls):
    """Store enum *values* (``inProgress``) rather than member names."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


class DriverModel(Base):
    __tablename__ = "drivers"

    id = Column(String(16), primary_key=True)
    user_id = Column(String(64), unique=True, nullable=False)

    vehicle_type = Column(_enum(RideClass), nullable=False)
    vehicle_model = Column(String(120), nullable=False)
    vehicle_number = Column(String(32), nullable=False)
    vehicle_color = Column(String(32), nullable=True)
    # {"license": {"number": .., "expiry_date": "YYYY-MM-DD", "verified": ..}, ...}
    documents = Column(JSON, nullable=False, default=dict)

    longitude = Column(Float, nullable=False)
    latitude = Column(Float, nullable=False)

    status = Column(_enum(DriverStatus), default=DriverStatus.OFFLINE, nullable=False)
    current_ride_id = Column(String(16), nullable=True)

    rating_average = Column(Float, default=0.0, nullable=False)
    rating_count = Column(Integer, default=0, nullable=False)

    total_rides = Column(Integer, default=0, nullable=False)
    total_earnings = Column(Float, default=0.0, nullable=False)
    total_distance_km = Column(Float, default=0.0, nullable=False)
    completion_rate = Column(Float, default=100.0, nullable=False)

    is_active = Column(Boolean, default=False, nullable=False)
    schedule = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_drivers_search", "status", "latitude", "longitude"),
    )
    # created_at is read back into the entity; fetch it with the INSERT
    __mapper_args__ = {"eager_defaults": True}


class RideModel(Base):
    __tablename__ = "rides"

    id = Column(String(16), primary_key=True)
    rider_id = Column(String(64), nullable=False)
    driver_id = Column(String(16), ForeignKey("drivers.id"), nullable=True)

    pickup_lon = Column(Float, nullable=False)
    pickup_lat = Column(Float, nullable=False)
    pickup_address = Column(String(255), nullable=False)
    dropoff_lon = Column(Float, nullable=False)
    dropoff_lat = Column(Float, nullable=False)
    dropoff_address = Column(String(255), nullable=False)

    status = Column(_enum(RideStatus), default=RideStatus.REQUESTED, nullable=False)
    ride_class = Column(_enum(RideClass), nullable=False)

    fare_base = Column(Float, nullable=True)
    fare_distance = Column(Float, nullable=True)
    fare_time = Column(Float, nullable=True)
    fare_surge = Column(Float, nullable=True)
    fare_tax = Column(Float, nullable=True)
    fare_total = Column(Integer, nullable=True)
    fare_currency = Column(String(3), default="INR", nullable=False)

    payment_status = Column(
        _enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False
    )
    payment_method = Column(
        _enum(PaymentMethod), default=PaymentMethod.CASH, nullable=False
    )

    requested_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    arrived_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)

    estimated_distance_km = Column(Float, nullable=True)
    actual_distance_km = Column(Float, nullable=True)
    estimated_duration_min = Column(Integer, nullable=True)
    actual_duration_min = Column(Integer, nullable=True)

    # Ordered [[lon, lat], ...]; reassigned (never mutated in place) on update
    route = Column(JSON, nullable=False, default=list)

    driver_rating = Column(Integer, nullable=True)
    driver_feedback = Column(String(500), nullable=True)
    rider_rating = Column(Integer, nullable=True)
    rider_feedback = Column(String(500), nullable=True)

    cancellation_reason = Column(String(255), nullable=True)
    canceled_by = Column(_enum(CanceledBy), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_rides_status", "status"),
        Index("idx_rides_rider", "rider_id", "requested_at"),
        Index("idx_rides_driver", "driver_id", "requested_at"),
    )
