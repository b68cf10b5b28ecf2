"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from src.domain.enums import (
    CanceledBy,
    DocumentKind,
    DriverStatus,
    PaymentMethod,
    PaymentStatus,
    RideClass,
    RideStatus,
    Weekday,
)


def _check_coordinates(value: list[float]) -> list[float]:
    lon, lat = value
    if not -180 <= lon <= 180 or not -90 <= lat <= 90:
        raise ValueError("Invalid coordinates format")
    return value


# ── Requests ──────────────────────────────────────────────────────────


class CoordinatesRequest(BaseModel):
    coordinates: list[float] = Field(
        ..., min_length=2, max_length=2, description="[longitude, latitude]"
    )

    _validate_coordinates = field_validator("coordinates")(_check_coordinates)


class PlaceRequest(CoordinatesRequest):
    address: str = Field(..., min_length=1, max_length=255)


class RideCreateRequest(BaseModel):
    pickup: PlaceRequest
    dropoff: PlaceRequest
    ride_class: RideClass
    payment_method: PaymentMethod = PaymentMethod.CASH


class RideStatusRequest(BaseModel):
    status: Literal["accepted", "arrived", "inProgress", "completed", "canceled"]
    reason: Optional[str] = Field(None, max_length=255)


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=255)


class RateRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=500)


class VehicleSchema(BaseModel):
    type: RideClass
    model: str = Field(..., min_length=1)
    number: str = Field(..., min_length=1)
    color: Optional[str] = None

    model_config = {"from_attributes": True}


class DocumentRequest(BaseModel):
    number: Optional[str] = None
    expiry_date: Optional[date] = None
    verified: bool = False


class ScheduleSlotSchema(BaseModel):
    day: Weekday
    start_time: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    end_time: str = Field(..., pattern=r"^\d{2}:\d{2}$")

    model_config = {"from_attributes": True}


class DriverCreateRequest(CoordinatesRequest):
    vehicle: VehicleSchema
    documents: dict[DocumentKind, DocumentRequest] = {}
    schedule: list[ScheduleSlotSchema] = []


class DriverStatusRequest(BaseModel):
    status: Literal["available", "offline"]


# ── Responses ─────────────────────────────────────────────────────────


class PlaceResponse(BaseModel):
    coordinates: tuple[float, float]
    address: Optional[str] = None

    model_config = {"from_attributes": True}


class FareResponse(BaseModel):
    base: float
    distance: float
    time: float
    surge: float
    tax: float
    total: int
    currency: str

    model_config = {"from_attributes": True}


class RatingResponse(BaseModel):
    rating: int
    feedback: Optional[str] = None

    model_config = {"from_attributes": True}


class CancellationResponse(BaseModel):
    reason: str
    by: CanceledBy
    at: datetime

    model_config = {"from_attributes": True}


class RideResponse(BaseModel):
    id: str
    rider_id: str
    driver_id: Optional[str] = None
    pickup: PlaceResponse
    dropoff: PlaceResponse
    status: RideStatus
    ride_class: RideClass
    fare: Optional[FareResponse] = None
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    requested_at: datetime
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    estimated_distance_km: Optional[float] = None
    actual_distance_km: Optional[float] = None
    estimated_duration_min: Optional[int] = None
    actual_duration_min: Optional[int] = None
    route: list[tuple[float, float]] = []
    driver_rating: Optional[RatingResponse] = None
    rider_rating: Optional[RatingResponse] = None
    cancellation: Optional[CancellationResponse] = None

    model_config = {"from_attributes": True}


class RideHistoryResponse(BaseModel):
    data: list[RideResponse]
    page: int
    limit: int
    total: int
    pages: int


class LocationUpdateResponse(BaseModel):
    ride_id: str
    status: RideStatus
    location: tuple[float, float]
    heading: Optional[float] = None

    model_config = {"from_attributes": True}


class DriverStatisticsResponse(BaseModel):
    total_rides: int
    total_earnings: float
    total_distance_km: float
    completion_rate: float

    model_config = {"from_attributes": True}


class DriverResponse(BaseModel):
    id: str
    user_id: str
    vehicle: VehicleSchema
    location: PlaceResponse
    status: DriverStatus
    current_ride_id: Optional[str] = None
    rating_average: float
    rating_count: int
    statistics: DriverStatisticsResponse
    is_active: bool
    documents_verified: bool
    schedule: list[ScheduleSlotSchema] = []

    model_config = {"from_attributes": True}


class NearbyDriverResponse(BaseModel):
    driver_id: str
    vehicle: VehicleSchema
    location: tuple[float, float]
    rating_average: float
    distance_km: float
    eta_minutes: int


class ActiveRideResponse(BaseModel):
    ride_id: str
    driver_id: str
    rider_id: str
    last_location: Optional[tuple[float, float]] = None

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
