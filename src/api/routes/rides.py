"""
Ride endpoints
==============

POST  /api/v1/rides                     -- request a ride (201, driver assigned when possible)
GET   /api/v1/rides/active              -- caller's in-flight ride
GET   /api/v1/rides/history             -- caller's rides, newest first
GET   /api/v1/rides/{ride_id}           -- ride status (rider or assigned driver)
PATCH /api/v1/rides/{ride_id}/status    -- lifecycle transition
PATCH /api/v1/rides/{ride_id}/location  -- assigned driver's location ping
POST  /api/v1/rides/{ride_id}/cancel    -- cancel with a reason
POST  /api/v1/rides/{ride_id}/complete  -- complete the ride
POST  /api/v1/rides/{ride_id}/rate      -- rate the other party
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from src.api.dependencies import (
    Caller,
    get_caller,
    get_ride_service,
    require_driver,
)
from src.api.middleware import limiter
from src.api.schemas import (
    CancelRequest,
    CoordinatesRequest,
    ErrorResponse,
    LocationUpdateResponse,
    RateRequest,
    RideCreateRequest,
    RideHistoryResponse,
    RideResponse,
    RideStatusRequest,
)
from src.config import settings
from src.domain.entities import Location
from src.domain.enums import CallerRole, RideStatus
from src.services.rides import RideService

router = APIRouter(prefix="/rides", tags=["rides"])


def _ride(ride) -> RideResponse:
    return RideResponse.model_validate(ride)


async def _driver_id(caller: Caller, service: RideService) -> Optional[str]:
    """Driver profile of a driver-role caller; rides it touches must be its own."""
    if caller.role != CallerRole.DRIVER:
        return None
    return (await service.drivers.get_driver_for_user(caller.user_id)).id


@router.post(
    "",
    status_code=201,
    response_model=RideResponse,
    summary="Request a ride",
    responses={409: {"model": ErrorResponse, "description": "No drivers nearby"}},
)
@limiter.limit(settings.rate_limit)
async def request_ride(
    request: Request,
    body: RideCreateRequest,
    caller: Caller = Depends(get_caller),
    service: RideService = Depends(get_ride_service),
):
    ride = await service.request_ride(
        caller.user_id,
        Location.from_coordinates(body.pickup.coordinates, body.pickup.address),
        Location.from_coordinates(body.dropoff.coordinates, body.dropoff.address),
        body.ride_class,
        body.payment_method,
    )
    return _ride(ride)


@router.get("/active", response_model=RideResponse, summary="Caller's active ride")
@limiter.limit(settings.rate_limit)
async def get_active_ride(
    request: Request,
    caller: Caller = Depends(get_caller),
    service: RideService = Depends(get_ride_service),
):
    return _ride(await service.active_ride(caller.user_id, caller.role))


@router.get(
    "/history", response_model=RideHistoryResponse, summary="Caller's ride history"
)
@limiter.limit(settings.rate_limit)
async def get_ride_history(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[RideStatus] = None,
    caller: Caller = Depends(get_caller),
    service: RideService = Depends(get_ride_service),
):
    result = await service.ride_history(caller.user_id, status, page, limit)
    return RideHistoryResponse(
        data=[_ride(r) for r in result.rides],
        page=result.page,
        limit=result.limit,
        total=result.total,
        pages=result.pages,
    )


@router.get("/{ride_id}", response_model=RideResponse, summary="Get ride status")
@limiter.limit(settings.rate_limit)
async def get_ride(
    request: Request,
    ride_id: str,
    caller: Caller = Depends(get_caller),
    service: RideService = Depends(get_ride_service),
):
    return _ride(await service.get_ride_status(ride_id, caller.user_id))


@router.patch(
    "/{ride_id}/status",
    response_model=RideResponse,
    summary="Move a ride along its lifecycle",
    responses={409: {"model": ErrorResponse, "description": "Invalid transition"}},
)
@limiter.limit(settings.rate_limit)
async def update_ride_status(
    request: Request,
    ride_id: str,
    body: RideStatusRequest,
    caller: Caller = Depends(get_caller),
    service: RideService = Depends(get_ride_service),
):
    ride = await service.update_ride_status(
        ride_id,
        RideStatus(body.status),
        caller.user_id,
        reason=body.reason,
        driver_id=await _driver_id(caller, service),
    )
    return _ride(ride)


@router.patch(
    "/{ride_id}/location",
    response_model=LocationUpdateResponse,
    summary="Report the assigned driver's location",
)
@limiter.limit(settings.rate_limit)
async def update_ride_location(
    request: Request,
    ride_id: str,
    body: CoordinatesRequest,
    caller: Caller = Depends(require_driver),
    service: RideService = Depends(get_ride_service),
):
    driver = await service.drivers.get_driver_for_user(caller.user_id)
    update = await service.update_ride_location(ride_id, driver.id, body.coordinates)
    return LocationUpdateResponse.model_validate(update)


@router.post("/{ride_id}/cancel", response_model=RideResponse, summary="Cancel a ride")
@limiter.limit(settings.rate_limit)
async def cancel_ride(
    request: Request,
    ride_id: str,
    body: CancelRequest,
    caller: Caller = Depends(get_caller),
    service: RideService = Depends(get_ride_service),
):
    ride = await service.update_ride_status(
        ride_id,
        RideStatus.CANCELED,
        caller.user_id,
        reason=body.reason,
        driver_id=await _driver_id(caller, service),
    )
    return _ride(ride)


@router.post(
    "/{ride_id}/complete", response_model=RideResponse, summary="Complete a ride"
)
@limiter.limit(settings.rate_limit)
async def complete_ride(
    request: Request,
    ride_id: str,
    caller: Caller = Depends(require_driver),
    service: RideService = Depends(get_ride_service),
):
    ride = await service.update_ride_status(
        ride_id,
        RideStatus.COMPLETED,
        caller.user_id,
        driver_id=await _driver_id(caller, service),
    )
    return _ride(ride)


@router.post("/{ride_id}/rate", response_model=RideResponse, summary="Rate a ride")
@limiter.limit(settings.rate_limit)
async def rate_ride(
    request: Request,
    ride_id: str,
    body: RateRequest,
    caller: Caller = Depends(get_caller),
    service: RideService = Depends(get_ride_service),
):
    ride = await service.rate_ride(
        ride_id, caller.user_id, caller.role, body.rating, body.feedback
    )
    return _ride(ride)
