"""
Driver endpoints
================

POST  /api/v1/drivers             -- register the caller as a driver
GET   /api/v1/drivers/me          -- caller's driver profile
PATCH /api/v1/drivers/me/status   -- go online (available) / offline
PATCH /api/v1/drivers/me/location -- idle location ping (outside a ride)
GET   /api/v1/drivers/nearby      -- available drivers around a point with ETA
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from src.api.dependencies import (
    Caller,
    get_caller,
    get_driver_directory,
    require_driver,
)
from src.api.middleware import limiter
from src.api.schemas import (
    CoordinatesRequest,
    DriverCreateRequest,
    DriverResponse,
    DriverStatusRequest,
    NearbyDriverResponse,
    VehicleSchema,
)
from src.config import settings
from src.domain.entities import ScheduleSlot, Vehicle, VehicleDocument
from src.services.drivers import DriverDirectory

router = APIRouter(prefix="/drivers", tags=["drivers"])


def _driver(driver) -> DriverResponse:
    return DriverResponse.model_validate(driver)


@router.post(
    "", status_code=201, response_model=DriverResponse, summary="Register a driver"
)
@limiter.limit(settings.rate_limit)
async def register_driver(
    request: Request,
    body: DriverCreateRequest,
    caller: Caller = Depends(get_caller),
    directory: DriverDirectory = Depends(get_driver_directory),
):
    driver = await directory.register_driver(
        caller.user_id,
        Vehicle(**body.vehicle.model_dump()),
        body.coordinates,
        documents={
            kind: VehicleDocument(**doc.model_dump())
            for kind, doc in body.documents.items()
        },
        schedule=[ScheduleSlot(**slot.model_dump()) for slot in body.schedule],
    )
    return _driver(driver)


@router.get("/me", response_model=DriverResponse, summary="Caller's driver profile")
@limiter.limit(settings.rate_limit)
async def get_me(
    request: Request,
    caller: Caller = Depends(require_driver),
    directory: DriverDirectory = Depends(get_driver_directory),
):
    return _driver(await directory.get_driver_for_user(caller.user_id))


@router.patch(
    "/me/status", response_model=DriverResponse, summary="Go online or offline"
)
@limiter.limit(settings.rate_limit)
async def update_status(
    request: Request,
    body: DriverStatusRequest,
    caller: Caller = Depends(require_driver),
    directory: DriverDirectory = Depends(get_driver_directory),
):
    driver = await directory.get_driver_for_user(caller.user_id)
    if body.status == "available":
        driver = await directory.go_online(driver)
    else:
        driver = await directory.go_offline(driver)
    return _driver(driver)


@router.patch(
    "/me/location", response_model=DriverResponse, summary="Update driver location"
)
@limiter.limit(settings.rate_limit)
async def update_location(
    request: Request,
    body: CoordinatesRequest,
    caller: Caller = Depends(require_driver),
    directory: DriverDirectory = Depends(get_driver_directory),
):
    driver = await directory.get_driver_for_user(caller.user_id)
    return _driver(await directory.update_location(driver, body.coordinates))


@router.get(
    "/nearby",
    response_model=list[NearbyDriverResponse],
    summary="Available drivers near a point",
)
@limiter.limit(settings.rate_limit)
async def nearby_drivers(
    request: Request,
    lon: float = Query(..., ge=-180, le=180),
    lat: float = Query(..., ge=-90, le=90),
    max_distance: int = Query(settings.driver_search_radius_m, ge=1, le=50_000),
    directory: DriverDirectory = Depends(get_driver_directory),
):
    nearby = await directory.nearby_with_eta((lon, lat), max_distance)
    return [
        NearbyDriverResponse(
            driver_id=n.driver.id,
            vehicle=VehicleSchema.model_validate(n.driver.vehicle),
            location=n.driver.location.coordinates,
            rating_average=n.driver.rating_average,
            distance_km=round(n.distance_km, 3),
            eta_minutes=n.eta_minutes,
        )
        for n in nearby
    ]
