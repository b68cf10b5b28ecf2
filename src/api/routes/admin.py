"""
Admin / observability endpoints
===============================

GET /api/v1/admin/active-rides -- dump the active-ride index
GET /api/v1/admin/health       -- simple health check
"""

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import get_active_rides
from src.api.middleware import limiter
from src.api.schemas import ActiveRideResponse, HealthResponse
from src.config import settings
from src.infrastructure.active_rides import ActiveRideStore

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/active-rides",
    response_model=list[ActiveRideResponse],
    summary="List rides currently in the active-ride index",
)
@limiter.limit(settings.rate_limit)
async def get_active_rides_index(
    request: Request,
    store: ActiveRideStore = Depends(get_active_rides),
):
    return [ActiveRideResponse.model_validate(e) for e in await store.entries()]


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
