"""
FastAPI application factory.

* Registers routes for rides, drivers and admin.
* Maps domain errors to HTTP status codes.
* On startup rebuilds the active-ride index from persisted in-flight rides
  and starts the re-matching worker; stops it on shutdown.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.api.middleware import limiter
from src.api.routes import admin, drivers, rides
from src.config import settings
from src.domain.errors import (
    DomainError,
    InvalidStateTransition,
    NoDriversAvailable,
    NotFound,
    Unauthorized,
    ValidationError,
)
from src.infrastructure.active_rides import get_active_ride_store
from src.infrastructure.database import async_session_factory
from src.infrastructure.locks import LockNotAcquired
from src.infrastructure.redis_client import close_redis
from src.services.rides import build_ride_service
from src.workers import matcher as _matcher

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

_STATUS_CODES: list[tuple[type[DomainError], int]] = [
    (NotFound, 404),
    (NoDriversAvailable, 409),
    (InvalidStateTransition, 409),
    (Unauthorized, 403),
    (ValidationError, 422),
]


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    status_code = next(
        (code for cls, code in _STATUS_CODES if isinstance(exc, cls)), 400
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def lock_error_handler(request: Request, exc: LockNotAcquired) -> JSONResponse:
    return JSONResponse(
        status_code=409, content={"detail": "Ride is being updated, retry shortly"}
    )


async def restore_active_rides() -> int:
    store = await get_active_ride_store()
    async with async_session_factory() as session:
        return await build_ride_service(session, store).restore_active_rides(
            prune_unknown=True
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Rebuild the index and start the worker on startup; stop on shutdown."""
    try:
        await restore_active_rides()
    except Exception:
        logger.exception("Could not restore the active-ride index")
    await _matcher.start_matching_loop()
    yield
    await _matcher.stop_matching_loop()
    await close_redis()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Ride Companion API",
        description=(
            "Ride-hailing core of the travel companion: ride requests, "
            "driver matching, live tracking, lifecycle transitions, fares "
            "and ratings."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Domain errors
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(LockNotAcquired, lock_error_handler)

    # Routers
    app.include_router(rides.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
