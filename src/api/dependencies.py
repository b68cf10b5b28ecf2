"""FastAPI dependency injection helpers."""

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.domain.enums import CallerRole
from src.infrastructure.active_rides import ActiveRideStore, get_active_ride_store
from src.infrastructure.database import async_session_factory
from src.services.drivers import DriverDirectory
from src.services.notifications import LogNotifier, Notifier
from src.services.rides import RideService, build_ride_service

_notifier = LogNotifier()


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: CallerRole


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_active_rides() -> ActiveRideStore:
    return await get_active_ride_store()


def get_notifier() -> Notifier:
    return _notifier


def get_caller(
    x_user_id: str = Header(..., description="Caller id from the auth provider"),
    x_user_role: CallerRole = Header(CallerRole.RIDER),
) -> Caller:
    """Identity injected by the authentication gateway in front of the API."""
    if not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing caller identity")
    return Caller(user_id=x_user_id, role=x_user_role)


def require_driver(caller: Caller = Depends(get_caller)) -> Caller:
    if caller.role != CallerRole.DRIVER:
        raise HTTPException(status_code=403, detail="Driver role required")
    return caller


def get_ride_service(
    db: AsyncSession = Depends(get_db),
    active_rides: ActiveRideStore = Depends(get_active_rides),
    notifier: Notifier = Depends(get_notifier),
) -> RideService:
    return build_ride_service(db, active_rides, notifier)


def get_driver_directory(db: AsyncSession = Depends(get_db)) -> DriverDirectory:
    return DriverDirectory(
        db,
        default_radius_m=settings.driver_search_radius_m,
        average_speed_kmh=settings.average_speed_kmh,
    )
