"""
Shared test fixtures.

Uses an in-memory SQLite database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  The production models carry plain lon/lat
columns, so the real metadata is created as-is; the active-ride index
uses the in-memory backend.
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from src.domain.entities import Driver, Location, Vehicle
from src.domain.enums import DriverStatus, RideClass
from src.infrastructure import models  # noqa: F401  (registers tables)
from src.infrastructure.active_rides import InMemoryActiveRideStore
from src.infrastructure.database import Base
from src.infrastructure.repositories import DriverRepository
from src.services.rides import RideService

# Mumbai airport, [lon, lat]
AIRPORT = (72.8656, 19.0896)


# ── Test DB (SQLite in-memory) ────────────────────────────────────────

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh in-memory database per test; one connection shared by all sessions."""
    engine = create_async_engine(TEST_DB_URL, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def active_rides() -> InMemoryActiveRideStore:
    return InMemoryActiveRideStore()


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, dict]] = []

    async def send(self, user_id: str, payload: dict) -> None:
        self.sent.append((user_id, payload))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def ride_service(db_session, active_rides, notifier) -> RideService:
    return RideService(db_session, active_rides, notifier)


@pytest.fixture
def make_driver(db_session):
    """Factory: persist a driver at *at* and return the entity."""
    counter = {"n": 0}

    async def _make(
        at=AIRPORT,
        status: DriverStatus = DriverStatus.AVAILABLE,
        is_active: bool = True,
        ride_class: RideClass = RideClass.SEDAN,
        **fields,
    ) -> Driver:
        counter["n"] += 1
        n = counter["n"]
        driver = Driver(
            user_id=fields.pop("user_id", f"u-drv-{n}"),
            vehicle=Vehicle(
                type=ride_class, model="Maruti Dzire", number=f"MH01AB{1000 + n}"
            ),
            location=Location(*at),
            status=status,
            is_active=is_active,
            **fields,
        )
        await DriverRepository(db_session).add(driver)
        return driver

    return _make
