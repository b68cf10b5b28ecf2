"""
Ride Matching & Lifecycle Service
=================================

Orchestrates a ride from request to terminal outcome:

1. **Request**     -- find nearby available drivers (fail fast when none),
   estimate distance / duration / fare, persist the ride as ``requested``.
2. **Assignment**  -- walk candidates nearest first and claim the first one
   with a conditional ``available -> engaged`` update.  The ride moves
   ``requested -> searching -> accepted`` and enters the active-ride index.
   When every candidate was taken in the meantime the ride stays
   ``requested``; the re-matching worker picks it up later.
3. **Tracking**    -- the assigned driver streams locations; each one moves
   the driver and extends the ride's route.
4. **Transitions** -- validated against ``RIDE_TRANSITIONS``.  Completion
   finalises distance / duration, re-prices the ride and frees the driver;
   cancellation records who canceled and frees the driver.
5. **Rating**      -- each party rates the other once; a rider's rating
   feeds the driver's running average.

Concurrency
-----------
* Driver claim is a single conditional UPDATE (compare-and-swap).
* Status, location and rating updates lock the ride row (SELECT ... FOR
  UPDATE) so concurrent writers serialise until the caller commits; status
  and location updates also run under the active-ride store's per-ride lock.
* Rating and trip counters are incremented in SQL, never read-modify-write.
* The active-ride index is written before the caller commits.  A failed
  commit can leave it out of step; stale entries are dropped when touched
  and by ``restore_active_rides``, which the re-matching worker runs every
  cycle.
* All writes of one call share the caller's session, so the driver claim
  and the ride row commit or roll back together.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.domain.entities import Driver, Location, RatingSlot, Ride
from src.domain.enums import (
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    CallerRole,
    CanceledBy,
    DriverStatus,
    PaymentMethod,
    RideClass,
    RideStatus,
)
from src.domain.errors import (
    InvalidStateTransition,
    NoDriversAvailable,
    NotFound,
    RideNotFound,
    Unauthorized,
    ValidationError,
)
from src.domain.fare import DEFAULT_RATES, FareRates
from src.domain.geo import bearing_deg, haversine_km, round_half_up
from src.infrastructure.active_rides import ActiveRide, ActiveRideStore
from src.infrastructure.repositories import RideRepository
from src.services.drivers import DriverDirectory
from src.services.notifications import LogNotifier, Notifier, ride_event

logger = logging.getLogger(__name__)

DEFAULT_CANCELLATION_REASON = "User canceled"

_STATUS_MESSAGES: dict[RideStatus, tuple[str, str]] = {
    RideStatus.ARRIVED: ("Driver arrived", "Your driver is waiting at the pickup point"),
    RideStatus.IN_PROGRESS: ("Ride started", "Enjoy your ride"),
    RideStatus.COMPLETED: ("Ride completed", "Thanks for riding with us"),
    RideStatus.CANCELED: ("Ride canceled", "Your ride has been canceled"),
}


# ── Result types ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class Assigned:
    driver: Driver


@dataclass(frozen=True)
class AllTaken:
    candidates: int


AssignmentResult = Union[Assigned, AllTaken]


@dataclass(frozen=True)
class LocationUpdate:
    ride_id: str
    status: RideStatus
    location: tuple[float, float]
    heading: Optional[float] = None


@dataclass(frozen=True)
class RidePage:
    rides: list[Ride]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


# ── Service ───────────────────────────────────────────────────────────


class RideService:
    def __init__(
        self,
        session: AsyncSession,
        active_rides: ActiveRideStore,
        notifier: Optional[Notifier] = None,
        *,
        rates: FareRates = DEFAULT_RATES,
        minutes_per_km: float = 3.0,
        search_radius_m: float = 5000,
        average_speed_kmh: float = 30.0,
    ):
        self.rides = RideRepository(session)
        self.drivers = DriverDirectory(
            session,
            default_radius_m=search_radius_m,
            average_speed_kmh=average_speed_kmh,
        )
        self.active_rides = active_rides
        self.notifier = notifier or LogNotifier()
        self.rates = rates
        self.minutes_per_km = minutes_per_km
        self.search_radius_m = search_radius_m

    # ── Request & assignment ──────────────────────────────────────────

    async def request_ride(
        self,
        rider_id: str,
        pickup: Location,
        dropoff: Location,
        ride_class: RideClass,
        payment_method: PaymentMethod = PaymentMethod.CASH,
    ) -> Ride:
        candidates = await self.drivers.find_nearby_drivers(
            pickup.coordinates, self.search_radius_m
        )
        if not candidates:
            raise NoDriversAvailable("No drivers available nearby")

        distance = haversine_km(pickup.coordinates, dropoff.coordinates)
        duration = round_half_up(distance * self.minutes_per_km)

        ride = Ride(
            rider_id=rider_id,
            pickup=pickup,
            dropoff=dropoff,
            ride_class=ride_class,
            payment_method=payment_method,
            estimated_distance_km=distance,
            estimated_duration_min=duration,
        )
        ride.calculate_fare(distance, duration, rates=self.rates)
        await self.rides.add(ride)
        logger.info(
            "Ride %s requested by %s: %.2f km, est. fare %s %s, %d candidates",
            ride.id,
            rider_id,
            distance,
            ride.fare.total,
            ride.fare.currency,
            len(candidates),
        )

        await self.assign_driver(ride, candidates)
        return ride

    async def assign_driver(
        self, ride: Ride, candidates: list[Driver]
    ) -> AssignmentResult:
        """Claim the nearest still-available candidate for *ride*."""
        if ride.status != RideStatus.REQUESTED or ride.driver_id is not None:
            raise InvalidStateTransition(
                f"Ride {ride.id} is not waiting for a driver ({ride.status.value})"
            )

        for driver in candidates:
            if driver.status != DriverStatus.AVAILABLE:
                continue
            if not await self.drivers.claim(driver, ride.id):
                logger.info(
                    "Driver %s was taken before ride %s could claim it",
                    driver.id,
                    ride.id,
                )
                continue

            ride.driver_id = driver.id
            ride.transition_to(RideStatus.SEARCHING)
            ride.transition_to(RideStatus.ACCEPTED)
            await self.rides.save(ride)
            await self.active_rides.put(
                ActiveRide(
                    ride_id=ride.id,
                    driver_id=driver.id,
                    rider_id=ride.rider_id,
                    last_location=driver.location.coordinates,
                )
            )
            logger.info("Ride %s assigned to driver %s", ride.id, driver.id)

            vehicle = driver.vehicle
            await self._notify(
                ride.rider_id,
                ride_event(
                    ride.id,
                    "Driver assigned",
                    f"{vehicle.model} ({vehicle.number}) is on the way"
                    if vehicle
                    else "A driver is on the way",
                    driver_id=driver.id,
                    priority="high",
                ),
            )
            await self._notify(
                driver.user_id,
                ride_event(
                    ride.id,
                    "New ride",
                    f"Pick up at {ride.pickup.address}",
                    priority="high",
                ),
            )
            return Assigned(driver)

        logger.warning(
            "No driver could be assigned to ride %s (%d candidates taken)",
            ride.id,
            len(candidates),
        )
        return AllTaken(len(candidates))

    async def rematch_pending(self, limit: int = 100) -> int:
        """Retry assignment for rides left unmatched.  Returns rides matched."""
        matched = 0
        for ride in await self.rides.get_unmatched(limit):
            candidates = await self.drivers.find_nearby_drivers(
                ride.pickup.coordinates, self.search_radius_m
            )
            if not candidates:
                continue
            if isinstance(await self.assign_driver(ride, candidates), Assigned):
                matched += 1
        return matched

    # ── Tracking ──────────────────────────────────────────────────────

    async def update_ride_location(
        self, ride_id: str, driver_id: str, coordinates
    ) -> LocationUpdate:
        point = Location.from_coordinates(coordinates).coordinates

        async with self.active_rides.lock(ride_id):
            entry = await self.active_rides.get(ride_id)
            if entry is None:
                raise RideNotFound(ride_id)
            if entry.driver_id != driver_id:
                raise Unauthorized(
                    f"Driver {driver_id} is not assigned to ride {ride_id}"
                )

            ride = await self.rides.get_by_id(ride_id, for_update=True)
            if (
                ride is None
                or ride.status not in IN_FLIGHT_STATUSES
                or ride.driver_id != driver_id
            ):
                logger.warning("Dropping stale active-ride entry %s", ride_id)
                await self.active_rides.remove(ride_id)
                raise RideNotFound(ride_id)

            driver = await self.drivers.get_driver(driver_id)
            await self.drivers.update_location(driver, point)

            ride.add_route_point(point)
            await self.rides.save(ride)

            heading = None
            if entry.last_location and tuple(entry.last_location) != point:
                heading = bearing_deg(entry.last_location, point)
            entry.last_location = point
            await self.active_rides.put(entry)

        return LocationUpdate(
            ride_id=ride_id, status=ride.status, location=point, heading=heading
        )

    # ── Transitions ───────────────────────────────────────────────────

    async def update_ride_status(
        self,
        ride_id: str,
        new_status: RideStatus,
        actor_id: Optional[str],
        reason: Optional[str] = None,
        *,
        driver_id: Optional[str] = None,
    ) -> Ride:
        """
        Move a ride to *new_status*.

        With *driver_id* the ride must be assigned to that driver, otherwise
        ``Unauthorized`` is raised before anything changes.
        """
        async with self.active_rides.lock(ride_id):
            ride = await self._get_ride(ride_id, for_update=True)
            if driver_id is not None and ride.driver_id != driver_id:
                raise Unauthorized(
                    f"Driver {driver_id} is not assigned to ride {ride_id}"
                )

            ride.transition_to(new_status)
            if new_status == RideStatus.COMPLETED:
                await self._complete(ride)
            elif new_status == RideStatus.CANCELED:
                await self._cancel(ride, actor_id, reason)
            await self.rides.save(ride)

        logger.info("Ride %s -> %s (actor=%s)", ride.id, new_status.value, actor_id)
        if new_status in _STATUS_MESSAGES:
            title, message = _STATUS_MESSAGES[new_status]
            if new_status == RideStatus.COMPLETED:
                message = f"Total fare {ride.fare.total} {ride.fare.currency}"
            await self._notify(ride.rider_id, ride_event(ride.id, title, message))
        return ride

    async def _complete(self, ride: Ride) -> None:
        ride.finalize_completion()
        distance = (
            ride.actual_distance_km
            if ride.actual_distance_km is not None
            else ride.estimated_distance_km or 0.0
        )
        duration = (
            ride.actual_duration_min
            if ride.actual_duration_min is not None
            else ride.estimated_duration_min or 0
        )
        ride.calculate_fare(distance, duration, rates=self.rates)

        if ride.driver_id:
            driver = await self.drivers.get_driver(ride.driver_id)
            await self.drivers.update_statistics(driver, ride.fare.total, distance)
            await self.drivers.release(driver)

        await self.active_rides.remove(ride.id)
        logger.info(
            "Ride %s completed: %.2f km, %s min, fare %s",
            ride.id,
            distance,
            duration,
            ride.fare.total,
        )

    async def _cancel(
        self, ride: Ride, actor_id: Optional[str], reason: Optional[str]
    ) -> None:
        if actor_id is None:
            by = CanceledBy.SYSTEM
        elif actor_id == ride.rider_id:
            by = CanceledBy.RIDER
        else:
            by = CanceledBy.DRIVER
        ride.record_cancellation(reason or DEFAULT_CANCELLATION_REASON, by)

        if ride.driver_id:
            driver = await self.drivers.get_driver(ride.driver_id)
            if driver.current_ride_id == ride.id:
                await self.drivers.release(driver)
            if by != CanceledBy.DRIVER:
                await self._notify(
                    driver.user_id,
                    ride_event(ride.id, "Ride canceled", ride.cancellation.reason),
                )

        await self.active_rides.remove(ride.id)

    # ── Rating ────────────────────────────────────────────────────────

    async def rate_ride(
        self,
        ride_id: str,
        rater_id: str,
        role: CallerRole,
        rating: int,
        feedback: Optional[str] = None,
    ) -> Ride:
        """
        Rate the other party of a ride.

        ``role`` is the rater's role: a driver rates the rider, a rider
        rates the driver (and moves the driver's running average).
        """
        if isinstance(rating, bool) or not isinstance(rating, int):
            raise ValidationError("Rating must be an integer between 1 and 5")
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be an integer between 1 and 5")

        ride = await self._get_ride(ride_id, for_update=True)

        if role == CallerRole.DRIVER:
            driver = await self._assigned_driver(ride)
            if driver is None or driver.user_id != rater_id:
                raise Unauthorized(f"User {rater_id} did not drive ride {ride_id}")
            if ride.rider_rating is not None:
                raise ValidationError("The rider has already been rated for this ride")
            ride.rider_rating = RatingSlot(rating, feedback)
        else:
            if ride.rider_id != rater_id:
                raise Unauthorized(f"User {rater_id} did not ride ride {ride_id}")
            driver = await self._assigned_driver(ride)
            if driver is None:
                raise ValidationError("Ride has no driver to rate")
            if ride.driver_rating is not None:
                raise ValidationError("The driver has already been rated for this ride")
            ride.driver_rating = RatingSlot(rating, feedback)
            await self.drivers.update_rating(driver, rating)

        await self.rides.save(ride)
        return ride

    # ── Queries ───────────────────────────────────────────────────────

    async def get_ride_status(self, ride_id: str, user_id: str) -> Ride:
        ride = await self._get_ride(ride_id)
        if ride.rider_id == user_id:
            return ride
        driver = await self._assigned_driver(ride)
        if driver is not None and driver.user_id == user_id:
            return ride
        raise Unauthorized(f"User {user_id} is not a party to ride {ride_id}")

    async def ride_history(
        self,
        rider_id: str,
        status: Optional[RideStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> RidePage:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        rides, total = await self.rides.list_for_rider(rider_id, status, page, limit)
        return RidePage(rides=rides, page=page, limit=limit, total=total)

    async def active_ride(self, user_id: str, role: CallerRole) -> Ride:
        if role == CallerRole.DRIVER:
            driver = await self.drivers.get_driver_for_user(user_id)
            ride = await self.rides.get_in_flight(driver_id=driver.id)
        else:
            ride = await self.rides.get_in_flight(rider_id=user_id)
        if ride is None:
            raise NotFound("No active ride found")
        return ride

    async def active_index(self) -> list[ActiveRide]:
        return await self.active_rides.entries()

    async def restore_active_rides(self, *, prune_unknown: bool = False) -> int:
        """
        Reconcile the active-ride index with persisted rides.

        Adds entries for in-flight rides missing from the index and drops
        entries whose ride has ended.  With *prune_unknown* entries for rides
        that are missing or were never accepted are dropped as well; that is
        only safe while no request is mid-transaction, i.e. at startup.
        Returns the number of entries added.
        """
        in_flight = await self.rides.list_in_flight()
        in_flight_ids = {ride.id for ride in in_flight}
        pruned = 0
        for entry in await self.active_rides.entries():
            if entry.ride_id in in_flight_ids:
                continue
            ride = await self.rides.get_by_id(entry.ride_id)
            ended = ride is not None and ride.status in TERMINAL_STATUSES
            if not (ended or prune_unknown):
                continue
            await self.active_rides.remove(entry.ride_id)
            pruned += 1
        if pruned:
            logger.warning("Dropped %d stale active-ride entries", pruned)

        restored = 0
        for ride in in_flight:
            if await self.active_rides.get(ride.id) is not None:
                continue
            driver = await self.drivers.repo.get_by_id(ride.driver_id)
            if driver is not None:
                last_location = driver.location.coordinates
            else:
                last_location = ride.route[-1] if ride.route else None
            await self.active_rides.put(
                ActiveRide(
                    ride_id=ride.id,
                    driver_id=ride.driver_id,
                    rider_id=ride.rider_id,
                    last_location=last_location,
                )
            )
            restored += 1
        if restored:
            logger.info("Restored %d active rides into the index", restored)
        return restored

    # ── Helpers ───────────────────────────────────────────────────────

    async def _get_ride(self, ride_id: str, for_update: bool = False) -> Ride:
        ride = await self.rides.get_by_id(ride_id, for_update=for_update)
        if ride is None:
            raise RideNotFound(ride_id)
        return ride

    async def _assigned_driver(self, ride: Ride) -> Optional[Driver]:
        if ride.driver_id is None:
            return None
        return await self.drivers.repo.get_by_id(ride.driver_id)

    async def _notify(self, user_id: str, payload: dict) -> None:
        try:
            await self.notifier.send(user_id, payload)
        except Exception:
            logger.exception(
                "Failed to notify user %s about ride %s",
                user_id,
                payload.get("reference"),
            )


def build_ride_service(
    session: AsyncSession,
    active_rides: ActiveRideStore,
    notifier: Optional[Notifier] = None,
) -> RideService:
    """``RideService`` configured from ``src.config.settings``."""
    return RideService(
        session,
        active_rides,
        notifier,
        rates=FareRates(
            base_fare=settings.base_fare,
            rate_per_km=settings.rate_per_km,
            rate_per_minute=settings.rate_per_minute,
            tax_rate=settings.tax_rate,
            currency=settings.currency,
        ),
        minutes_per_km=settings.minutes_per_km,
        search_radius_m=settings.driver_search_radius_m,
        average_speed_kmh=settings.average_speed_kmh,
    )
