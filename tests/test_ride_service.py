"""
Ride service tests: request / assignment, tracking, transitions, rating
and the active-ride index, all against SQLite + the in-memory index.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from src.domain.entities import Location, Ride, utcnow
from src.domain.enums import (
    CallerRole,
    CanceledBy,
    DriverStatus,
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
from src.infrastructure.active_rides import ActiveRide, InMemoryActiveRideStore
from src.infrastructure.models import RideModel
from src.services.rides import AllTaken, Assigned, RideService

AIRPORT = (72.8656, 19.0896)
NEAR = (72.8660, 19.0900)
FARTHER = (72.8700, 19.0940)
BANDRA = (72.8400, 19.0540)

PICKUP = Location(*AIRPORT, "Terminal 2")
DROPOFF = Location(*BANDRA, "Bandra West")


async def _count_rides(session) -> int:
    return (await session.execute(select(func.count()).select_from(RideModel))).scalar()


async def _request(service: RideService, rider_id: str = "u-rider-1") -> Ride:
    return await service.request_ride(rider_id, PICKUP, DROPOFF, RideClass.SEDAN)


class FailingNotifier:
    async def send(self, user_id, payload):
        raise ConnectionError("push gateway down")


# ── Request & assignment ──────────────────────────────────────────────


class TestRequestRide:
    @pytest.mark.asyncio
    async def test_no_drivers_persists_nothing(self, ride_service, db_session):
        with pytest.raises(NoDriversAvailable):
            await _request(ride_service)
        assert await _count_rides(db_session) == 0

    @pytest.mark.asyncio
    async def test_only_offline_drivers_counts_as_none(self, ride_service, make_driver):
        await make_driver(at=NEAR, status=DriverStatus.OFFLINE)
        with pytest.raises(NoDriversAvailable):
            await _request(ride_service)

    @pytest.mark.asyncio
    async def test_assigns_nearest_driver(
        self, ride_service, make_driver, active_rides, notifier
    ):
        farther = await make_driver(at=FARTHER)
        near = await make_driver(at=NEAR)

        ride = await _request(ride_service)

        assert ride.status == RideStatus.ACCEPTED
        assert ride.driver_id == near.id
        assert ride.accepted_at is not None

        driver = await ride_service.drivers.get_driver(near.id)
        assert driver.status == DriverStatus.ENGAGED
        assert driver.current_ride_id == ride.id
        assert (await ride_service.drivers.get_driver(farther.id)).is_available

        entry = await active_rides.get(ride.id)
        assert entry.driver_id == near.id
        assert entry.rider_id == "u-rider-1"

        recipients = {user_id for user_id, _ in notifier.sent}
        assert recipients == {"u-rider-1", near.user_id}

    @pytest.mark.asyncio
    async def test_estimates_and_fare(self, ride_service, make_driver):
        await make_driver(at=NEAR)
        ride = await _request(ride_service)

        assert 4.5 < ride.estimated_distance_km < 5.0
        assert ride.estimated_duration_min == round(ride.estimated_distance_km * 3)
        assert ride.fare.total > 50
        assert ride.fare.currency == "INR"

        stored = await ride_service.rides.get_by_id(ride.id)
        assert stored.fare.total == ride.fare.total
        assert stored.pickup.address == "Terminal 2"

    @pytest.mark.asyncio
    async def test_invalid_pickup_rejected(self, ride_service, make_driver):
        await make_driver(at=NEAR)
        with pytest.raises(ValidationError):
            await ride_service.request_ride(
                "u-rider-1", Location.from_coordinates((200, 19)), DROPOFF, RideClass.SEDAN
            )

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_fail_request(
        self, db_session, active_rides, make_driver
    ):
        await make_driver(at=NEAR)
        service = RideService(db_session, active_rides, FailingNotifier())
        ride = await _request(service)
        assert ride.status == RideStatus.ACCEPTED


class TestContention:
    @pytest.mark.asyncio
    async def test_one_driver_two_requests(self, ride_service, make_driver):
        await make_driver(at=NEAR)
        first = await _request(ride_service, "u-rider-1")
        assert first.status == RideStatus.ACCEPTED

        with pytest.raises(NoDriversAvailable):
            await _request(ride_service, "u-rider-2")

    @pytest.mark.asyncio
    async def test_two_drivers_two_requests(self, ride_service, make_driver):
        await make_driver(at=NEAR)
        await make_driver(at=FARTHER)

        first = await _request(ride_service, "u-rider-1")
        second = await _request(ride_service, "u-rider-2")
        assert first.driver_id != second.driver_id

    @pytest.mark.asyncio
    async def test_stale_candidate_is_not_double_assigned(
        self, ride_service, make_driver, active_rides
    ):
        driver = await make_driver(at=NEAR)
        stale = await ride_service.drivers.find_nearby_drivers(AIRPORT)

        first = await _request(ride_service, "u-rider-1")
        assert first.driver_id == driver.id

        second = Ride(rider_id="u-rider-2", pickup=PICKUP, dropoff=DROPOFF)
        await ride_service.rides.add(second)
        result = await ride_service.assign_driver(second, stale)

        assert isinstance(result, AllTaken)
        assert second.status == RideStatus.REQUESTED
        assert second.driver_id is None
        assert await active_rides.get(second.id) is None

        stored = await ride_service.drivers.get_driver(driver.id)
        assert stored.current_ride_id == first.id

    @pytest.mark.asyncio
    async def test_rematch_picks_up_unmatched_ride(self, ride_service, make_driver):
        second = Ride(rider_id="u-rider-2", pickup=PICKUP, dropoff=DROPOFF)
        await ride_service.rides.add(second)
        assert await ride_service.rematch_pending() == 0

        driver = await make_driver(at=NEAR)
        assert await ride_service.rematch_pending() == 1

        stored = await ride_service.rides.get_by_id(second.id)
        assert stored.status == RideStatus.ACCEPTED
        assert stored.driver_id == driver.id

    @pytest.mark.asyncio
    async def test_assign_twice_rejected(self, ride_service, make_driver):
        await make_driver(at=NEAR)
        other = await make_driver(at=FARTHER)
        ride = await _request(ride_service)

        with pytest.raises(InvalidStateTransition):
            await ride_service.assign_driver(ride, [other])

    @pytest.mark.asyncio
    async def test_assigned_result(self, ride_service, make_driver):
        driver = await make_driver(at=NEAR)
        ride = Ride(rider_id="u-rider-1", pickup=PICKUP, dropoff=DROPOFF)
        await ride_service.rides.add(ride)
        result = await ride_service.assign_driver(ride, [driver])
        assert isinstance(result, Assigned)
        assert result.driver.id == driver.id


# ── Tracking ──────────────────────────────────────────────────────────


class TestLocationUpdates:
    @pytest.mark.asyncio
    async def test_assigned_driver_extends_route(self, ride_service, make_driver):
        driver = await make_driver(at=NEAR)
        ride = await _request(ride_service)

        update = await ride_service.update_ride_location(ride.id, driver.id, FARTHER)
        assert update.location == FARTHER
        assert update.status == RideStatus.ACCEPTED
        assert update.heading is not None and 0 <= update.heading < 360

        stored = await ride_service.rides.get_by_id(ride.id)
        assert stored.route == [FARTHER]
        assert (await ride_service.drivers.get_driver(driver.id)).location.coordinates == FARTHER

    @pytest.mark.asyncio
    async def test_other_driver_unauthorized(self, ride_service, make_driver):
        await make_driver(at=NEAR)
        intruder = await make_driver(at=FARTHER)
        ride = await _request(ride_service)

        with pytest.raises(Unauthorized):
            await ride_service.update_ride_location(ride.id, intruder.id, FARTHER)
        assert (await ride_service.rides.get_by_id(ride.id)).route == []

    @pytest.mark.asyncio
    async def test_ride_not_in_index(self, ride_service, make_driver):
        driver = await make_driver(at=NEAR)
        with pytest.raises(RideNotFound):
            await ride_service.update_ride_location("RDMISSING", driver.id, NEAR)

    @pytest.mark.asyncio
    async def test_invalid_coordinates(self, ride_service, make_driver):
        driver = await make_driver(at=NEAR)
        ride = await _request(ride_service)
        with pytest.raises(ValidationError):
            await ride_service.update_ride_location(ride.id, driver.id, (0, 91))

    @pytest.mark.asyncio
    async def test_ride_row_locked_while_appending(self, ride_service, make_driver):
        driver = await make_driver(at=NEAR)
        ride = await _request(ride_service)

        with patch.object(
            ride_service.rides, "get_by_id", wraps=ride_service.rides.get_by_id
        ) as get_by_id:
            await ride_service.update_ride_location(ride.id, driver.id, FARTHER)
        get_by_id.assert_awaited_once_with(ride.id, for_update=True)

    @pytest.mark.asyncio
    async def test_stale_entry_dropped(self, ride_service, make_driver, active_rides):
        driver = await make_driver(at=NEAR)
        await active_rides.put(ActiveRide("RDGONE", driver.id, "u-rider-1", NEAR))

        with pytest.raises(RideNotFound):
            await ride_service.update_ride_location("RDGONE", driver.id, FARTHER)
        assert await active_rides.get("RDGONE") is None
        stored = await ride_service.drivers.get_driver(driver.id)
        assert stored.location.coordinates == NEAR


# ── Transitions ───────────────────────────────────────────────────────


async def _drive(service: RideService, ride: Ride, driver_id: str) -> None:
    await service.update_ride_status(ride.id, RideStatus.ARRIVED, driver_id)
    await service.update_ride_status(ride.id, RideStatus.IN_PROGRESS, driver_id)
    await service.update_ride_location(ride.id, driver_id, AIRPORT)
    await service.update_ride_location(ride.id, driver_id, (72.8500, 19.0700))
    await service.update_ride_location(ride.id, driver_id, BANDRA)


class TestTransitions:
    @pytest.mark.asyncio
    async def test_complete_frees_driver_and_index(
        self, ride_service, make_driver, active_rides, notifier
    ):
        driver = await make_driver(at=NEAR)
        ride = await _request(ride_service)
        await _drive(ride_service, ride, driver.id)

        done = await ride_service.update_ride_status(
            ride.id, RideStatus.COMPLETED, driver.user_id
        )

        assert done.status == RideStatus.COMPLETED
        assert done.completed_at is not None
        assert done.actual_distance_km > done.estimated_distance_km * 0.9
        assert done.actual_duration_min == 0
        assert done.fare.total > 0
        assert await active_rides.get(ride.id) is None

        stored = await ride_service.drivers.get_driver(driver.id)
        assert stored.status == DriverStatus.AVAILABLE
        assert stored.current_ride_id is None
        assert stored.statistics.total_rides == 1
        assert stored.statistics.total_earnings == done.fare.total

        assert notifier.sent[-1][0] == "u-rider-1"
        assert notifier.sent[-1][1]["title"] == "Ride completed"

    @pytest.mark.asyncio
    async def test_complete_without_route_uses_estimates(self, ride_service, make_driver):
        driver = await make_driver(at=NEAR)
        ride = await _request(ride_service)
        for status in (RideStatus.ARRIVED, RideStatus.IN_PROGRESS, RideStatus.COMPLETED):
            done = await ride_service.update_ride_status(ride.id, status, driver.user_id)

        stored = await ride_service.drivers.get_driver(driver.id)
        assert stored.statistics.total_distance_km == pytest.approx(
            done.estimated_distance_km
        )

    @pytest.mark.asyncio
    async def test_rider_cancels(self, ride_service, make_driver, active_rides, notifier):
        driver = await make_driver(at=NEAR)
        ride = await _request(ride_service)

        canceled = await ride_service.update_ride_status(
            ride.id, RideStatus.CANCELED, "u-rider-1", reason="Change of plans"
        )

        assert canceled.status == RideStatus.CANCELED
        assert canceled.cancellation.by == CanceledBy.RIDER
        assert canceled.cancellation.reason == "Change of plans"
        assert await active_rides.get(ride.id) is None
        assert (await ride_service.drivers.get_driver(driver.id)).is_available
        assert any(
            user_id == driver.user_id and p["title"] == "Ride canceled"
            for user_id, p in notifier.sent
        )

    @pytest.mark.asyncio
    async def test_system_cancel_default_reason(self, ride_service, make_driver):
        await make_driver(at=NEAR)
        ride = await _request(ride_service)
        canceled = await ride_service.update_ride_status(ride.id, RideStatus.CANCELED, None)
        assert canceled.cancellation.by == CanceledBy.SYSTEM
        assert canceled.cancellation.reason == "User canceled"

    @pytest.mark.asyncio
    async def test_driver_cancel(self, ride_service, make_driver):
        driver = await make_driver(at=NEAR)
        ride = await _request(ride_service)
        canceled = await ride_service.update_ride_status(
            ride.id, RideStatus.CANCELED, driver.user_id, reason="Vehicle issue"
        )
        assert canceled.cancellation.by == CanceledBy.DRIVER

    @pytest.mark.asyncio
    async def test_cancel_unmatched_ride(self, ride_service):
        ride = Ride(rider_id="u-rider-1", pickup=PICKUP, dropoff=DROPOFF)
        await ride_service.rides.add(ride)
        canceled = await ride_service.update_ride_status(
            ride.id, RideStatus.CANCELED, "u-rider-1"
        )
        assert canceled.status == RideStatus.CANCELED

    @pytest.mark.asyncio
    async def test_invalid_transition_leaves_ride_unchanged(
        self, ride_service, make_driver, active_rides
    ):
        driver = await make_driver(at=NEAR)
        ride = await _request(ride_service)

        with pytest.raises(InvalidStateTransition):
            await ride_service.update_ride_status(
                ride.id, RideStatus.COMPLETED, driver.user_id
            )

        stored = await ride_service.rides.get_by_id(ride.id)
        assert stored.status == RideStatus.ACCEPTED
        assert stored.completed_at is None
        assert await active_rides.get(ride.id) is not None
        assert (await ride_service.drivers.get_driver(driver.id)).status == DriverStatus.ENGAGED

    @pytest.mark.asyncio
    async def test_unassigned_driver_cannot_complete(
        self, ride_service, make_driver, active_rides
    ):
        driver = await make_driver(at=NEAR)
        other = await make_driver(at=FARTHER)
        ride = await _request(ride_service)
        await _drive(ride_service, ride, driver.id)

        with pytest.raises(Unauthorized):
            await ride_service.update_ride_status(
                ride.id, RideStatus.COMPLETED, other.user_id, driver_id=other.id
            )

        stored = await ride_service.rides.get_by_id(ride.id)
        assert stored.status == RideStatus.IN_PROGRESS
        assert await active_rides.get(ride.id) is not None

        done = await ride_service.update_ride_status(
            ride.id, RideStatus.COMPLETED, driver.user_id, driver_id=driver.id
        )
        assert done.status == RideStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_terminal_ride_cannot_be_canceled(self, ride_service, make_driver):
        await make_driver(at=NEAR)
        ride = await _request(ride_service)
        await ride_service.update_ride_status(ride.id, RideStatus.CANCELED, "u-rider-1")
        with pytest.raises(InvalidStateTransition):
            await ride_service.update_ride_status(ride.id, RideStatus.CANCELED, "u-rider-1")

    @pytest.mark.asyncio
    async def test_unknown_ride(self, ride_service):
        with pytest.raises(RideNotFound):
            await ride_service.update_ride_status("RDMISSING", RideStatus.ARRIVED, None)


# ── Rating ────────────────────────────────────────────────────────────


class TestRating:
    @pytest.mark.asyncio
    async def test_rider_rates_driver(self, ride_service, make_driver):
        driver = await make_driver(at=NEAR, rating_average=4.0, rating_count=2)
        ride = await _request(ride_service)

        rated = await ride_service.rate_ride(
            ride.id, "u-rider-1", CallerRole.RIDER, 5, "Smooth ride"
        )
        assert rated.driver_rating.rating == 5
        assert rated.driver_rating.feedback == "Smooth ride"

        stored = await ride_service.drivers.get_driver(driver.id)
        assert stored.rating_count == 3
        assert stored.rating_average == pytest.approx(4.333, abs=1e-3)

    @pytest.mark.asyncio
    async def test_driver_rates_rider(self, ride_service, make_driver):
        driver = await make_driver(at=NEAR, rating_average=4.0, rating_count=2)
        ride = await _request(ride_service)

        rated = await ride_service.rate_ride(ride.id, driver.user_id, CallerRole.DRIVER, 4)
        assert rated.rider_rating.rating == 4
        assert (await ride_service.drivers.get_driver(driver.id)).rating_count == 2

    @pytest.mark.asyncio
    async def test_rate_once(self, ride_service, make_driver):
        await make_driver(at=NEAR)
        ride = await _request(ride_service)
        await ride_service.rate_ride(ride.id, "u-rider-1", CallerRole.RIDER, 5)
        with pytest.raises(ValidationError):
            await ride_service.rate_ride(ride.id, "u-rider-1", CallerRole.RIDER, 3)

    @pytest.mark.asyncio
    async def test_ride_row_locked_while_rating(self, ride_service, make_driver):
        await make_driver(at=NEAR)
        ride = await _request(ride_service)

        with patch.object(
            ride_service.rides, "get_by_id", wraps=ride_service.rides.get_by_id
        ) as get_by_id:
            await ride_service.rate_ride(ride.id, "u-rider-1", CallerRole.RIDER, 5)
        get_by_id.assert_awaited_once_with(ride.id, for_update=True)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating", [0, 6, 4.5, True])
    async def test_rating_out_of_range(self, ride_service, make_driver, rating):
        await make_driver(at=NEAR)
        ride = await _request(ride_service)
        with pytest.raises(ValidationError):
            await ride_service.rate_ride(ride.id, "u-rider-1", CallerRole.RIDER, rating)

    @pytest.mark.asyncio
    async def test_stranger_cannot_rate(self, ride_service, make_driver):
        await make_driver(at=NEAR)
        ride = await _request(ride_service)
        with pytest.raises(Unauthorized):
            await ride_service.rate_ride(ride.id, "u-someone", CallerRole.RIDER, 5)
        with pytest.raises(Unauthorized):
            await ride_service.rate_ride(ride.id, "u-someone", CallerRole.DRIVER, 5)

    @pytest.mark.asyncio
    async def test_no_driver_to_rate(self, ride_service):
        ride = Ride(rider_id="u-rider-1", pickup=PICKUP, dropoff=DROPOFF)
        await ride_service.rides.add(ride)
        with pytest.raises(ValidationError):
            await ride_service.rate_ride(ride.id, "u-rider-1", CallerRole.RIDER, 5)


# ── Queries & index ───────────────────────────────────────────────────


class TestQueries:
    @pytest.mark.asyncio
    async def test_ride_status_visible_to_parties_only(self, ride_service, make_driver):
        driver = await make_driver(at=NEAR)
        ride = await _request(ride_service)

        assert (await ride_service.get_ride_status(ride.id, "u-rider-1")).id == ride.id
        assert (await ride_service.get_ride_status(ride.id, driver.user_id)).id == ride.id
        with pytest.raises(Unauthorized):
            await ride_service.get_ride_status(ride.id, "u-someone")

    @pytest.mark.asyncio
    async def test_history_newest_first_and_paged(self, ride_service):
        now = utcnow()
        ids = []
        for minutes in (30, 20, 10):
            ride = Ride(
                rider_id="u-rider-1",
                pickup=PICKUP,
                dropoff=DROPOFF,
                requested_at=now - timedelta(minutes=minutes),
            )
            await ride_service.rides.add(ride)
            ids.append(ride.id)
        await ride_service.rides.add(Ride(rider_id="u-other", pickup=PICKUP, dropoff=DROPOFF))

        first = await ride_service.ride_history("u-rider-1", page=1, limit=2)
        assert [r.id for r in first.rides] == [ids[2], ids[1]]
        assert first.total == 3
        assert first.pages == 2

        second = await ride_service.ride_history("u-rider-1", page=2, limit=2)
        assert [r.id for r in second.rides] == [ids[0]]

    @pytest.mark.asyncio
    async def test_history_status_filter(self, ride_service, make_driver):
        await make_driver(at=NEAR)
        ride = await _request(ride_service)
        await ride_service.rides.add(Ride(rider_id="u-rider-1", pickup=PICKUP, dropoff=DROPOFF))

        page = await ride_service.ride_history("u-rider-1", status=RideStatus.ACCEPTED)
        assert [r.id for r in page.rides] == [ride.id]

    @pytest.mark.asyncio
    async def test_active_ride_for_both_roles(self, ride_service, make_driver):
        driver = await make_driver(at=NEAR)
        ride = await _request(ride_service)

        assert (await ride_service.active_ride("u-rider-1", CallerRole.RIDER)).id == ride.id
        assert (await ride_service.active_ride(driver.user_id, CallerRole.DRIVER)).id == ride.id

        await ride_service.update_ride_status(ride.id, RideStatus.CANCELED, "u-rider-1")
        with pytest.raises(NotFound):
            await ride_service.active_ride("u-rider-1", CallerRole.RIDER)

    @pytest.mark.asyncio
    async def test_restore_rebuilds_index(self, db_session, ride_service, make_driver):
        driver = await make_driver(at=NEAR)
        ride = await _request(ride_service)
        await db_session.commit()

        fresh_store = InMemoryActiveRideStore()
        restarted = RideService(db_session, fresh_store)
        assert await restarted.restore_active_rides() == 1

        (entry,) = await restarted.active_index()
        assert entry.ride_id == ride.id
        assert entry.driver_id == driver.id
        assert entry.last_location == NEAR

        # idempotent
        assert await restarted.restore_active_rides() == 0

    @pytest.mark.asyncio
    async def test_restore_drops_ended_and_unknown_entries(
        self, ride_service, make_driver, active_rides
    ):
        driver = await make_driver(at=NEAR)
        ride = await _request(ride_service)
        await ride_service.update_ride_status(ride.id, RideStatus.CANCELED, "u-rider-1")
        # left behind by a write that did not commit
        await active_rides.put(ActiveRide(ride.id, driver.id, "u-rider-1", NEAR))
        await active_rides.put(ActiveRide("RDUNKNOWN", driver.id, "u-rider-2", NEAR))

        assert await ride_service.restore_active_rides() == 0
        assert [e.ride_id for e in await active_rides.entries()] == ["RDUNKNOWN"]

        await ride_service.restore_active_rides(prune_unknown=True)
        assert await active_rides.entries() == []

    @pytest.mark.asyncio
    async def test_restore_readds_dropped_entry(
        self, ride_service, make_driver, active_rides
    ):
        await make_driver(at=NEAR)
        ride = await _request(ride_service)
        await active_rides.remove(ride.id)

        assert await ride_service.restore_active_rides(prune_unknown=True) == 1
        assert (await active_rides.get(ride.id)) is not None
