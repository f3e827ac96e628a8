"""Ride service: creation, progress updates and attributed cancellation."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from dispatch_engine.domain.enums import AuditAction, DispatchResult, RideStatus, UserRole
from dispatch_engine.domain.errors import (
    InvalidStateTransition,
    NotAuthorized,
    NotFound,
    PreconditionViolation,
)
from dispatch_engine.infrastructure.models import SurgePricingLogModel
from dispatch_engine.infrastructure.repositories import AuditRepository
from dispatch_engine.services.rides import RideRequest

PICKUP = (14.5566, 121.0233)
DROPOFF = (14.5176, 121.0509)


async def _surge_log_count(session_factory) -> int:
    async with session_factory() as session:
        return (
            await session.execute(select(func.count(SurgePricingLogModel.id)))
        ).scalar()


async def _audit(session_factory, ride_id):
    async with session_factory() as session:
        return await AuditRepository(session).list_for_ride(ride_id)


def _request(**overrides) -> RideRequest:
    values = dict(
        pickup_lat=PICKUP[0],
        pickup_lng=PICKUP[1],
        dropoff_lat=DROPOFF[0],
        dropoff_lng=DROPOFF[1],
        pickup_address="Ayala Avenue",
        dropoff_address="NAIA T3",
    )
    values.update(overrides)
    return RideRequest(**values)


@pytest.fixture
def accepted_ride(ride_service, resolver, make_user, make_driver):
    async def _accepted():
        driver = await make_driver()
        rider = await make_user()
        ride = await ride_service.create_ride(rider.id, _request())
        outcome = await ride_service.start_dispatch(ride)
        await resolver.respond(outcome.attempt.id, driver.user_id, True)
        return rider, driver, ride

    return _accepted


class TestCreateRide:
    @pytest.mark.asyncio
    async def test_stores_fare_breakdown(self, ride_service, make_user):
        rider = await make_user()
        ride = await ride_service.create_ride(rider.id, _request(promo_discount=10))

        assert RideStatus(ride.status) is RideStatus.PENDING
        assert ride.pickup_address == "Ayala Avenue"
        assert ride.base_fare == 50
        assert ride.surge_multiplier == 1.0
        assert ride.promo_discount == 10
        # components are rounded separately from the total
        assert ride.total_fare == pytest.approx(
            ride.base_fare + ride.distance_fare + ride.time_fare - ride.promo_discount,
            abs=2,
        )
        assert 4000 < ride.estimated_distance_m < 6000

    @pytest.mark.asyncio
    async def test_one_active_ride_per_rider(self, ride_service, make_user):
        rider = await make_user()
        await ride_service.create_ride(rider.id, _request())
        with pytest.raises(PreconditionViolation):
            await ride_service.create_ride(rider.id, _request())

    @pytest.mark.asyncio
    async def test_rejected_request_records_no_surge_sample(
        self, ride_service, session_factory, make_user
    ):
        rider = await make_user()
        await ride_service.create_ride(rider.id, _request())
        before = await _surge_log_count(session_factory)

        with pytest.raises(PreconditionViolation):
            await ride_service.create_ride(rider.id, _request())

        assert await _surge_log_count(session_factory) == before

    @pytest.mark.asyncio
    async def test_unknown_selected_driver(self, ride_service, make_user):
        rider = await make_user()
        with pytest.raises(NotFound):
            await ride_service.create_ride(
                rider.id, _request(selected_driver_profile_id=9999)
            )

    @pytest.mark.asyncio
    async def test_start_dispatch_targets_selected_driver(
        self, ride_service, make_user, make_driver
    ):
        await make_driver()
        chosen = await make_driver(PICKUP[0] + 0.02, PICKUP[1])
        rider = await make_user()
        ride = await ride_service.create_ride(
            rider.id, _request(selected_driver_profile_id=chosen.id)
        )

        outcome = await ride_service.start_dispatch(ride)

        assert outcome.result is DispatchResult.OFFERED
        assert outcome.candidate.driver_profile_id == chosen.id
        assert outcome.attempt.targeted is True

    @pytest.mark.asyncio
    async def test_start_dispatch_failure_is_swallowed(
        self, ride_service, make_user, monkeypatch
    ):
        rider = await make_user()
        ride = await ride_service.create_ride(rider.id, _request())

        async def broken(ride_id):
            raise PreconditionViolation("nope")

        monkeypatch.setattr(ride_service.dispatcher, "dispatch", broken)
        assert await ride_service.start_dispatch(ride) is None


class TestGetRide:
    @pytest.mark.asyncio
    async def test_visible_to_rider_driver_and_admin(
        self, ride_service, accepted_ride, make_user
    ):
        rider, driver, ride = await accepted_ride()
        admin = await make_user(UserRole.ADMIN)

        for user_id in (rider.id, driver.user_id, admin.id):
            assert (await ride_service.get_ride(ride.id, user_id)).id == ride.id

    @pytest.mark.asyncio
    async def test_hidden_from_strangers(self, ride_service, make_user):
        rider, stranger = await make_user(), await make_user()
        ride = await ride_service.create_ride(rider.id, _request())
        with pytest.raises(NotAuthorized):
            await ride_service.get_ride(ride.id, stranger.id)

    @pytest.mark.asyncio
    async def test_missing(self, ride_service, make_user):
        rider = await make_user()
        with pytest.raises(NotFound):
            await ride_service.get_ride(404, rider.id)


class TestProgress:
    @pytest.mark.asyncio
    async def test_driver_walks_the_ride_to_completion(self, ride_service, accepted_ride):
        _, driver, ride = await accepted_ride()

        arrived = await ride_service.update_status(
            ride.id, driver.user_id, RideStatus.DRIVER_ARRIVED
        )
        assert arrived.driver_arrived_at is not None
        started = await ride_service.update_status(ride.id, driver.user_id, RideStatus.STARTED)
        assert started.started_at is not None
        done = await ride_service.update_status(ride.id, driver.user_id, RideStatus.COMPLETED)
        assert RideStatus(done.status) is RideStatus.COMPLETED
        assert done.completed_at is not None

    @pytest.mark.asyncio
    async def test_cannot_skip_states(self, ride_service, accepted_ride):
        _, driver, ride = await accepted_ride()
        with pytest.raises(InvalidStateTransition):
            await ride_service.update_status(ride.id, driver.user_id, RideStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_rider_cannot_advance(self, ride_service, accepted_ride):
        rider, _, ride = await accepted_ride()
        with pytest.raises(NotAuthorized):
            await ride_service.update_status(ride.id, rider.id, RideStatus.DRIVER_ARRIVED)

    @pytest.mark.asyncio
    async def test_status_endpoint_cannot_cancel_or_accept(self, ride_service, accepted_ride):
        _, driver, ride = await accepted_ride()
        for target in (RideStatus.CANCELLED_BY_DRIVER, RideStatus.ACCEPTED):
            with pytest.raises(NotAuthorized):
                await ride_service.update_status(ride.id, driver.user_id, target)


class TestCancel:
    @pytest.mark.asyncio
    async def test_rider_cancel_withdraws_offer(
        self, ride_service, dispatcher, make_user, make_driver, connect
    ):
        driver = await make_driver()
        rider = await make_user()
        driver_conn = await connect(driver.user_id)
        ride = await ride_service.create_ride(rider.id, _request())
        outcome = await ride_service.start_dispatch(ride)

        cancelled = await ride_service.cancel_ride(ride.id, rider.id, "Changed plans")

        assert RideStatus(cancelled.status) is RideStatus.CANCELLED_BY_RIDER
        assert cancelled.cancelled_at is not None
        assert cancelled.cancellation_reason == "Changed plans"
        [attempt] = await dispatcher.list_attempts(ride.id)
        assert attempt.responded_at is not None
        assert attempt.decline_reason == "Ride cancelled"
        assert driver_conn.events("offer-expired") == [
            {"event": "offer-expired", "attempt_id": outcome.attempt.id, "ride_id": ride.id}
        ]

    @pytest.mark.asyncio
    async def test_driver_cancel_is_attributed(self, ride_service, accepted_ride):
        _, driver, ride = await accepted_ride()
        cancelled = await ride_service.cancel_ride(ride.id, driver.user_id, "Flat tyre")
        assert RideStatus(cancelled.status) is RideStatus.CANCELLED_BY_DRIVER
        # the assignment is kept for the record
        assert cancelled.driver_id == driver.user_id

    @pytest.mark.asyncio
    async def test_admin_cancel_is_system(self, ride_service, accepted_ride, make_user):
        _, _, ride = await accepted_ride()
        admin = await make_user(UserRole.ADMIN)
        cancelled = await ride_service.cancel_ride(ride.id, admin.id)
        assert RideStatus(cancelled.status) is RideStatus.CANCELLED_BY_SYSTEM

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self, ride_service, make_user):
        rider, stranger = await make_user(), await make_user()
        ride = await ride_service.create_ride(rider.id, _request())
        with pytest.raises(NotAuthorized):
            await ride_service.cancel_ride(ride.id, stranger.id)

    @pytest.mark.asyncio
    async def test_terminal_ride_cannot_be_cancelled(self, ride_service, make_user):
        rider = await make_user()
        ride = await ride_service.create_ride(rider.id, _request())
        await ride_service.cancel_ride(ride.id, rider.id)
        with pytest.raises(PreconditionViolation):
            await ride_service.cancel_ride(ride.id, rider.id)

    @pytest.mark.asyncio
    async def test_rider_cannot_cancel_started_ride(self, ride_service, accepted_ride):
        rider, driver, ride = await accepted_ride()
        await ride_service.update_status(ride.id, driver.user_id, RideStatus.DRIVER_ARRIVED)
        await ride_service.update_status(ride.id, driver.user_id, RideStatus.STARTED)
        with pytest.raises(InvalidStateTransition):
            await ride_service.cancel_ride(ride.id, rider.id)


class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_accept_progress_and_driver_cancel(
        self, ride_service, session_factory, accepted_ride
    ):
        rider, driver, ride = await accepted_ride()
        await ride_service.update_status(ride.id, driver.user_id, RideStatus.DRIVER_ARRIVED)
        await ride_service.cancel_ride(ride.id, driver.user_id, "Flat tyre")

        trail = await _audit(session_factory, ride.id)

        assert [e.action for e in trail] == [
            AuditAction.RIDE_CREATED.value,
            AuditAction.RIDE_ACCEPTED.value,
            AuditAction.RIDE_STATUS_CHANGED.value,
            AuditAction.RIDE_CANCELLED.value,
        ]
        created, accepted, arrived, cancelled = trail
        assert created.actor_user_id == rider.id
        assert accepted.actor_user_id == driver.user_id
        assert (accepted.from_status, accepted.to_status) == ("PENDING", "ACCEPTED")
        assert arrived.to_status == "DRIVER_ARRIVED"
        assert cancelled.actor_user_id == driver.user_id
        assert cancelled.from_status == "DRIVER_ARRIVED"
        assert cancelled.to_status == "CANCELLED_BY_DRIVER"
        assert cancelled.details == "Flat tyre"

    @pytest.mark.asyncio
    async def test_admin_cancel_records_admin(
        self, ride_service, session_factory, make_user
    ):
        rider = await make_user()
        admin = await make_user(UserRole.ADMIN)
        ride = await ride_service.create_ride(rider.id, _request())

        await ride_service.cancel_ride(ride.id, admin.id, "Fraud check")

        last = (await _audit(session_factory, ride.id))[-1]
        assert last.actor_user_id == admin.id
        assert last.to_status == "CANCELLED_BY_SYSTEM"

    @pytest.mark.asyncio
    async def test_failed_cancel_records_nothing(
        self, ride_service, session_factory, make_user
    ):
        rider, stranger = await make_user(), await make_user()
        ride = await ride_service.create_ride(rider.id, _request())

        with pytest.raises(NotAuthorized):
            await ride_service.cancel_ride(ride.id, stranger.id)

        assert [e.action for e in await _audit(session_factory, ride.id)] == [
            AuditAction.RIDE_CREATED.value
        ]
