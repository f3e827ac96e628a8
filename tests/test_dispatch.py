"""
Dispatch controller: one offer per round, nearest first, growing radius,
exclusion of drivers already asked, attempt cap.
"""

from __future__ import annotations

import pytest

from dispatch_engine.config import Settings
from dispatch_engine.domain.enums import DispatchResult, DriverStatus, RideStatus
from dispatch_engine.domain.errors import NotFound, PreconditionViolation
from dispatch_engine.infrastructure.models import RideModel
from dispatch_engine.realtime.registry import DeliveryStatus
from dispatch_engine.services.dispatcher import DispatchController
from dispatch_engine.services.resolver import ResponseResolver


async def _ride_status(session_factory, ride_id):
    async with session_factory() as session:
        return RideStatus((await session.get(RideModel, ride_id)).status)


class TestDispatchRound:
    @pytest.mark.asyncio
    async def test_offers_nearest_driver(
        self, dispatcher, make_user, make_driver, make_ride, connect, offset
    ):
        far = await make_driver(*offset(3))
        near = await make_driver(*offset(1))
        rider = await make_user()
        ride = await make_ride(rider.id)
        driver_conn = await connect(near.user_id)
        rider_conn = await connect(rider.id)

        outcome = await dispatcher.dispatch(ride.id)

        assert outcome.result is DispatchResult.OFFERED
        assert outcome.round_number == 0
        assert outcome.radius_km == 5.0
        assert outcome.candidate.driver_profile_id == near.id
        assert outcome.attempt.driver_profile_id == near.id
        assert outcome.attempt.search_radius_km == 5.0
        assert outcome.delivery is DeliveryStatus.DELIVERED
        assert far.id != near.id

        [offer] = driver_conn.events("offer")
        assert offer["attempt_id"] == outcome.attempt.id
        assert offer["ride"]["id"] == ride.id
        assert offer["expires_in_seconds"] == 30
        assert rider_conn.events("dispatch-status") == [
            {"event": "dispatch-status", "ride_id": ride.id, "status": "searching"}
        ]

    @pytest.mark.asyncio
    async def test_no_candidates_leaves_ride_pending(
        self, dispatcher, session_factory, make_user, make_ride, connect
    ):
        rider = await make_user()
        ride = await make_ride(rider.id)
        rider_conn = await connect(rider.id)

        outcome = await dispatcher.dispatch(ride.id)

        assert outcome.result is DispatchResult.NO_CANDIDATE
        assert outcome.attempt is None
        assert outcome.radius_km == 7.0  # one expansion step tried
        assert await _ride_status(session_factory, ride.id) is RideStatus.PENDING
        assert await dispatcher.list_attempts(ride.id) == []
        assert rider_conn.events("dispatch-status")[-1]["status"] == "no_drivers"

    @pytest.mark.asyncio
    async def test_expands_radius_once_when_empty(
        self, dispatcher, make_user, make_driver, make_ride, offset
    ):
        driver = await make_driver(*offset(6))
        rider = await make_user()
        ride = await make_ride(rider.id)

        outcome = await dispatcher.dispatch(ride.id)

        assert outcome.result is DispatchResult.OFFERED
        assert outcome.candidate.driver_profile_id == driver.id
        assert outcome.radius_km == 7.0

    @pytest.mark.asyncio
    async def test_ignores_unavailable_drivers(
        self, dispatcher, make_user, make_driver, make_ride, offset
    ):
        await make_driver(*offset(0.5), online=False)
        await make_driver(*offset(0.5), status=DriverStatus.SUSPENDED)
        ok = await make_driver(*offset(2))
        rider = await make_user()
        ride = await make_ride(rider.id)

        outcome = await dispatcher.dispatch(ride.id)
        assert outcome.candidate.driver_profile_id == ok.id

    @pytest.mark.asyncio
    async def test_offline_driver_keeps_attempt(
        self, dispatcher, make_user, make_driver, make_ride
    ):
        await make_driver()
        rider = await make_user()
        ride = await make_ride(rider.id)

        outcome = await dispatcher.dispatch(ride.id)

        assert outcome.result is DispatchResult.OFFERED
        assert outcome.delivery is DeliveryStatus.NO_CONNECTION
        assert len(await dispatcher.list_attempts(ride.id)) == 1


class TestDispatchPreconditions:
    @pytest.mark.asyncio
    async def test_missing_ride(self, dispatcher):
        with pytest.raises(NotFound):
            await dispatcher.dispatch(999)

    @pytest.mark.asyncio
    async def test_ride_not_pending(self, dispatcher, make_user, make_driver, make_ride):
        await make_driver()
        rider = await make_user()
        ride = await make_ride(rider.id, status=RideStatus.CANCELLED_BY_RIDER)
        with pytest.raises(PreconditionViolation):
            await dispatcher.dispatch(ride.id)

    @pytest.mark.asyncio
    async def test_one_outstanding_offer_per_ride(
        self, dispatcher, make_user, make_driver, make_ride, offset
    ):
        await make_driver(*offset(1))
        await make_driver(*offset(2))
        rider = await make_user()
        ride = await make_ride(rider.id)

        await dispatcher.dispatch(ride.id)
        with pytest.raises(PreconditionViolation):
            await dispatcher.dispatch(ride.id)
        assert len(await dispatcher.list_attempts(ride.id)) == 1

    @pytest.mark.asyncio
    async def test_history_for_missing_ride(self, dispatcher):
        with pytest.raises(NotFound):
            await dispatcher.list_attempts(999)


class TestExclusion:
    @pytest.mark.asyncio
    async def test_every_driver_asked_once_then_no_candidate(
        self, dispatcher, resolver, make_user, make_driver, make_ride, offset
    ):
        drivers = [await make_driver(*offset(km)) for km in (0.5, 1.0, 1.5, 2.0)]
        by_id = {d.id: d for d in drivers}
        rider = await make_user()
        ride = await make_ride(rider.id)

        outcome = await dispatcher.dispatch(ride.id)
        asked = []
        while outcome is not None and outcome.result is DispatchResult.OFFERED:
            driver = by_id[outcome.candidate.driver_profile_id]
            assert driver.id not in asked
            asked.append(driver.id)
            response = await resolver.respond(
                outcome.attempt.id, driver.user_id, False, decline_reason="busy"
            )
            outcome = response.next_dispatch

        assert asked == [d.id for d in drivers]
        assert outcome.result is DispatchResult.NO_CANDIDATE
        attempts = await dispatcher.list_attempts(ride.id)
        assert [a.driver_profile_id for a in attempts] == asked
        assert all(a.accepted is False for a in attempts)
        # rounds 0-2 search 5 km, round 3 moves out to 7 km
        assert [a.search_radius_km for a in attempts] == [5.0, 5.0, 5.0, 7.0]


class TestAttemptCap:
    @pytest.mark.asyncio
    async def test_ride_expires_after_max_attempts(
        self, session_factory, registry, make_user, make_driver, make_ride, connect, offset
    ):
        settings = Settings(max_dispatch_attempts=3, transient_retry_backoff_seconds=0)
        dispatcher = DispatchController(session_factory, registry, settings)
        resolver = ResponseResolver(session_factory, registry, dispatcher, settings)
        drivers = {d.id: d for d in [await make_driver(*offset(km)) for km in (1, 2, 3, 4)]}
        rider = await make_user()
        ride = await make_ride(rider.id)
        rider_conn = await connect(rider.id)

        outcome = await dispatcher.dispatch(ride.id)
        for _ in range(3):
            driver = drivers[outcome.candidate.driver_profile_id]
            outcome = (
                await resolver.respond(outcome.attempt.id, driver.user_id, False)
            ).next_dispatch

        assert outcome.result is DispatchResult.EXHAUSTED
        assert await _ride_status(session_factory, ride.id) is RideStatus.EXPIRED
        assert len(await dispatcher.list_attempts(ride.id)) == 3
        assert rider_conn.events("dispatch-status")[-1]["status"] == "expired"

        with pytest.raises(PreconditionViolation):
            await dispatcher.dispatch(ride.id)


class TestSelectedDriver:
    @pytest.mark.asyncio
    async def test_targeted_offer(self, dispatcher, make_user, make_driver, make_ride, offset):
        await make_driver(*offset(0.5))
        chosen = await make_driver(*offset(3))
        rider = await make_user()
        ride = await make_ride(rider.id)

        outcome = await dispatcher.offer_selected_driver(ride.id, chosen.id)

        assert outcome.result is DispatchResult.OFFERED
        assert outcome.candidate.driver_profile_id == chosen.id
        assert outcome.attempt.targeted is True
        assert outcome.attempt.search_radius_km is None

    @pytest.mark.asyncio
    async def test_unavailable_selected_driver_falls_back(
        self, dispatcher, make_user, make_driver, make_ride, offset
    ):
        nearby = await make_driver(*offset(1))
        chosen = await make_driver(*offset(0.5), online=False)
        rider = await make_user()
        ride = await make_ride(rider.id)

        outcome = await dispatcher.offer_selected_driver(ride.id, chosen.id)

        assert outcome.result is DispatchResult.OFFERED
        assert outcome.candidate.driver_profile_id == nearby.id
        assert outcome.attempt.targeted is False

    @pytest.mark.asyncio
    async def test_unknown_selected_driver(self, dispatcher, make_user, make_ride):
        rider = await make_user()
        ride = await make_ride(rider.id)
        with pytest.raises(NotFound):
            await dispatcher.offer_selected_driver(ride.id, 424242)

    @pytest.mark.asyncio
    async def test_decline_by_selected_driver_opens_dispatch(
        self, dispatcher, resolver, make_user, make_driver, make_ride, offset
    ):
        other = await make_driver(*offset(1))
        chosen = await make_driver(*offset(2))
        rider = await make_user()
        ride = await make_ride(rider.id)

        first = await dispatcher.offer_selected_driver(ride.id, chosen.id)
        response = await resolver.respond(first.attempt.id, chosen.user_id, False)

        assert response.next_dispatch.result is DispatchResult.OFFERED
        assert response.next_dispatch.candidate.driver_profile_id == other.id


class TestPendingOffer:
    @pytest.mark.asyncio
    async def test_reconnecting_driver_gets_offer_back(
        self, dispatcher, make_user, make_driver, make_ride
    ):
        driver = await make_driver()
        rider = await make_user()
        ride = await make_ride(rider.id)
        outcome = await dispatcher.dispatch(ride.id)

        offer = await dispatcher.pending_offer_for(driver.user_id)

        assert offer is not None
        assert offer.attempt_id == outcome.attempt.id
        assert offer.ride.id == ride.id
        assert 0 < offer.expires_in_seconds <= 30

    @pytest.mark.asyncio
    async def test_nothing_pending(self, dispatcher, make_user, make_driver):
        driver = await make_driver()
        rider = await make_user()
        assert await dispatcher.pending_offer_for(driver.user_id) is None
        assert await dispatcher.pending_offer_for(rider.id) is None

    @pytest.mark.asyncio
    async def test_answered_offer_not_pending(
        self, dispatcher, resolver, make_user, make_driver, make_ride
    ):
        driver = await make_driver()
        rider = await make_user()
        ride = await make_ride(rider.id)
        outcome = await dispatcher.dispatch(ride.id)
        await resolver.respond(outcome.attempt.id, driver.user_id, True)

        assert await dispatcher.pending_offer_for(driver.user_id) is None
