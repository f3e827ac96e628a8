"""
Dispatch Retry Controller
=========================

One call to ``dispatch`` is one round:

1. Prior attempts for the ride give the exclusion set and the round number.
2. ``round >= max_dispatch_attempts``  ->  ride EXPIRED, result EXHAUSTED.
3. radius = min(initial + (round // 3) x step, max).
4. Search; if empty, search once more at radius + step (capped); if still
   empty  ->  NO_CANDIDATE (no attempt, status unchanged).
5. Offer the nearest candidate: persist a DispatchAttempt, push ``offer``.

Rounds never block on the driver's answer.  If the offer cannot be
delivered the attempt still stands; the driver's next connect resyncs it.

Concurrency safety
------------------
Rounds for one ride are serialised through ``RideLockManager`` and refuse
to start while an outstanding attempt exists, so a ride never has two
unanswered offers.  The ``(ride_id, driver_profile_id)`` unique constraint
backs up the exclusion set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.config import Settings
from dispatch_engine.domain.distance import haversine_km
from dispatch_engine.domain.entities import Candidate
from dispatch_engine.domain.enums import DispatchResult, RideStatus
from dispatch_engine.domain.errors import NotFound, PreconditionViolation
from dispatch_engine.domain.events import (
    DispatchStatusEvent,
    OfferEvent,
    RideSummary,
)
from dispatch_engine.domain.geo import search_radius_km
from dispatch_engine.domain.lifecycle import validate_transition
from dispatch_engine.infrastructure.database import utcnow
from dispatch_engine.infrastructure.locks import RideLockManager
from dispatch_engine.infrastructure.models import DispatchAttemptModel, RideModel
from dispatch_engine.infrastructure.repositories import (
    DispatchAttemptRepository,
    DriverRepository,
    RideRepository,
    to_snapshot,
)
from dispatch_engine.infrastructure.retry import run_in_transaction
from dispatch_engine.realtime.registry import ConnectionRegistry, DeliveryStatus
from dispatch_engine.services.candidates import CandidateFinder
from dispatch_engine.services.payloads import ride_summary

logger = logging.getLogger(__name__)


@dataclass
class DispatchOutcome:
    result: DispatchResult
    ride_id: int
    round_number: int
    radius_km: Optional[float] = None
    attempt: Optional[DispatchAttemptModel] = None
    candidate: Optional[Candidate] = None
    delivery: Optional[DeliveryStatus] = None


@dataclass
class _Round:
    outcome: DispatchOutcome
    rider_id: int
    summary: Optional[RideSummary] = None


class DispatchController:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: ConnectionRegistry,
        settings: Settings,
        locks: Optional[RideLockManager] = None,
        finder: Optional[CandidateFinder] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.settings = settings
        self.locks = locks if locks is not None else RideLockManager()
        self.finder = finder or CandidateFinder(settings)

    # ── Public API ────────────────────────────────────────────────────

    async def dispatch(self, ride_id: int) -> DispatchOutcome:
        async with self.locks.hold(ride_id):
            rnd = await self._transaction(
                lambda s: self._dispatch_round(s, ride_id), "dispatch round"
            )
        await self._announce(rnd, self.settings.offer_timeout_seconds)
        return rnd.outcome

    async def offer_selected_driver(
        self, ride_id: int, driver_profile_id: int
    ) -> DispatchOutcome:
        """
        Offer the ride to one rider-chosen driver only.

        If that driver cannot take offers right now, fall straight through
        to open dispatch.  Silence is handled by the timeout worker, whose
        decline path continues with open dispatch as well.
        """
        async with self.locks.hold(ride_id):
            rnd = await self._transaction(
                lambda s: self._targeted_round(s, ride_id, driver_profile_id),
                "targeted dispatch",
            )
        if rnd is None:
            logger.info(
                "Selected driver %s unavailable for ride %s; opening dispatch",
                driver_profile_id, ride_id,
            )
            return await self.dispatch(ride_id)
        await self._announce(rnd, self.settings.selected_driver_timeout_seconds)
        return rnd.outcome

    async def pending_offer_for(self, user_id: int) -> Optional[OfferEvent]:
        """The offer a reconnecting driver should see again, if any."""
        return await self._transaction(
            lambda s: self._pending_offer(s, user_id), "pending offer lookup"
        )

    async def list_attempts(self, ride_id: int) -> list[DispatchAttemptModel]:
        async def work(session: AsyncSession):
            if await RideRepository(session).get_by_id(ride_id) is None:
                raise NotFound("Ride not found")
            return await DispatchAttemptRepository(session).list_for_ride(ride_id)

        return await self._transaction(work, "dispatch history")

    # ── Internals ─────────────────────────────────────────────────────

    async def _transaction(self, work, label: str):
        return await run_in_transaction(
            self.session_factory,
            work,
            attempts=self.settings.transient_retry_attempts,
            backoff_seconds=self.settings.transient_retry_backoff_seconds,
            label=label,
        )

    async def _load_pending_ride(
        self, session: AsyncSession, ride_id: int
    ) -> tuple[RideModel, list[DispatchAttemptModel]]:
        ride = await RideRepository(session).get_by_id(ride_id)
        if ride is None:
            raise NotFound("Ride not found")
        if RideStatus(ride.status) != RideStatus.PENDING:
            raise PreconditionViolation(
                f"Ride is not in PENDING status (status={RideStatus(ride.status).value})"
            )
        attempts = await DispatchAttemptRepository(session).list_for_ride(ride_id)
        if any(a.responded_at is None for a in attempts):
            raise PreconditionViolation("Ride already has an outstanding offer")
        return ride, attempts

    async def _dispatch_round(self, session: AsyncSession, ride_id: int) -> _Round:
        s = self.settings
        ride, attempts = await self._load_pending_ride(session, ride_id)

        round_number = len(attempts)
        exclude = {a.driver_profile_id for a in attempts}

        if round_number >= s.max_dispatch_attempts:
            validate_transition(ride.status, RideStatus.EXPIRED)
            ride.status = RideStatus.EXPIRED
            logger.warning(
                "Max dispatch attempts (%d) reached for ride %s; expired",
                s.max_dispatch_attempts, ride_id,
            )
            return _Round(
                DispatchOutcome(DispatchResult.EXHAUSTED, ride_id, round_number),
                rider_id=ride.rider_id,
            )

        radius = search_radius_km(
            round_number,
            s.initial_search_radius_km,
            s.radius_expansion_km,
            s.max_search_radius_km,
        )
        candidates = await self.finder.find_candidates(
            session, ride.pickup_lat, ride.pickup_lng, radius, exclude
        )
        if not candidates:
            radius = min(radius + s.radius_expansion_km, s.max_search_radius_km)
            candidates = await self.finder.find_candidates(
                session, ride.pickup_lat, ride.pickup_lng, radius, exclude
            )
        if not candidates:
            logger.warning(
                "No available drivers within %.1fkm for ride %s (round %d)",
                radius, ride_id, round_number,
            )
            return _Round(
                DispatchOutcome(
                    DispatchResult.NO_CANDIDATE, ride_id, round_number, radius_km=radius
                ),
                rider_id=ride.rider_id,
            )

        chosen = candidates[0]
        attempt = await DispatchAttemptRepository(session).create(
            DispatchAttemptModel(
                ride_id=ride_id,
                driver_profile_id=chosen.driver_profile_id,
                driver_lat=chosen.latitude,
                driver_lng=chosen.longitude,
                distance_to_pickup_m=chosen.distance_m,
                search_radius_km=radius,
                sent_at=utcnow(),
            )
        )
        logger.info(
            "Dispatched ride %s to driver %s (%.2fkm away, round %d, radius %.1fkm)",
            ride_id, chosen.driver_profile_id, chosen.distance_km, round_number, radius,
        )
        return _Round(
            DispatchOutcome(
                DispatchResult.OFFERED,
                ride_id,
                round_number,
                radius_km=radius,
                attempt=attempt,
                candidate=chosen,
            ),
            rider_id=ride.rider_id,
            summary=ride_summary(ride),
        )

    async def _targeted_round(
        self, session: AsyncSession, ride_id: int, driver_profile_id: int
    ) -> Optional[_Round]:
        ride, attempts = await self._load_pending_ride(session, ride_id)

        driver = await DriverRepository(session).get_by_id(driver_profile_id)
        if driver is None:
            raise NotFound("Selected driver not found")

        snapshot = to_snapshot(driver)
        already_offered = any(a.driver_profile_id == driver_profile_id for a in attempts)
        if not snapshot.dispatchable or already_offered:
            return None

        distance = haversine_km(
            ride.pickup_lat, ride.pickup_lng, snapshot.latitude, snapshot.longitude
        )
        candidate = Candidate(
            driver_profile_id=snapshot.driver_profile_id,
            user_id=snapshot.user_id,
            latitude=snapshot.latitude,
            longitude=snapshot.longitude,
            distance_km=distance,
            rating=snapshot.rating,
            total_rides=snapshot.total_rides,
        )
        attempt = await DispatchAttemptRepository(session).create(
            DispatchAttemptModel(
                ride_id=ride_id,
                driver_profile_id=driver_profile_id,
                driver_lat=snapshot.latitude,
                driver_lng=snapshot.longitude,
                distance_to_pickup_m=candidate.distance_m,
                targeted=True,
                sent_at=utcnow(),
            )
        )
        logger.info(
            "Offered ride %s to selected driver %s (%.2fkm away)",
            ride_id, driver_profile_id, distance,
        )
        return _Round(
            DispatchOutcome(
                DispatchResult.OFFERED,
                ride_id,
                len(attempts),
                attempt=attempt,
                candidate=candidate,
            ),
            rider_id=ride.rider_id,
            summary=ride_summary(ride),
        )

    async def _pending_offer(
        self, session: AsyncSession, user_id: int
    ) -> Optional[OfferEvent]:
        driver = await DriverRepository(session).get_by_user_id(user_id)
        if driver is None:
            return None
        attempt = await DispatchAttemptRepository(session).latest_pending_for_driver(
            driver.id
        )
        if attempt is None:
            return None
        ride = await RideRepository(session).get_by_id(attempt.ride_id)
        return OfferEvent(
            attempt_id=attempt.id,
            ride=ride_summary(ride),
            expires_in_seconds=self._remaining_seconds(attempt),
        )

    def _remaining_seconds(self, attempt: DispatchAttemptModel) -> int:
        timeout = (
            self.settings.selected_driver_timeout_seconds
            if attempt.targeted
            else self.settings.offer_timeout_seconds
        )
        sent_at = attempt.sent_at
        now = utcnow()
        if sent_at.tzinfo is None:
            now = now.replace(tzinfo=None)
        deadline = sent_at + timedelta(seconds=timeout)
        return max(0, int((deadline - now).total_seconds()))

    async def _announce(self, rnd: _Round, expires_in: int) -> None:
        outcome = rnd.outcome
        if outcome.result is DispatchResult.OFFERED:
            outcome.delivery = await self.notifier.send(
                outcome.candidate.user_id,
                OfferEvent(
                    attempt_id=outcome.attempt.id,
                    ride=rnd.summary,
                    expires_in_seconds=expires_in,
                ),
            )
            if outcome.delivery is DeliveryStatus.NO_CONNECTION:
                logger.info(
                    "Driver %s offline for attempt %s; offer kept for resync",
                    outcome.candidate.driver_profile_id, outcome.attempt.id,
                )
            if outcome.round_number == 0:
                await self.notifier.send(
                    rnd.rider_id,
                    DispatchStatusEvent(ride_id=outcome.ride_id, status="searching"),
                )
        elif outcome.result is DispatchResult.NO_CANDIDATE:
            await self.notifier.send(
                rnd.rider_id,
                DispatchStatusEvent(ride_id=outcome.ride_id, status="no_drivers"),
            )
        else:
            await self.notifier.send(
                rnd.rider_id,
                DispatchStatusEvent(ride_id=outcome.ride_id, status="expired"),
            )
