"""
Ride service: fare estimates, ride creation, status updates, cancellation.

Every status change goes through ``validate_transition`` and stamps the
matching timestamp column in the same transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.config import Settings
from dispatch_engine.domain.enums import (
    AuditAction,
    CancellationActor,
    RideStatus,
    TERMINAL_STATUSES,
    UserRole,
)
from dispatch_engine.domain.errors import (
    DispatchError,
    NotAuthorized,
    NotFound,
    PreconditionViolation,
)
from dispatch_engine.domain.events import OfferExpiredEvent
from dispatch_engine.domain.lifecycle import (
    cancellation_status_for,
    transition_timestamp_field,
    validate_transition,
)
from dispatch_engine.domain.pricing import FareBreakdown, FareCalculator
from dispatch_engine.infrastructure.database import utcnow
from dispatch_engine.infrastructure.models import RideModel
from dispatch_engine.infrastructure.repositories import (
    AuditRepository,
    DispatchAttemptRepository,
    DriverRepository,
    RideRepository,
    UserRepository,
)
from dispatch_engine.infrastructure.retry import run_in_transaction
from dispatch_engine.realtime.registry import ConnectionRegistry
from dispatch_engine.services.dispatcher import DispatchController, DispatchOutcome
from dispatch_engine.services.surge import SurgeEstimator

logger = logging.getLogger(__name__)

CANCELLED_OFFER_REASON = "Ride cancelled"
ACTIVE_RIDE_MESSAGE = "You already have an active ride"

# statuses a driver may set through ``update_status``
DRIVER_PROGRESS = {RideStatus.DRIVER_ARRIVED, RideStatus.STARTED, RideStatus.COMPLETED}


@dataclass
class RideRequest:
    pickup_lat: float
    pickup_lng: float
    dropoff_lat: float
    dropoff_lng: float
    pickup_address: Optional[str] = None
    dropoff_address: Optional[str] = None
    promo_discount: float = 0.0
    selected_driver_profile_id: Optional[int] = None


class RideService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: ConnectionRegistry,
        dispatcher: DispatchController,
        surge: SurgeEstimator,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.dispatcher = dispatcher
        self.surge = surge
        self.settings = settings
        self.fares = FareCalculator(
            base_fare=settings.base_fare,
            cost_per_km=settings.cost_per_km,
            cost_per_minute=settings.cost_per_minute,
            min_fare=settings.min_fare,
            currency=settings.currency,
        )

    async def _transaction(self, work, label: str):
        return await run_in_transaction(
            self.session_factory,
            work,
            attempts=self.settings.transient_retry_attempts,
            backoff_seconds=self.settings.transient_retry_backoff_seconds,
            label=label,
        )

    # ── Estimates & creation ──────────────────────────────────────────

    async def estimate(
        self,
        pickup_lat: float,
        pickup_lng: float,
        dropoff_lat: float,
        dropoff_lng: float,
        promo_discount: float = 0.0,
    ) -> FareBreakdown:
        multiplier = await self.surge.estimate_surge(pickup_lat, pickup_lng)
        return self.fares.estimate_between(
            pickup_lat,
            pickup_lng,
            dropoff_lat,
            dropoff_lng,
            surge_multiplier=multiplier,
            promo_discount=promo_discount,
        )

    async def create_ride(self, rider_id: int, req: RideRequest) -> RideModel:
        async def check_active(session: AsyncSession) -> None:
            if await RideRepository(session).get_active_for_rider(rider_id) is not None:
                raise PreconditionViolation(ACTIVE_RIDE_MESSAGE)

        # a rejected request must not leave a surge sample behind
        await self._transaction(check_active, "active ride check")
        fare = await self.estimate(
            req.pickup_lat,
            req.pickup_lng,
            req.dropoff_lat,
            req.dropoff_lng,
            promo_discount=req.promo_discount,
        )

        async def work(session: AsyncSession) -> RideModel:
            rides = RideRepository(session)
            if await rides.get_active_for_rider(rider_id) is not None:
                raise PreconditionViolation(ACTIVE_RIDE_MESSAGE)
            if req.selected_driver_profile_id is not None:
                driver = await DriverRepository(session).get_by_id(
                    req.selected_driver_profile_id
                )
                if driver is None:
                    raise NotFound("Selected driver not found")

            ride = await rides.create(
                RideModel(
                    rider_id=rider_id,
                    status=RideStatus.PENDING,
                    selected_driver_profile_id=req.selected_driver_profile_id,
                    pickup_lat=req.pickup_lat,
                    pickup_lng=req.pickup_lng,
                    pickup_address=req.pickup_address,
                    dropoff_lat=req.dropoff_lat,
                    dropoff_lng=req.dropoff_lng,
                    dropoff_address=req.dropoff_address,
                    estimated_distance_m=fare.distance_meters,
                    estimated_duration_s=fare.duration_seconds,
                    base_fare=fare.base_fare,
                    distance_fare=fare.distance_fare,
                    time_fare=fare.time_fare,
                    surge_multiplier=fare.surge_multiplier,
                    surge_amount=fare.surge_amount,
                    promo_discount=fare.promo_discount,
                    total_fare=fare.total_fare,
                    created_at=utcnow(),
                )
            )
            await AuditRepository(session).record(
                ride.id,
                AuditAction.RIDE_CREATED,
                actor_user_id=rider_id,
                to_status=RideStatus.PENDING,
                details=f"fare {fare.total_fare:.2f} {fare.currency}",
            )
            logger.info(
                "Ride %s created by rider %s (fare %.0f %s, surge %.2fx)",
                ride.id, rider_id, fare.total_fare, fare.currency, fare.surge_multiplier,
            )
            return ride

        return await self._transaction(work, "create ride")

    async def start_dispatch(self, ride: RideModel) -> Optional[DispatchOutcome]:
        """
        First dispatch round for a freshly created ride.

        The ride already exists at this point, so a failure here is logged and
        the ride stays PENDING for a later ``POST /rides/{id}/dispatch``.
        """
        try:
            if ride.selected_driver_profile_id is not None:
                return await self.dispatcher.offer_selected_driver(
                    ride.id, ride.selected_driver_profile_id
                )
            return await self.dispatcher.dispatch(ride.id)
        except DispatchError:
            logger.exception("Initial dispatch failed for ride %s", ride.id)
            return None

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_ride(self, ride_id: int, user_id: int) -> RideModel:
        async def work(session: AsyncSession) -> RideModel:
            ride = await self._load(session, ride_id)
            await self._actor(session, ride, user_id)
            return ride

        return await self._transaction(work, "get ride")

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def update_status(
        self, ride_id: int, user_id: int, new_status: RideStatus
    ) -> RideModel:
        new_status = RideStatus(new_status)

        async def work(session: AsyncSession) -> RideModel:
            ride = await RideRepository(session).get_for_update(ride_id)
            if ride is None:
                raise NotFound("Ride not found")
            actor = await self._actor(session, ride, user_id)
            if actor is CancellationActor.RIDER or new_status not in DRIVER_PROGRESS:
                raise NotAuthorized("Only the assigned driver can update ride progress")

            validate_transition(ride.status, new_status)
            previous = RideStatus(ride.status)
            ride.status = new_status
            setattr(ride, transition_timestamp_field(new_status), utcnow())
            await AuditRepository(session).record(
                ride_id,
                AuditAction.RIDE_STATUS_CHANGED,
                actor_user_id=user_id,
                from_status=previous,
                to_status=new_status,
            )
            logger.info(
                "Ride %s: %s -> %s", ride_id, previous.value, new_status.value
            )
            return ride

        return await self._transaction(work, "update ride status")

    async def cancel_ride(
        self, ride_id: int, user_id: int, reason: Optional[str] = None
    ) -> RideModel:
        async def work(session: AsyncSession):
            ride = await RideRepository(session).get_for_update(ride_id)
            if ride is None:
                raise NotFound("Ride not found")
            if RideStatus(ride.status) in TERMINAL_STATUSES:
                raise PreconditionViolation("This ride cannot be cancelled")

            actor = await self._actor(session, ride, user_id)
            target = cancellation_status_for(actor)
            validate_transition(ride.status, target)
            previous = RideStatus(ride.status)

            attempts = DispatchAttemptRepository(session)
            outstanding = await attempts.get_outstanding_for_ride(ride_id)
            await attempts.close_outstanding_for_ride(ride_id, CANCELLED_OFFER_REASON)

            ride.status = target
            ride.cancelled_at = utcnow()
            ride.cancellation_reason = reason
            await AuditRepository(session).record(
                ride_id,
                AuditAction.RIDE_CANCELLED,
                actor_user_id=user_id,
                from_status=previous,
                to_status=target,
                details=reason,
            )
            logger.info("Ride %s cancelled by %s: %s", ride_id, actor.value, reason)

            offered_user = None
            if outstanding is not None:
                driver = await DriverRepository(session).get_by_id(
                    outstanding.driver_profile_id
                )
                offered_user = (outstanding.id, driver.user_id if driver else None)
            return ride, offered_user

        # cancellation and a concurrent accept must not interleave
        async with self.dispatcher.locks.hold(ride_id):
            ride, offered = await self._transaction(work, "cancel ride")

        if offered is not None and offered[1] is not None:
            await self.notifier.send(
                offered[1], OfferExpiredEvent(attempt_id=offered[0], ride_id=ride_id)
            )
        return ride

    # ── Internals ─────────────────────────────────────────────────────

    async def _load(self, session: AsyncSession, ride_id: int) -> RideModel:
        ride = await RideRepository(session).get_by_id(ride_id)
        if ride is None:
            raise NotFound("Ride not found")
        return ride

    async def _actor(
        self, session: AsyncSession, ride: RideModel, user_id: int
    ) -> CancellationActor:
        """Who *user_id* is with respect to *ride*; raises if a stranger."""
        if ride.rider_id == user_id:
            return CancellationActor.RIDER
        if ride.driver_id is not None and ride.driver_id == user_id:
            return CancellationActor.DRIVER
        user = await UserRepository(session).get_by_id(user_id)
        if user is not None and UserRole(user.role) == UserRole.ADMIN:
            return CancellationActor.SYSTEM
        raise NotAuthorized("You cannot access this ride")
