"""
Response Resolver
=================

Applies a driver's accept / decline to one dispatch attempt.

Guards, in order:  attempt exists  ->  responder owns the attempt's driver
->  attempt still unanswered.  Each failure raises its own error type.

Accept is one transaction: validate PENDING -> ACCEPTED, compare-and-swap
the attempt on ``responded_at IS NULL``, assign the driver.  If any step
fails nothing is written and the driver is told the ride is gone.  Events
go out only after commit.

Decline marks the attempt, then runs the next dispatch round through the
controller; the timeout worker reuses the same path with reason
``"timeout"``.  If that round hits a transient failure the rider gets a
``dispatch-status`` of ``interrupted`` and ``next_dispatch`` is None.

Because a ride only ever has one unanswered attempt, two drivers cannot
both accept it: the loser's attempt is already answered (or never
existed).  The per-ride lock plus the conditional update keep that true
under concurrent calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.config import Settings
from dispatch_engine.domain.enums import AuditAction, RideStatus
from dispatch_engine.domain.errors import (
    AlreadyResponded,
    InvalidStateTransition,
    NotAuthorized,
    NotFound,
    PreconditionViolation,
    RideUnavailable,
    TransientDependencyError,
)
from dispatch_engine.domain.events import (
    AcceptConfirmedEvent,
    AssignedEvent,
    DeclinedConfirmedEvent,
    DispatchStatusEvent,
    OfferExpiredEvent,
    RideDetail,
)
from dispatch_engine.domain.lifecycle import validate_transition
from dispatch_engine.infrastructure.database import utcnow
from dispatch_engine.infrastructure.locks import RideLockManager
from dispatch_engine.infrastructure.models import (
    DispatchAttemptModel,
    DriverProfileModel,
    RideModel,
)
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
from dispatch_engine.services.payloads import ride_detail

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "timeout"
RIDE_TAKEN_MESSAGE = "This offer is no longer available"


@dataclass
class RespondOutcome:
    accepted: bool
    attempt_id: int
    ride_id: int
    ride: Optional[RideDetail] = None
    next_dispatch: Optional[DispatchOutcome] = None


class ResponseResolver:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: ConnectionRegistry,
        dispatcher: DispatchController,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.dispatcher = dispatcher
        self.settings = settings
        # rounds and responses for one ride share a serialisation point
        self.locks: RideLockManager = dispatcher.locks

    # ── Public API ────────────────────────────────────────────────────

    async def respond(
        self,
        attempt_id: int,
        user_id: int,
        accepted: bool,
        decline_reason: Optional[str] = None,
    ) -> RespondOutcome:
        ride_id = await self._ride_id_for(attempt_id)

        async with self.locks.hold(ride_id):
            if accepted:
                rider_id, detail = await self._transaction(
                    lambda s: self._accept(s, attempt_id, user_id), "accept"
                )
            else:
                _, _, rider_id = await self._transaction(
                    lambda s: self._decline(s, attempt_id, decline_reason, user_id),
                    "decline",
                )

        if accepted:
            await self.notifier.send(rider_id, AssignedEvent(ride=detail))
            await self.notifier.send(user_id, AcceptConfirmedEvent(ride=detail))
            return RespondOutcome(True, attempt_id, ride_id, ride=detail)

        await self.notifier.send(user_id, DeclinedConfirmedEvent(attempt_id=attempt_id))
        next_dispatch = await self._next_round(ride_id, rider_id)
        return RespondOutcome(False, attempt_id, ride_id, next_dispatch=next_dispatch)

    async def expire(self, attempt_id: int) -> Optional[RespondOutcome]:
        """Treat an unanswered offer as declined with reason ``timeout``."""
        ride_id = await self._ride_id_for(attempt_id)

        async with self.locks.hold(ride_id):
            recorded, driver_user_id, rider_id = await self._transaction(
                lambda s: self._decline(s, attempt_id, TIMEOUT_REASON, None),
                "offer expiry",
            )
        if not recorded:
            return None

        logger.info("Offer %s for ride %s timed out", attempt_id, ride_id)
        if driver_user_id is not None:
            await self.notifier.send(
                driver_user_id,
                OfferExpiredEvent(attempt_id=attempt_id, ride_id=ride_id),
            )
        next_dispatch = await self._next_round(ride_id, rider_id)
        return RespondOutcome(False, attempt_id, ride_id, next_dispatch=next_dispatch)

    # ── Internals ─────────────────────────────────────────────────────

    async def _transaction(self, work, label: str):
        return await run_in_transaction(
            self.session_factory,
            work,
            attempts=self.settings.transient_retry_attempts,
            backoff_seconds=self.settings.transient_retry_backoff_seconds,
            label=label,
        )

    async def _ride_id_for(self, attempt_id: int) -> int:
        async def work(session: AsyncSession) -> int:
            attempt = await DispatchAttemptRepository(session).get_by_id(attempt_id)
            if attempt is None:
                raise NotFound("Dispatch attempt not found")
            return attempt.ride_id

        return await self._transaction(work, "attempt lookup")

    async def _guard(
        self, session: AsyncSession, attempt_id: int, user_id: Optional[int]
    ) -> tuple[DispatchAttemptModel, DriverProfileModel]:
        attempt = await DispatchAttemptRepository(session).get_by_id(attempt_id)
        if attempt is None:
            raise NotFound("Dispatch attempt not found")

        driver = await DriverRepository(session).get_by_id(attempt.driver_profile_id)
        if user_id is not None and (driver is None or driver.user_id != user_id):
            raise NotAuthorized("You are not authorized to respond to this dispatch")

        if attempt.responded_at is not None:
            raise AlreadyResponded(RIDE_TAKEN_MESSAGE)
        return attempt, driver

    async def _accept(
        self, session: AsyncSession, attempt_id: int, user_id: int
    ) -> tuple[int, RideDetail]:
        attempt, driver = await self._guard(session, attempt_id, user_id)
        attempts = DispatchAttemptRepository(session)

        ride: RideModel = await RideRepository(session).get_for_update(attempt.ride_id)
        try:
            validate_transition(ride.status, RideStatus.ACCEPTED)
        except InvalidStateTransition as exc:
            logger.info(
                "Driver %s lost ride %s (status %s)",
                driver.id, ride.id, RideStatus(ride.status).value,
            )
            raise RideUnavailable(RIDE_TAKEN_MESSAGE) from exc

        now = utcnow()
        if not await attempts.record_response(
            attempt_id, accepted=True, responded_at=now
        ):
            raise AlreadyResponded(RIDE_TAKEN_MESSAGE)
        # close any strays so they cannot be answered later
        await attempts.close_outstanding_for_ride(ride.id, "Ride assigned")

        ride.status = RideStatus.ACCEPTED
        ride.driver_profile_id = driver.id
        ride.driver_id = driver.user_id
        ride.accepted_at = now
        await session.flush()
        await AuditRepository(session).record(
            ride.id,
            AuditAction.RIDE_ACCEPTED,
            actor_user_id=driver.user_id,
            from_status=RideStatus.PENDING,
            to_status=RideStatus.ACCEPTED,
            details=f"attempt {attempt_id}",
        )

        driver_user = await UserRepository(session).get_by_id(driver.user_id)
        logger.info("Driver %s accepted ride %s", driver.id, ride.id)
        return ride.rider_id, ride_detail(ride, driver, driver_user)

    async def _decline(
        self,
        session: AsyncSession,
        attempt_id: int,
        reason: Optional[str],
        user_id: Optional[int],
    ) -> tuple[bool, Optional[int], Optional[int]]:
        """
        Returns ``(recorded, driver user id, rider id)``.  A timeout
        (``user_id`` None) that lost the race to a real answer is not an
        error, just unrecorded.
        """
        try:
            attempt, driver = await self._guard(session, attempt_id, user_id)
        except AlreadyResponded:
            if user_id is None:
                return False, None, None
            raise

        recorded = await DispatchAttemptRepository(session).record_response(
            attempt_id, accepted=False, decline_reason=reason
        )
        if not recorded:
            if user_id is None:
                return False, None, None
            raise AlreadyResponded(RIDE_TAKEN_MESSAGE)

        logger.info(
            "Driver %s declined ride %s: %s",
            attempt.driver_profile_id, attempt.ride_id, reason,
        )
        ride = await RideRepository(session).get_by_id(attempt.ride_id)
        return (
            True,
            driver.user_id if driver is not None else None,
            ride.rider_id if ride is not None else None,
        )

    async def _next_round(
        self, ride_id: int, rider_id: Optional[int]
    ) -> Optional[DispatchOutcome]:
        """
        The decline is already committed here, so a failing round must not
        surface as an error on the response.  The ride stays PENDING with no
        outstanding offer; the rider is told and can start a new round.
        """
        try:
            return await self.dispatcher.dispatch(ride_id)
        except PreconditionViolation as exc:
            # cancelled, expired or re-offered meanwhile
            logger.info("No further dispatch for ride %s: %s", ride_id, exc.message)
            return None
        except TransientDependencyError:
            logger.exception("Next dispatch round for ride %s failed", ride_id)
            if rider_id is not None:
                await self.notifier.send(
                    rider_id, DispatchStatusEvent(ride_id=ride_id, status="interrupted")
                )
            return None
