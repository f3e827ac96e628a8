"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .database import utcnow
from .models import (
    DispatchAttemptModel,
    DriverProfileModel,
    RideModel,
    RideAuditEventModel,
    SurgePricingLogModel,
    UserModel,
)
from dispatch_engine.domain.entities import DriverSnapshot, SurgeSample
from dispatch_engine.domain.enums import AuditAction, DriverStatus, RideStatus
from dispatch_engine.domain.geo import location_h3_cell


class RideRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, ride: RideModel) -> RideModel:
        self.session.add(ride)
        await self.session.flush()
        return ride

    async def get_by_id(self, ride_id: int) -> Optional[RideModel]:
        return await self.session.get(RideModel, ride_id)

    async def get_for_update(self, ride_id: int) -> Optional[RideModel]:
        """SELECT ... FOR UPDATE (a no-op on SQLite)."""
        result = await self.session.execute(
            select(RideModel).where(RideModel.id == ride_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_active_for_rider(self, rider_id: int) -> Optional[RideModel]:
        result = await self.session.execute(
            select(RideModel)
            .where(
                RideModel.rider_id == rider_id,
                RideModel.status.in_(
                    [
                        RideStatus.PENDING,
                        RideStatus.ACCEPTED,
                        RideStatus.DRIVER_ARRIVED,
                        RideStatus.STARTED,
                    ]
                ),
            )
            .order_by(RideModel.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def recent_pending_pickups(
        self, since: datetime
    ) -> list[tuple[float, float]]:
        """Pickup points of unmatched rides created at or after *since*."""
        result = await self.session.execute(
            select(RideModel.pickup_lat, RideModel.pickup_lng).where(
                RideModel.status == RideStatus.PENDING,
                RideModel.created_at >= since,
            )
        )
        return [(row[0], row[1]) for row in result.all()]


class DispatchAttemptRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, attempt: DispatchAttemptModel) -> DispatchAttemptModel:
        self.session.add(attempt)
        await self.session.flush()
        return attempt

    async def get_by_id(self, attempt_id: int) -> Optional[DispatchAttemptModel]:
        return await self.session.get(DispatchAttemptModel, attempt_id)

    async def list_for_ride(self, ride_id: int) -> list[DispatchAttemptModel]:
        result = await self.session.execute(
            select(DispatchAttemptModel)
            .where(DispatchAttemptModel.ride_id == ride_id)
            .order_by(DispatchAttemptModel.sent_at, DispatchAttemptModel.id)
        )
        return list(result.scalars().all())

    async def get_outstanding_for_ride(
        self, ride_id: int
    ) -> Optional[DispatchAttemptModel]:
        result = await self.session.execute(
            select(DispatchAttemptModel)
            .where(
                DispatchAttemptModel.ride_id == ride_id,
                DispatchAttemptModel.responded_at.is_(None),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def record_response(
        self,
        attempt_id: int,
        *,
        accepted: bool,
        decline_reason: Optional[str] = None,
        responded_at: Optional[datetime] = None,
    ) -> bool:
        """
        Compare-and-swap on ``responded_at IS NULL``.

        Returns False when another writer got there first; the row is then
        left untouched.
        """
        result = await self.session.execute(
            update(DispatchAttemptModel)
            .where(
                DispatchAttemptModel.id == attempt_id,
                DispatchAttemptModel.responded_at.is_(None),
            )
            .values(
                responded_at=responded_at or utcnow(),
                accepted=accepted,
                decline_reason=None if accepted else decline_reason,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def close_outstanding_for_ride(self, ride_id: int, reason: str) -> int:
        result = await self.session.execute(
            update(DispatchAttemptModel)
            .where(
                DispatchAttemptModel.ride_id == ride_id,
                DispatchAttemptModel.responded_at.is_(None),
            )
            .values(responded_at=utcnow(), accepted=False, decline_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def latest_pending_for_driver(
        self, driver_profile_id: int
    ) -> Optional[DispatchAttemptModel]:
        """Newest unanswered offer for a driver whose ride is still PENDING."""
        result = await self.session.execute(
            select(DispatchAttemptModel)
            .join(RideModel, RideModel.id == DispatchAttemptModel.ride_id)
            .where(
                DispatchAttemptModel.driver_profile_id == driver_profile_id,
                DispatchAttemptModel.responded_at.is_(None),
                RideModel.status == RideStatus.PENDING,
            )
            .order_by(DispatchAttemptModel.sent_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_stale_outstanding(
        self, open_cutoff: datetime, targeted_cutoff: datetime
    ) -> list[DispatchAttemptModel]:
        result = await self.session.execute(
            select(DispatchAttemptModel)
            .where(
                DispatchAttemptModel.responded_at.is_(None),
                or_(
                    and_(
                        DispatchAttemptModel.targeted.is_(False),
                        DispatchAttemptModel.sent_at < open_cutoff,
                    ),
                    and_(
                        DispatchAttemptModel.targeted.is_(True),
                        DispatchAttemptModel.sent_at < targeted_cutoff,
                    ),
                ),
            )
            .order_by(DispatchAttemptModel.sent_at)
        )
        return list(result.scalars().all())


class DriverRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, driver_profile_id: int) -> Optional[DriverProfileModel]:
        return await self.session.get(DriverProfileModel, driver_profile_id)

    async def get_by_user_id(self, user_id: int) -> Optional[DriverProfileModel]:
        result = await self.session.execute(
            select(DriverProfileModel).where(DriverProfileModel.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def list_available(
        self, cells: Optional[Iterable[str]] = None
    ) -> list[DriverSnapshot]:
        """Online, approved drivers with a known location (optionally by H3 cell)."""
        query = select(DriverProfileModel).where(
            DriverProfileModel.is_online.is_(True),
            DriverProfileModel.status == DriverStatus.APPROVED,
            DriverProfileModel.current_lat.is_not(None),
            DriverProfileModel.current_lng.is_not(None),
        )
        if cells is not None:
            query = query.where(DriverProfileModel.h3_cell.in_(list(cells)))
        result = await self.session.execute(query)
        return [to_snapshot(d) for d in result.scalars().all()]

    async def update_location(
        self,
        driver: DriverProfileModel,
        lat: float,
        lng: float,
        *,
        is_online: bool = True,
        resolution: int = 7,
    ) -> DriverProfileModel:
        """Move a driver and re-index it under the H3 cell of its new position."""
        driver.current_lat = lat
        driver.current_lng = lng
        driver.h3_cell = location_h3_cell(lat, lng, resolution)
        driver.is_online = is_online
        driver.location_updated_at = utcnow()
        await self.session.flush()
        return driver


class SurgeLogRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(self, sample: SurgeSample, radius_km: float) -> SurgePricingLogModel:
        row = SurgePricingLogModel(
            latitude=sample.latitude,
            longitude=sample.longitude,
            h3_cell=sample.h3_cell,
            radius_km=radius_km,
            active_ride_count=sample.demand_count,
            available_driver_count=sample.supply_count,
            surge_multiplier=sample.multiplier,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def list_recent(self, limit: int = 50) -> list[SurgePricingLogModel]:
        result = await self.session.execute(
            select(SurgePricingLogModel)
            .order_by(SurgePricingLogModel.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


class AuditRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        ride_id: int,
        action: AuditAction,
        actor_user_id: Optional[int] = None,
        from_status: Optional[RideStatus] = None,
        to_status: Optional[RideStatus] = None,
        details: Optional[str] = None,
    ) -> RideAuditEventModel:
        row = RideAuditEventModel(
            ride_id=ride_id,
            actor_user_id=actor_user_id,
            action=action.value,
            from_status=RideStatus(from_status).value if from_status else None,
            to_status=RideStatus(to_status).value if to_status else None,
            details=details,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def list_for_ride(self, ride_id: int) -> list[RideAuditEventModel]:
        result = await self.session.execute(
            select(RideAuditEventModel)
            .where(RideAuditEventModel.ride_id == ride_id)
            .order_by(RideAuditEventModel.id)
        )
        return list(result.scalars().all())


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: int) -> Optional[UserModel]:
        return await self.session.get(UserModel, user_id)


def to_snapshot(d: DriverProfileModel) -> DriverSnapshot:
    return DriverSnapshot(
        driver_profile_id=d.id,
        user_id=d.user_id,
        is_online=bool(d.is_online),
        is_approved=DriverStatus(d.status) == DriverStatus.APPROVED,
        latitude=d.current_lat,
        longitude=d.current_lng,
        rating=d.rating,
        total_rides=d.total_rides or 0,
    )
