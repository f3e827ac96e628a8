"""
Surge estimator.

Counts recent unmatched demand and online supply around a point, maps the
ratio to a multiplier and writes an audit sample.  Pricing must never
fail because of surge: any error while counting yields 1.0x and is logged.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_engine.config import Settings
from dispatch_engine.domain.entities import SurgeSample
from dispatch_engine.domain.geo import location_h3_cell
from dispatch_engine.domain.surge import BASE_MULTIPLIER, count_within, surge_multiplier
from dispatch_engine.infrastructure.database import utcnow
from dispatch_engine.infrastructure.repositories import (
    DriverRepository,
    RideRepository,
    SurgeLogRepository,
)
from dispatch_engine.infrastructure.retry import run_in_transaction

logger = logging.getLogger(__name__)


class SurgeEstimator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.settings = settings

    async def estimate_surge(self, lat: float, lng: float) -> float:
        try:
            sample = await run_in_transaction(
                self.session_factory,
                lambda s: self.sample(s, lat, lng),
                attempts=self.settings.transient_retry_attempts,
                backoff_seconds=self.settings.transient_retry_backoff_seconds,
                label="surge sampling",
            )
        except Exception:
            logger.exception(
                "Surge estimation failed at (%.5f, %.5f); using %.2fx",
                lat, lng, BASE_MULTIPLIER,
            )
            return BASE_MULTIPLIER

        try:
            await run_in_transaction(
                self.session_factory,
                lambda s: SurgeLogRepository(s).record(
                    sample, self.settings.surge_demand_radius_km
                ),
                attempts=self.settings.transient_retry_attempts,
                backoff_seconds=self.settings.transient_retry_backoff_seconds,
                label="surge audit",
            )
        except Exception:
            logger.exception("Could not write surge audit sample %s", sample)

        return sample.multiplier

    async def sample(self, session: AsyncSession, lat: float, lng: float) -> SurgeSample:
        since = utcnow() - timedelta(minutes=self.settings.surge_window_minutes)
        pickups = await RideRepository(session).recent_pending_pickups(since)
        drivers = await DriverRepository(session).list_available()

        demand = count_within(lat, lng, pickups, self.settings.surge_demand_radius_km)
        supply = count_within(
            lat,
            lng,
            ((d.latitude, d.longitude) for d in drivers),
            self.settings.surge_supply_radius_km,
        )
        multiplier = surge_multiplier(
            demand, supply, self.settings.surge_max_multiplier
        )
        logger.debug(
            "Surge at (%.5f, %.5f): demand=%d supply=%d -> %.2fx",
            lat, lng, demand, supply, multiplier,
        )
        return SurgeSample(
            latitude=lat,
            longitude=lng,
            demand_count=demand,
            supply_count=supply,
            multiplier=multiplier,
            h3_cell=location_h3_cell(lat, lng, self.settings.h3_resolution),
        )
