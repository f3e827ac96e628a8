"""Candidate finder: H3 prefilter in the database, exact haversine ranking in Python."""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.config import Settings
from dispatch_engine.domain.entities import Candidate
from dispatch_engine.domain.geo import grid_cells_for_radius, rank_candidates
from dispatch_engine.infrastructure.repositories import DriverRepository

logger = logging.getLogger(__name__)


class CandidateFinder:
    def __init__(self, settings: Settings):
        self.settings = settings

    async def find_candidates(
        self,
        session: AsyncSession,
        origin_lat: float,
        origin_lng: float,
        radius_km: float,
        exclude: Iterable[int] = (),
    ) -> list[Candidate]:
        cells = grid_cells_for_radius(
            origin_lat, origin_lng, radius_km, self.settings.h3_resolution
        )
        drivers = await DriverRepository(session).list_available(cells=cells)
        candidates = rank_candidates(
            origin_lat,
            origin_lng,
            radius_km,
            drivers,
            exclude=exclude,
            limit=self.settings.candidate_limit,
        )
        logger.info(
            "Found %d available drivers within %.1fkm of (%.5f, %.5f)",
            len(candidates), radius_km, origin_lat, origin_lng,
        )
        return candidates
