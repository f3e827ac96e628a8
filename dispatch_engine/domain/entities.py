"""
Domain value objects passed between repositories and services.

ORM rows never leave the infrastructure layer for the candidate finder and
the surge estimator: both work on these plain snapshots so they stay pure
and testable without a database.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class DriverSnapshot:
    """Point-in-time read of a driver's availability.  May be stale."""

    driver_profile_id: int
    user_id: int
    is_online: bool
    is_approved: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    rating: Optional[float] = None
    total_rides: int = 0

    @property
    def dispatchable(self) -> bool:
        return (
            self.is_online
            and self.is_approved
            and self.latitude is not None
            and self.longitude is not None
        )


@dataclass(frozen=True)
class Candidate:
    driver_profile_id: int
    user_id: int
    latitude: float
    longitude: float
    distance_km: float
    rating: Optional[float] = None
    total_rides: int = 0

    @property
    def distance_m(self) -> float:
        return self.distance_km * 1000.0


@dataclass(frozen=True)
class SurgeSample:
    latitude: float
    longitude: float
    demand_count: int
    supply_count: int
    multiplier: float
    h3_cell: Optional[str] = None
