"""
Nearest-Candidate Search
========================

1. **Grid prefilter** -- H3 hexagons at resolution 7 (~1.2 km edge).  The
   ring of cells around the pickup that can contain any point within the
   search radius is computed up front so the driver read only touches
   those cells.
2. **Exact filter**   -- Haversine distance from the pickup to each
   dispatchable driver; keep those within ``radius_km``.
3. **Ranking**        -- ascending distance, truncated to ``limit``.

Ties in distance keep the input order (``sorted`` is stable) but no
order is promised to callers.

Complexity
----------
Let D = drivers returned by the prefilter.

* Prefilter:  O(k^2) cells for a ring of size k
* Ranking:    O(D log D)
"""

from __future__ import annotations

import math
from typing import Iterable

import h3

from .distance import haversine_km
from .entities import Candidate, DriverSnapshot

DEFAULT_CANDIDATE_LIMIT = 20


def location_h3_cell(lat: float, lng: float, resolution: int = 7) -> str:
    """Map a geo-point to an H3 hexagonal cell index.  O(1)."""
    return h3.latlng_to_cell(lat, lng, resolution)


def grid_cells_for_radius(
    lat: float, lng: float, radius_km: float, resolution: int = 7
) -> set[str]:
    """
    Cells whose hexagons may hold a point within *radius_km* of the origin.

    Each ring step moves at least one edge length away from the origin, so
    ``ceil(radius / edge) + 1`` rings over-cover the disk.  The extra ring
    absorbs the edge-length variance of H3 (average vs. actual).
    """
    edge_km = h3.average_hexagon_edge_length(resolution, unit="km")
    k = math.ceil(radius_km / edge_km) + 1
    origin = location_h3_cell(lat, lng, resolution)
    return set(h3.grid_disk(origin, k))


def rank_candidates(
    origin_lat: float,
    origin_lng: float,
    radius_km: float,
    drivers: Iterable[DriverSnapshot],
    exclude: Iterable[int] = (),
    limit: int = DEFAULT_CANDIDATE_LIMIT,
) -> list[Candidate]:
    """Return dispatchable drivers within *radius_km*, nearest first."""
    excluded = set(exclude)
    found: list[Candidate] = []

    for d in drivers:
        if not d.dispatchable or d.driver_profile_id in excluded:
            continue
        dist = haversine_km(origin_lat, origin_lng, d.latitude, d.longitude)
        if dist > radius_km:
            continue
        found.append(
            Candidate(
                driver_profile_id=d.driver_profile_id,
                user_id=d.user_id,
                latitude=d.latitude,
                longitude=d.longitude,
                distance_km=dist,
                rating=d.rating,
                total_rides=d.total_rides,
            )
        )

    found.sort(key=lambda c: c.distance_km)
    return found[:limit]


def search_radius_km(
    round_number: int,
    initial_km: float,
    step_km: float,
    max_km: float,
) -> float:
    """Radius for dispatch round *round_number*: one step per three attempts."""
    return min(initial_km + (round_number // 3) * step_km, max_km)
