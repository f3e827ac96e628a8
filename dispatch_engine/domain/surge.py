"""
Local demand / supply surge multiplier.

    ratio = demand / max(supply, 1)

    ratio >= 3.0  ->  2.00x
    ratio >= 2.0  ->  1.50x
    ratio >= 1.0  ->  1.25x
    otherwise     ->  1.00x

The result is clamped to the configured maximum.  Complexity: O(1).
"""

from __future__ import annotations

from typing import Iterable

from .distance import within_radius

# (minimum ratio, multiplier), highest first
SURGE_TIERS: tuple[tuple[float, float], ...] = (
    (3.0, 2.0),
    (2.0, 1.5),
    (1.0, 1.25),
)
BASE_MULTIPLIER = 1.0


def surge_multiplier(
    demand: int, supply: int, max_multiplier: float = 2.0
) -> float:
    ratio = demand / max(supply, 1)
    multiplier = BASE_MULTIPLIER
    for threshold, tier in SURGE_TIERS:
        if ratio >= threshold:
            multiplier = tier
            break
    return min(multiplier, max_multiplier)


def count_within(
    lat: float,
    lng: float,
    points: Iterable[tuple[float, float]],
    radius_km: float,
) -> int:
    return sum(
        1 for p_lat, p_lng in points if within_radius(lat, lng, p_lat, p_lng, radius_km)
    )
