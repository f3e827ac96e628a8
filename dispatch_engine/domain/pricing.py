"""
Fare Estimation
===============

Formula
-------
Subtotal = Base_Fare + Distance_km x Cost_Per_KM + Duration_min x Cost_Per_Minute
Surge    = Subtotal x (Surge_Multiplier - 1)
Total    = max(Subtotal + Surge - Promo_Discount, Minimum_Fare), rounded

* Duration falls back to 3 min / km when the distance source gives none.
* The promo discount is looked up elsewhere and capped at the surged
  subtotal here so a fare can never go negative.

Complexity: O(1) per estimate.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .distance import haversine_km

FALLBACK_MINUTES_PER_KM = 3.0


@dataclass(frozen=True)
class FareBreakdown:
    distance_km: float
    duration_seconds: int
    base_fare: float
    distance_fare: float
    time_fare: float
    surge_multiplier: float
    surge_amount: float
    promo_discount: float
    total_fare: float
    currency: str

    @property
    def distance_meters(self) -> int:
        return round(self.distance_km * 1000)


class FareCalculator:
    """High-level API used by the ride service and the estimate endpoint."""

    def __init__(
        self,
        base_fare: float = 50.0,
        cost_per_km: float = 15.0,
        cost_per_minute: float = 2.0,
        min_fare: float = 60.0,
        currency: str = "PHP",
    ):
        self.base_fare = base_fare
        self.cost_per_km = cost_per_km
        self.cost_per_minute = cost_per_minute
        self.min_fare = min_fare
        self.currency = currency

    def calculate(
        self,
        distance_km: float,
        duration_seconds: Optional[int] = None,
        surge_multiplier: float = 1.0,
        promo_discount: float = 0.0,
    ) -> FareBreakdown:
        if duration_seconds:
            minutes = duration_seconds / 60
        else:
            minutes = distance_km * FALLBACK_MINUTES_PER_KM

        distance_fare = distance_km * self.cost_per_km
        time_fare = minutes * self.cost_per_minute
        subtotal = self.base_fare + distance_fare + time_fare

        surge_amount = subtotal * (surge_multiplier - 1) if surge_multiplier > 1 else 0.0
        discount = min(max(promo_discount, 0.0), subtotal + surge_amount)

        total = max(subtotal + surge_amount - discount, self.min_fare)

        return FareBreakdown(
            distance_km=distance_km,
            duration_seconds=round(minutes * 60),
            base_fare=self.base_fare,
            distance_fare=round(distance_fare),
            time_fare=round(time_fare),
            surge_multiplier=surge_multiplier,
            surge_amount=round(surge_amount),
            promo_discount=round(discount),
            total_fare=round(total),
            currency=self.currency,
        )

    def estimate_between(
        self,
        pickup_lat: float,
        pickup_lng: float,
        dropoff_lat: float,
        dropoff_lng: float,
        surge_multiplier: float = 1.0,
        promo_discount: float = 0.0,
    ) -> FareBreakdown:
        """Great-circle fallback when no routing provider distance is available."""
        distance = haversine_km(pickup_lat, pickup_lng, dropoff_lat, dropoff_lng)
        return self.calculate(
            distance,
            surge_multiplier=surge_multiplier,
            promo_discount=promo_discount,
        )
