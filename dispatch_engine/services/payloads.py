"""Build event payloads from ORM rows."""

from __future__ import annotations

from typing import Optional

from dispatch_engine.domain.events import (
    AssignedDriver,
    RideDetail,
    RideSummary,
    VehicleInfo,
)
from dispatch_engine.infrastructure.models import (
    DriverProfileModel,
    RideModel,
    UserModel,
)


def _value(enum_or_str) -> Optional[str]:
    if enum_or_str is None:
        return None
    return enum_or_str.value if hasattr(enum_or_str, "value") else str(enum_or_str)


def ride_summary(ride: RideModel) -> RideSummary:
    return RideSummary(
        id=ride.id,
        status=_value(ride.status),
        pickup_lat=ride.pickup_lat,
        pickup_lng=ride.pickup_lng,
        pickup_address=ride.pickup_address,
        dropoff_lat=ride.dropoff_lat,
        dropoff_lng=ride.dropoff_lng,
        dropoff_address=ride.dropoff_address,
        estimated_fare=ride.total_fare,
        estimated_distance_m=ride.estimated_distance_m,
        estimated_duration_s=ride.estimated_duration_s,
        surge_multiplier=ride.surge_multiplier,
    )


def ride_detail(
    ride: RideModel,
    driver: Optional[DriverProfileModel] = None,
    driver_user: Optional[UserModel] = None,
) -> RideDetail:
    assigned = None
    if driver is not None:
        assigned = AssignedDriver(
            driver_profile_id=driver.id,
            user_id=driver.user_id,
            name=driver_user.name if driver_user else None,
            rating=driver.rating,
            latitude=driver.current_lat,
            longitude=driver.current_lng,
            vehicle=VehicleInfo(
                vehicle_type=_value(driver.vehicle_type),
                make=driver.vehicle_make,
                model=driver.vehicle_model,
                plate_number=driver.plate_number,
            ),
        )
    return RideDetail(
        **ride_summary(ride).model_dump(),
        rider_id=ride.rider_id,
        driver=assigned,
        accepted_at=ride.accepted_at,
    )
