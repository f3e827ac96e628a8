"""
Driver availability
===================

PATCH /api/v1/drivers/me/availability -- go online / offline, report position
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_engine.api.dependencies import get_current_user_id, get_db, get_settings
from dispatch_engine.api.middleware import DEFAULT_RATE_LIMIT, limiter
from dispatch_engine.api.schemas import (
    DriverAvailabilityRequest,
    DriverAvailabilityResponse,
)
from dispatch_engine.config import Settings
from dispatch_engine.domain.errors import NotFound, PreconditionViolation
from dispatch_engine.infrastructure.repositories import DriverRepository

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.patch(
    "/me/availability",
    response_model=DriverAvailabilityResponse,
    summary="Set the calling driver's availability and position",
)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def update_availability(
    request: Request,
    body: DriverAvailabilityRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    repo = DriverRepository(db)
    driver = await repo.get_by_user_id(user_id)
    if driver is None:
        raise NotFound("Driver profile not found")

    if body.latitude is not None and body.longitude is not None:
        await repo.update_location(
            driver,
            body.latitude,
            body.longitude,
            is_online=body.is_online,
            resolution=settings.h3_resolution,
        )
    elif body.is_online and driver.current_lat is None:
        raise PreconditionViolation("A location is required to go online")
    else:
        driver.is_online = body.is_online

    return DriverAvailabilityResponse(
        driver_profile_id=driver.id,
        is_online=driver.is_online,
        latitude=driver.current_lat,
        longitude=driver.current_lng,
        h3_cell=driver.h3_cell,
    )
