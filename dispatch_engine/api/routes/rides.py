"""
Ride endpoints
==============

POST  /api/v1/rides/estimate                 -- fare estimate, surge included
POST  /api/v1/rides                          -- create a ride and start dispatch
GET   /api/v1/rides/{ride_id}                -- ride details
PATCH /api/v1/rides/{ride_id}/status         -- driver progress updates
PATCH /api/v1/rides/{ride_id}/cancel         -- cancel (rider, driver or admin)
POST  /api/v1/rides/{ride_id}/dispatch       -- run another dispatch round
GET   /api/v1/rides/{ride_id}/dispatch-attempts -- offer history
"""

from fastapi import APIRouter, Depends, Request

from dispatch_engine.api.dependencies import (
    get_current_user_id,
    get_dispatcher,
    get_ride_service,
)
from dispatch_engine.api.middleware import DEFAULT_RATE_LIMIT, limiter
from dispatch_engine.api.schemas import (
    CancelRequest,
    DispatchAttemptResponse,
    DispatchOutcomeResponse,
    EstimateRequest,
    EstimateResponse,
    ErrorResponse,
    RideCreateRequest,
    RideResponse,
    StatusUpdateRequest,
)
from dispatch_engine.services.dispatcher import DispatchController
from dispatch_engine.services.rides import RideRequest, RideService

router = APIRouter(prefix="/rides", tags=["rides"])


@router.post(
    "/estimate",
    response_model=EstimateResponse,
    summary="Estimate the fare for a trip",
)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def estimate_fare(
    request: Request,
    body: EstimateRequest,
    user_id: int = Depends(get_current_user_id),
    rides: RideService = Depends(get_ride_service),
):
    fare = await rides.estimate(
        body.pickup_lat,
        body.pickup_lng,
        body.dropoff_lat,
        body.dropoff_lng,
        promo_discount=body.promo_discount,
    )
    return EstimateResponse(
        distance_m=fare.distance_meters,
        duration_s=fare.duration_seconds,
        base_fare=fare.base_fare,
        distance_fare=fare.distance_fare,
        time_fare=fare.time_fare,
        surge_multiplier=fare.surge_multiplier,
        surge_amount=fare.surge_amount,
        promo_discount=fare.promo_discount,
        total_fare=fare.total_fare,
        currency=fare.currency,
    )


@router.post(
    "",
    status_code=201,
    response_model=RideResponse,
    summary="Request a ride",
    responses={409: {"model": ErrorResponse}},
)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def create_ride(
    request: Request,
    body: RideCreateRequest,
    user_id: int = Depends(get_current_user_id),
    rides: RideService = Depends(get_ride_service),
):
    ride = await rides.create_ride(
        user_id,
        RideRequest(
            pickup_lat=body.pickup_lat,
            pickup_lng=body.pickup_lng,
            dropoff_lat=body.dropoff_lat,
            dropoff_lng=body.dropoff_lng,
            pickup_address=body.pickup_address,
            dropoff_address=body.dropoff_address,
            promo_discount=body.promo_discount,
            selected_driver_profile_id=body.selected_driver_profile_id,
        ),
    )
    await rides.start_dispatch(ride)
    return ride


@router.get(
    "/{ride_id}",
    response_model=RideResponse,
    summary="Get a ride",
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def get_ride(
    request: Request,
    ride_id: int,
    user_id: int = Depends(get_current_user_id),
    rides: RideService = Depends(get_ride_service),
):
    return await rides.get_ride(ride_id, user_id)


@router.patch(
    "/{ride_id}/status",
    response_model=RideResponse,
    summary="Advance a ride (assigned driver only)",
    description="DRIVER_ARRIVED, STARTED and COMPLETED, in that order.",
)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def update_status(
    request: Request,
    ride_id: int,
    body: StatusUpdateRequest,
    user_id: int = Depends(get_current_user_id),
    rides: RideService = Depends(get_ride_service),
):
    return await rides.update_status(ride_id, user_id, body.status)


@router.patch(
    "/{ride_id}/cancel",
    response_model=RideResponse,
    summary="Cancel a ride",
    description=(
        "The resulting status records who cancelled: the rider, the assigned "
        "driver, or an admin (system).  Any outstanding offer is withdrawn."
    ),
)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def cancel_ride(
    request: Request,
    ride_id: int,
    body: CancelRequest,
    user_id: int = Depends(get_current_user_id),
    rides: RideService = Depends(get_ride_service),
):
    return await rides.cancel_ride(ride_id, user_id, body.reason)


@router.post(
    "/{ride_id}/dispatch",
    response_model=DispatchOutcomeResponse,
    summary="Run the next dispatch round for a pending ride",
)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def trigger_dispatch(
    request: Request,
    ride_id: int,
    user_id: int = Depends(get_current_user_id),
    rides: RideService = Depends(get_ride_service),
    dispatcher: DispatchController = Depends(get_dispatcher),
):
    await rides.get_ride(ride_id, user_id)
    outcome = await dispatcher.dispatch(ride_id)
    return DispatchOutcomeResponse.from_outcome(outcome)


@router.get(
    "/{ride_id}/dispatch-attempts",
    response_model=list[DispatchAttemptResponse],
    summary="Offer history for a ride",
)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def list_dispatch_attempts(
    request: Request,
    ride_id: int,
    user_id: int = Depends(get_current_user_id),
    rides: RideService = Depends(get_ride_service),
    dispatcher: DispatchController = Depends(get_dispatcher),
):
    await rides.get_ride(ride_id, user_id)
    return await dispatcher.list_attempts(ride_id)
