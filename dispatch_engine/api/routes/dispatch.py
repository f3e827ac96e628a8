"""
Driver-side dispatch endpoints
==============================

GET  /api/v1/dispatch/pending                       -- my outstanding offer
POST /api/v1/dispatch/attempts/{attempt_id}/respond -- accept / decline

HTTP fallback for drivers without a live socket; the WebSocket gateway
calls the same resolver.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from dispatch_engine.api.dependencies import (
    get_current_user_id,
    get_dispatcher,
    get_resolver,
)
from dispatch_engine.api.middleware import DEFAULT_RATE_LIMIT, limiter
from dispatch_engine.api.schemas import (
    DispatchOutcomeResponse,
    ErrorResponse,
    RespondRequest,
    RespondResponse,
)
from dispatch_engine.domain.events import OfferEvent
from dispatch_engine.services.dispatcher import DispatchController
from dispatch_engine.services.resolver import ResponseResolver

router = APIRouter(prefix="/dispatch", tags=["dispatch"])


@router.get(
    "/pending",
    response_model=Optional[OfferEvent],
    summary="The offer currently waiting on the calling driver, if any",
)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def pending_offer(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    dispatcher: DispatchController = Depends(get_dispatcher),
):
    return await dispatcher.pending_offer_for(user_id)


@router.post(
    "/attempts/{attempt_id}/respond",
    response_model=RespondResponse,
    summary="Accept or decline an offer",
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
@limiter.limit(DEFAULT_RATE_LIMIT)
async def respond(
    request: Request,
    attempt_id: int,
    body: RespondRequest,
    user_id: int = Depends(get_current_user_id),
    resolver: ResponseResolver = Depends(get_resolver),
):
    outcome = await resolver.respond(
        attempt_id, user_id, body.accepted, decline_reason=body.reason
    )
    return RespondResponse(
        accepted=outcome.accepted,
        attempt_id=outcome.attempt_id,
        ride_id=outcome.ride_id,
        next_dispatch=(
            DispatchOutcomeResponse.from_outcome(outcome.next_dispatch)
            if outcome.next_dispatch
            else None
        ),
    )
