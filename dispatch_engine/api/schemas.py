"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from dispatch_engine.domain.enums import RideStatus


# ── Requests ──────────────────────────────────────────────────────────


class EstimateRequest(BaseModel):
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dropoff_lat: float = Field(..., ge=-90, le=90)
    dropoff_lng: float = Field(..., ge=-180, le=180)
    promo_discount: float = Field(0.0, ge=0)


class RideCreateRequest(EstimateRequest):
    pickup_address: Optional[str] = Field(None, max_length=255)
    dropoff_address: Optional[str] = Field(None, max_length=255)
    selected_driver_profile_id: Optional[int] = Field(
        None,
        description="Offer the ride to this driver first; open dispatch if they pass.",
    )


class StatusUpdateRequest(BaseModel):
    status: RideStatus


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class RespondRequest(BaseModel):
    accepted: bool
    reason: Optional[str] = Field(None, max_length=255)


class DriverAvailabilityRequest(BaseModel):
    is_online: bool
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


# ── Responses ─────────────────────────────────────────────────────────


class EstimateResponse(BaseModel):
    distance_m: int
    duration_s: int
    base_fare: float
    distance_fare: float
    time_fare: float
    surge_multiplier: float
    surge_amount: float
    promo_discount: float
    total_fare: float
    currency: str


class RideResponse(BaseModel):
    id: int
    rider_id: int
    driver_id: Optional[int] = None
    driver_profile_id: Optional[int] = None
    selected_driver_profile_id: Optional[int] = None
    status: RideStatus
    pickup_lat: float
    pickup_lng: float
    pickup_address: Optional[str] = None
    dropoff_lat: float
    dropoff_lng: float
    dropoff_address: Optional[str] = None
    estimated_distance_m: Optional[int] = None
    estimated_duration_s: Optional[int] = None
    base_fare: float
    distance_fare: float
    time_fare: float
    surge_multiplier: float
    surge_amount: float
    promo_discount: float
    total_fare: float
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    driver_arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class DispatchAttemptResponse(BaseModel):
    id: int
    ride_id: int
    driver_profile_id: int
    distance_to_pickup_m: float
    search_radius_km: Optional[float] = None
    targeted: bool
    sent_at: datetime
    responded_at: Optional[datetime] = None
    accepted: Optional[bool] = None
    decline_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class DispatchOutcomeResponse(BaseModel):
    result: str
    ride_id: int
    round_number: int
    radius_km: Optional[float] = None
    attempt_id: Optional[int] = None
    driver_profile_id: Optional[int] = None
    delivered: Optional[bool] = None

    @classmethod
    def from_outcome(cls, outcome) -> "DispatchOutcomeResponse":
        return cls(
            result=outcome.result.value,
            ride_id=outcome.ride_id,
            round_number=outcome.round_number,
            radius_km=outcome.radius_km,
            attempt_id=outcome.attempt.id if outcome.attempt else None,
            driver_profile_id=(
                outcome.candidate.driver_profile_id if outcome.candidate else None
            ),
            delivered=(
                outcome.delivery.value == "DELIVERED" if outcome.delivery else None
            ),
        )


class RespondResponse(BaseModel):
    accepted: bool
    attempt_id: int
    ride_id: int
    next_dispatch: Optional[DispatchOutcomeResponse] = None


class DriverAvailabilityResponse(BaseModel):
    driver_profile_id: int
    is_online: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    h3_cell: Optional[str] = None


class SurgeLogResponse(BaseModel):
    id: int
    latitude: float
    longitude: float
    h3_cell: Optional[str] = None
    radius_km: float
    active_ride_count: int
    available_driver_count: int
    surge_multiplier: float
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RideAuditEventResponse(BaseModel):
    id: int
    ride_id: int
    actor_user_id: Optional[int] = None
    action: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    details: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ConnectionStatsResponse(BaseModel):
    users: int
    connections: int


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
    code: str
