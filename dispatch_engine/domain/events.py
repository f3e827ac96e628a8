"""
Real-time event payloads.

Server -> client events are a closed set of models tagged by ``event``
(``ServerEvent``, the type the registry sends); client -> server frames are
tagged by ``type`` and parsed through ``client_message_adapter``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


# ── Shared payload pieces ─────────────────────────────────────────────


class RideSummary(BaseModel):
    """Enough of a ride for a driver to decide on an offer."""

    id: int
    status: str
    pickup_lat: float
    pickup_lng: float
    pickup_address: Optional[str] = None
    dropoff_lat: float
    dropoff_lng: float
    dropoff_address: Optional[str] = None
    estimated_fare: float
    estimated_distance_m: Optional[int] = None
    estimated_duration_s: Optional[int] = None
    surge_multiplier: float = 1.0

    model_config = {"from_attributes": True}


class VehicleInfo(BaseModel):
    vehicle_type: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    plate_number: Optional[str] = None


class AssignedDriver(BaseModel):
    driver_profile_id: int
    user_id: int
    name: Optional[str] = None
    rating: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    vehicle: VehicleInfo = Field(default_factory=VehicleInfo)


class RideDetail(RideSummary):
    rider_id: int
    driver: Optional[AssignedDriver] = None
    accepted_at: Optional[datetime] = None


# ── Server -> client ──────────────────────────────────────────────────


class OfferEvent(BaseModel):
    event: Literal["offer"] = "offer"
    attempt_id: int
    ride: RideSummary
    expires_in_seconds: int


class AssignedEvent(BaseModel):
    event: Literal["assigned"] = "assigned"
    ride: RideDetail


class AcceptConfirmedEvent(BaseModel):
    event: Literal["accept-confirmed"] = "accept-confirmed"
    ride: RideDetail


class DeclinedConfirmedEvent(BaseModel):
    event: Literal["declined-confirmed"] = "declined-confirmed"
    attempt_id: int


class OfferExpiredEvent(BaseModel):
    event: Literal["offer-expired"] = "offer-expired"
    attempt_id: int
    ride_id: int


class DispatchStatusEvent(BaseModel):
    event: Literal["dispatch-status"] = "dispatch-status"
    ride_id: int
    status: Literal["searching", "no_drivers", "expired", "interrupted"]


class ErrorEvent(BaseModel):
    event: Literal["error"] = "error"
    code: str
    message: str


ServerEvent = Annotated[
    Union[
        OfferEvent,
        AssignedEvent,
        AcceptConfirmedEvent,
        DeclinedConfirmedEvent,
        OfferExpiredEvent,
        DispatchStatusEvent,
        ErrorEvent,
    ],
    Field(discriminator="event"),
]


# ── Client -> server ──────────────────────────────────────────────────


class AuthMessage(BaseModel):
    type: Literal["auth"] = "auth"
    token: str


class RespondMessage(BaseModel):
    type: Literal["respond"] = "respond"
    attempt_id: int
    accepted: bool
    reason: Optional[str] = Field(None, max_length=255)


ClientMessage = Annotated[
    Union[AuthMessage, RespondMessage],
    Field(discriminator="type"),
]

client_message_adapter: TypeAdapter = TypeAdapter(ClientMessage)
