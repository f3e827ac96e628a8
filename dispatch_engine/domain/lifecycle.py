"""
Ride lifecycle state machine.

Pure functions only: callers validate first, then commit the new status
together with the matching timestamp column in a single update.
"""

from __future__ import annotations

from typing import Optional

from .enums import RIDE_TRANSITIONS, CancellationActor, RideStatus
from .errors import InvalidStateTransition

_TIMESTAMP_FIELDS: dict[RideStatus, str] = {
    RideStatus.ACCEPTED: "accepted_at",
    RideStatus.DRIVER_ARRIVED: "driver_arrived_at",
    RideStatus.STARTED: "started_at",
    RideStatus.COMPLETED: "completed_at",
    RideStatus.CANCELLED_BY_RIDER: "cancelled_at",
    RideStatus.CANCELLED_BY_DRIVER: "cancelled_at",
    RideStatus.CANCELLED_BY_SYSTEM: "cancelled_at",
}

_CANCELLATION_STATUS: dict[CancellationActor, RideStatus] = {
    CancellationActor.RIDER: RideStatus.CANCELLED_BY_RIDER,
    CancellationActor.DRIVER: RideStatus.CANCELLED_BY_DRIVER,
    CancellationActor.SYSTEM: RideStatus.CANCELLED_BY_SYSTEM,
}


def can_transition(current: RideStatus, proposed: RideStatus) -> bool:
    return RideStatus(proposed) in RIDE_TRANSITIONS.get(RideStatus(current), set())


def validate_transition(current: RideStatus, proposed: RideStatus) -> None:
    """Raise ``InvalidStateTransition`` unless *current* -> *proposed* is legal."""
    current, proposed = RideStatus(current), RideStatus(proposed)
    if not can_transition(current, proposed):
        raise InvalidStateTransition(
            f"Cannot transition from {current.value} to {proposed.value}"
        )


def transition_timestamp_field(target: RideStatus) -> Optional[str]:
    """Name of the ride column stamped when entering *target* (None for EXPIRED)."""
    return _TIMESTAMP_FIELDS.get(RideStatus(target))


def cancellation_status_for(actor: CancellationActor) -> RideStatus:
    return _CANCELLATION_STATUS[CancellationActor(actor)]
