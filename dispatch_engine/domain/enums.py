"""Domain enumerations and state-transition rules."""

import enum


class RideStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DRIVER_ARRIVED = "DRIVER_ARRIVED"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    CANCELLED_BY_RIDER = "CANCELLED_BY_RIDER"
    CANCELLED_BY_DRIVER = "CANCELLED_BY_DRIVER"
    CANCELLED_BY_SYSTEM = "CANCELLED_BY_SYSTEM"
    EXPIRED = "EXPIRED"


# State machine: maps current status -> set of valid next statuses
RIDE_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.PENDING: {
        RideStatus.ACCEPTED,
        RideStatus.CANCELLED_BY_RIDER,
        RideStatus.CANCELLED_BY_SYSTEM,
        RideStatus.EXPIRED,
    },
    RideStatus.ACCEPTED: {
        RideStatus.DRIVER_ARRIVED,
        RideStatus.CANCELLED_BY_RIDER,
        RideStatus.CANCELLED_BY_DRIVER,
        RideStatus.CANCELLED_BY_SYSTEM,
    },
    RideStatus.DRIVER_ARRIVED: {
        RideStatus.STARTED,
        RideStatus.CANCELLED_BY_RIDER,
        RideStatus.CANCELLED_BY_DRIVER,
        RideStatus.CANCELLED_BY_SYSTEM,
    },
    RideStatus.STARTED: {RideStatus.COMPLETED, RideStatus.CANCELLED_BY_SYSTEM},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED_BY_RIDER: set(),
    RideStatus.CANCELLED_BY_DRIVER: set(),
    RideStatus.CANCELLED_BY_SYSTEM: set(),
    RideStatus.EXPIRED: set(),
}

TERMINAL_STATUSES = frozenset(s for s, nxt in RIDE_TRANSITIONS.items() if not nxt)


class CancellationActor(str, enum.Enum):
    RIDER = "RIDER"
    DRIVER = "DRIVER"
    SYSTEM = "SYSTEM"


class DriverStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SUSPENDED = "SUSPENDED"


class UserRole(str, enum.Enum):
    RIDER = "RIDER"
    DRIVER = "DRIVER"
    ADMIN = "ADMIN"


class VehicleType(str, enum.Enum):
    SEDAN = "SEDAN"
    SUV = "SUV"
    MOTORCYCLE = "MOTORCYCLE"


class DispatchResult(str, enum.Enum):
    OFFERED = "OFFERED"
    NO_CANDIDATE = "NO_CANDIDATE"
    EXHAUSTED = "EXHAUSTED"


class AuditAction(str, enum.Enum):
    RIDE_CREATED = "RIDE_CREATED"
    RIDE_ACCEPTED = "RIDE_ACCEPTED"
    RIDE_STATUS_CHANGED = "RIDE_STATUS_CHANGED"
    RIDE_CANCELLED = "RIDE_CANCELLED"
