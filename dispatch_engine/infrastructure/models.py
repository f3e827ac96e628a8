"""
SQLAlchemy ORM models  (PostgreSQL in production, SQLite in tests).

Tables
------
* ``users``              -- riders, drivers and admins
* ``driver_profiles``    -- availability, approval and location of drivers
* ``rides``              -- ride requests and their lifecycle
* ``dispatch_attempts``  -- one offer of a ride to one driver
* ``surge_pricing_logs`` -- audit sample of every surge computation
* ``ride_audit_events``  -- who moved a ride and from which status

Indexes
-------
* **B-Tree** on ``driver_profiles.h3_cell`` and ``(is_online, status)``
  for the candidate prefilter.
* **Unique** ``(ride_id, driver_profile_id)`` on ``dispatch_attempts``:
  a driver is never offered the same ride twice.
* **B-Tree** on ``(ride_id, responded_at)`` and ``sent_at`` for the
  outstanding-attempt lookups and the timeout sweep.
* **B-Tree** on ``ride_audit_events.ride_id`` for the per-ride trail.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from .database import Base, utcnow
from dispatch_engine.domain.enums import (
    DriverStatus,
    RideStatus,
    UserRole,
    VehicleType,
)


class UserModel(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    phone_number = Column(String(32), unique=True, nullable=False)
    role = Column(Enum(UserRole), default=UserRole.RIDER, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class DriverProfileModel(Base):
    __tablename__ = "driver_profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    status = Column(Enum(DriverStatus), default=DriverStatus.PENDING, nullable=False)
    is_online = Column(Boolean, default=False, nullable=False)

    current_lat = Column(Float, nullable=True)
    current_lng = Column(Float, nullable=True)
    h3_cell = Column(String(20), nullable=True)
    location_updated_at = Column(DateTime(timezone=True), nullable=True)

    vehicle_type = Column(Enum(VehicleType), default=VehicleType.SEDAN)
    vehicle_make = Column(String(60), nullable=True)
    vehicle_model = Column(String(60), nullable=True)
    plate_number = Column(String(20), nullable=True)

    rating = Column(Float, nullable=True)
    total_rides = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_driver_profiles_cell", "h3_cell"),
        Index("idx_driver_profiles_available", "is_online", "status"),
    )


class RideModel(Base):
    __tablename__ = "rides"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rider_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    driver_profile_id = Column(Integer, ForeignKey("driver_profiles.id"), nullable=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    selected_driver_profile_id = Column(
        Integer, ForeignKey("driver_profiles.id"), nullable=True
    )

    status = Column(Enum(RideStatus), default=RideStatus.PENDING, nullable=False)

    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    pickup_address = Column(String(255), nullable=True)
    dropoff_lat = Column(Float, nullable=False)
    dropoff_lng = Column(Float, nullable=False)
    dropoff_address = Column(String(255), nullable=True)

    estimated_distance_m = Column(Integer, nullable=True)
    estimated_duration_s = Column(Integer, nullable=True)

    # Fare breakdown -- all non-negative, total floored at the minimum fare
    base_fare = Column(Float, default=0.0, nullable=False)
    distance_fare = Column(Float, default=0.0, nullable=False)
    time_fare = Column(Float, default=0.0, nullable=False)
    surge_multiplier = Column(Float, default=1.0, nullable=False)
    surge_amount = Column(Float, default=0.0, nullable=False)
    promo_discount = Column(Float, default=0.0, nullable=False)
    total_fare = Column(Float, default=0.0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    driver_arrived_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)

    __table_args__ = (
        Index("idx_rides_status_created", "status", "created_at"),
        Index("idx_rides_rider", "rider_id"),
        Index("idx_rides_driver", "driver_profile_id"),
    )


class DispatchAttemptModel(Base):
    __tablename__ = "dispatch_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ride_id = Column(Integer, ForeignKey("rides.id"), nullable=False)
    driver_profile_id = Column(
        Integer, ForeignKey("driver_profiles.id"), nullable=False
    )

    driver_lat = Column(Float, nullable=False)
    driver_lng = Column(Float, nullable=False)
    distance_to_pickup_m = Column(Float, nullable=False)
    search_radius_km = Column(Float, nullable=True)
    targeted = Column(Boolean, default=False, nullable=False)

    sent_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    accepted = Column(Boolean, nullable=True)
    decline_reason = Column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("ride_id", "driver_profile_id", name="uq_attempt_ride_driver"),
        Index("idx_attempts_ride_responded", "ride_id", "responded_at"),
        Index("idx_attempts_driver", "driver_profile_id"),
        Index("idx_attempts_sent", "sent_at"),
    )


class SurgePricingLogModel(Base):
    __tablename__ = "surge_pricing_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    h3_cell = Column(String(20), nullable=True)
    radius_km = Column(Float, nullable=False)
    active_ride_count = Column(Integer, nullable=False)
    available_driver_count = Column(Integer, nullable=False)
    surge_multiplier = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (Index("idx_surge_logs_cell", "h3_cell"),)


class RideAuditEventModel(Base):
    __tablename__ = "ride_audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ride_id = Column(Integer, ForeignKey("rides.id"), nullable=False)
    actor_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action = Column(String(40), nullable=False)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=True)
    details = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (Index("idx_audit_ride", "ride_id"),)
