"""Initial schema: users, driver profiles, rides, dispatch attempts, surge logs,
ride audit events.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

RIDE_STATUSES = (
    "PENDING",
    "ACCEPTED",
    "DRIVER_ARRIVED",
    "STARTED",
    "COMPLETED",
    "CANCELLED_BY_RIDER",
    "CANCELLED_BY_DRIVER",
    "CANCELLED_BY_SYSTEM",
    "EXPIRED",
)


def upgrade() -> None:
    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("phone_number", sa.String(32), unique=True, nullable=False),
        sa.Column(
            "role",
            sa.Enum("RIDER", "DRIVER", "ADMIN", name="userrole"),
            nullable=False,
            server_default="RIDER",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # ── driver_profiles ───────────────────────────────────────────────
    op.create_table(
        "driver_profiles",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer, sa.ForeignKey("users.id"), unique=True, nullable=False
        ),
        sa.Column(
            "status",
            sa.Enum("PENDING", "APPROVED", "REJECTED", "SUSPENDED", name="driverstatus"),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column("is_online", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("current_lat", sa.Float, nullable=True),
        sa.Column("current_lng", sa.Float, nullable=True),
        sa.Column("h3_cell", sa.String(20), nullable=True),
        sa.Column("location_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "vehicle_type",
            sa.Enum("SEDAN", "SUV", "MOTORCYCLE", name="vehicletype"),
            server_default="SEDAN",
        ),
        sa.Column("vehicle_make", sa.String(60), nullable=True),
        sa.Column("vehicle_model", sa.String(60), nullable=True),
        sa.Column("plate_number", sa.String(20), nullable=True),
        sa.Column("rating", sa.Float, nullable=True),
        sa.Column("total_rides", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_driver_profiles_cell", "driver_profiles", ["h3_cell"])
    op.create_index(
        "idx_driver_profiles_available", "driver_profiles", ["is_online", "status"]
    )

    # ── rides ─────────────────────────────────────────────────────────
    op.create_table(
        "rides",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("rider_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "driver_profile_id",
            sa.Integer,
            sa.ForeignKey("driver_profiles.id"),
            nullable=True,
        ),
        sa.Column("driver_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column(
            "selected_driver_profile_id",
            sa.Integer,
            sa.ForeignKey("driver_profiles.id"),
            nullable=True,
        ),
        sa.Column(
            "status",
            sa.Enum(*RIDE_STATUSES, name="ridestatus"),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("pickup_address", sa.String(255), nullable=True),
        sa.Column("dropoff_lat", sa.Float, nullable=False),
        sa.Column("dropoff_lng", sa.Float, nullable=False),
        sa.Column("dropoff_address", sa.String(255), nullable=True),
        sa.Column("estimated_distance_m", sa.Integer, nullable=True),
        sa.Column("estimated_duration_s", sa.Integer, nullable=True),
        sa.Column("base_fare", sa.Float, nullable=False, server_default="0"),
        sa.Column("distance_fare", sa.Float, nullable=False, server_default="0"),
        sa.Column("time_fare", sa.Float, nullable=False, server_default="0"),
        sa.Column("surge_multiplier", sa.Float, nullable=False, server_default="1"),
        sa.Column("surge_amount", sa.Float, nullable=False, server_default="0"),
        sa.Column("promo_discount", sa.Float, nullable=False, server_default="0"),
        sa.Column("total_fare", sa.Float, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("driver_arrived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(255), nullable=True),
    )
    op.create_index("idx_rides_status_created", "rides", ["status", "created_at"])
    op.create_index("idx_rides_rider", "rides", ["rider_id"])
    op.create_index("idx_rides_driver", "rides", ["driver_profile_id"])

    # ── dispatch_attempts ─────────────────────────────────────────────
    op.create_table(
        "dispatch_attempts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("ride_id", sa.Integer, sa.ForeignKey("rides.id"), nullable=False),
        sa.Column(
            "driver_profile_id",
            sa.Integer,
            sa.ForeignKey("driver_profiles.id"),
            nullable=False,
        ),
        sa.Column("driver_lat", sa.Float, nullable=False),
        sa.Column("driver_lng", sa.Float, nullable=False),
        sa.Column("distance_to_pickup_m", sa.Float, nullable=False),
        sa.Column("search_radius_km", sa.Float, nullable=True),
        sa.Column("targeted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "sent_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted", sa.Boolean, nullable=True),
        sa.Column("decline_reason", sa.String(255), nullable=True),
        sa.UniqueConstraint(
            "ride_id", "driver_profile_id", name="uq_attempt_ride_driver"
        ),
    )
    op.create_index(
        "idx_attempts_ride_responded", "dispatch_attempts", ["ride_id", "responded_at"]
    )
    op.create_index("idx_attempts_driver", "dispatch_attempts", ["driver_profile_id"])
    op.create_index("idx_attempts_sent", "dispatch_attempts", ["sent_at"])

    # ── surge_pricing_logs ────────────────────────────────────────────
    op.create_table(
        "surge_pricing_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("latitude", sa.Float, nullable=False),
        sa.Column("longitude", sa.Float, nullable=False),
        sa.Column("h3_cell", sa.String(20), nullable=True),
        sa.Column("radius_km", sa.Float, nullable=False),
        sa.Column("active_ride_count", sa.Integer, nullable=False),
        sa.Column("available_driver_count", sa.Integer, nullable=False),
        sa.Column("surge_multiplier", sa.Float, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_surge_logs_cell", "surge_pricing_logs", ["h3_cell"])

    # ── ride_audit_events ─────────────────────────────────────────────
    op.create_table(
        "ride_audit_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("ride_id", sa.Integer, sa.ForeignKey("rides.id"), nullable=False),
        sa.Column(
            "actor_user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True
        ),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("from_status", sa.String(32), nullable=True),
        sa.Column("to_status", sa.String(32), nullable=True),
        sa.Column("details", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_audit_ride", "ride_audit_events", ["ride_id"])


def downgrade() -> None:
    op.drop_table("ride_audit_events")
    op.drop_table("surge_pricing_logs")
    op.drop_table("dispatch_attempts")
    op.drop_table("rides")
    op.drop_table("driver_profiles")
    op.drop_table("users")
    op.execute("DROP TYPE IF EXISTS ridestatus")
    op.execute("DROP TYPE IF EXISTS vehicletype")
    op.execute("DROP TYPE IF EXISTS driverstatus")
    op.execute("DROP TYPE IF EXISTS userrole")
