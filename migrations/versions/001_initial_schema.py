"""Initial schema: drivers and rides.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("id", sa.String(16), primary_key=True),
        sa.Column("user_id", sa.String(64), unique=True, nullable=False),
        sa.Column("vehicle_type", sa.String(20), nullable=False),
        sa.Column("vehicle_model", sa.String(120), nullable=False),
        sa.Column("vehicle_number", sa.String(32), nullable=False),
        sa.Column("vehicle_color", sa.String(32), nullable=True),
        sa.Column("documents", sa.JSON, nullable=False),
        sa.Column("longitude", sa.Float, nullable=False),
        sa.Column("latitude", sa.Float, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="offline"),
        sa.Column("current_ride_id", sa.String(16), nullable=True),
        sa.Column("rating_average", sa.Float, nullable=False, server_default="0"),
        sa.Column("rating_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_rides", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_earnings", sa.Float, nullable=False, server_default="0"),
        sa.Column("total_distance_km", sa.Float, nullable=False, server_default="0"),
        sa.Column("completion_rate", sa.Float, nullable=False, server_default="100"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("schedule", sa.JSON, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "idx_drivers_search", "drivers", ["status", "latitude", "longitude"]
    )

    # ── rides ─────────────────────────────────────────────────────────
    op.create_table(
        "rides",
        sa.Column("id", sa.String(16), primary_key=True),
        sa.Column("rider_id", sa.String(64), nullable=False),
        sa.Column(
            "driver_id", sa.String(16), sa.ForeignKey("drivers.id"), nullable=True
        ),
        sa.Column("pickup_lon", sa.Float, nullable=False),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_address", sa.String(255), nullable=False),
        sa.Column("dropoff_lon", sa.Float, nullable=False),
        sa.Column("dropoff_lat", sa.Float, nullable=False),
        sa.Column("dropoff_address", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="requested"),
        sa.Column("ride_class", sa.String(20), nullable=False),
        sa.Column("fare_base", sa.Float, nullable=True),
        sa.Column("fare_distance", sa.Float, nullable=True),
        sa.Column("fare_time", sa.Float, nullable=True),
        sa.Column("fare_surge", sa.Float, nullable=True),
        sa.Column("fare_tax", sa.Float, nullable=True),
        sa.Column("fare_total", sa.Integer, nullable=True),
        sa.Column("fare_currency", sa.String(3), nullable=False, server_default="INR"),
        sa.Column(
            "payment_status", sa.String(20), nullable=False, server_default="pending"
        ),
        sa.Column(
            "payment_method", sa.String(20), nullable=False, server_default="cash"
        ),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arrived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_distance_km", sa.Float, nullable=True),
        sa.Column("actual_distance_km", sa.Float, nullable=True),
        sa.Column("estimated_duration_min", sa.Integer, nullable=True),
        sa.Column("actual_duration_min", sa.Integer, nullable=True),
        sa.Column("route", sa.JSON, nullable=False),
        sa.Column("driver_rating", sa.Integer, nullable=True),
        sa.Column("driver_feedback", sa.String(500), nullable=True),
        sa.Column("rider_rating", sa.Integer, nullable=True),
        sa.Column("rider_feedback", sa.String(500), nullable=True),
        sa.Column("cancellation_reason", sa.String(255), nullable=True),
        sa.Column("canceled_by", sa.String(20), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_rides_status", "rides", ["status"])
    op.create_index("idx_rides_rider", "rides", ["rider_id", "requested_at"])
    op.create_index("idx_rides_driver", "rides", ["driver_id", "requested_at"])


def downgrade() -> None:
    op.drop_table("rides")
    op.drop_table("drivers")
