"""Initial schema: drivers and bookings with optimistic version columns.

Revision ID: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

DRIVER_STATUS = ("available", "busy", "offline")
BOOKING_STATUS = (
    "waiting",
    "accepted",
    "on_way",
    "arrived",
    "started",
    "completed",
    "cancelled",
)


def _timestamp(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=True, **kwargs)


def upgrade() -> None:
    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False, server_default=""),
        sa.Column("phone", sa.String(32), nullable=False, server_default=""),
        sa.Column("vehicle", sa.String(120), nullable=False, server_default=""),
        sa.Column(
            "license_plate", sa.String(16), nullable=False, server_default=""
        ),
        sa.Column(
            "status",
            sa.Enum(*DRIVER_STATUS, name="driver_status"),
            nullable=False,
            server_default="offline",
        ),
        sa.Column("lat", sa.Float, nullable=True),
        sa.Column("lng", sa.Float, nullable=True),
        sa.Column("h3_cell", sa.String(20), nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        _timestamp("created_at", server_default=sa.func.now()),
        _timestamp("updated_at"),
    )
    op.create_index("idx_drivers_status", "drivers", ["status"])
    op.create_index("idx_drivers_cell", "drivers", ["h3_cell"])

    # ── bookings ──────────────────────────────────────────────────────
    op.create_table(
        "bookings",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*BOOKING_STATUS, name="booking_status"),
            nullable=False,
            server_default="waiting",
        ),
        sa.Column(
            "pickup_address", sa.String(255), nullable=False, server_default=""
        ),
        sa.Column("pickup_lat", sa.Float, nullable=True),
        sa.Column("pickup_lng", sa.Float, nullable=True),
        sa.Column("driver_id", sa.String(64), nullable=True),
        sa.Column("driver_name", sa.String(120), nullable=True),
        sa.Column("driver_phone", sa.String(32), nullable=True),
        sa.Column("driver_vehicle", sa.String(120), nullable=True),
        sa.Column("driver_license_plate", sa.String(16), nullable=True),
        sa.Column("driver_lat", sa.Float, nullable=True),
        sa.Column("driver_lng", sa.Float, nullable=True),
        sa.Column("last_driver_id", sa.String(64), nullable=True),
        sa.Column("price", sa.Float, nullable=True),
        sa.Column(
            "service_tier", sa.String(32), nullable=False, server_default="standard"
        ),
        sa.Column("driver_notes", sa.Text, nullable=True),
        sa.Column("rejected_by", sa.String(64), nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        _timestamp("created_at", server_default=sa.func.now()),
        _timestamp("updated_at"),
        _timestamp("accepted_at"),
        _timestamp("on_way_at"),
        _timestamp("arrived_at"),
        _timestamp("started_at"),
        _timestamp("completed_at"),
        _timestamp("cancelled_at"),
        _timestamp("rejected_at"),
        _timestamp("driver_went_offline_at"),
    )
    op.create_index("idx_bookings_status", "bookings", ["status"])
    op.create_index("idx_bookings_driver", "bookings", ["driver_id"])
    op.create_index("idx_bookings_customer", "bookings", ["customer_id"])
    op.create_index("idx_bookings_last_driver", "bookings", ["last_driver_id"])


def downgrade() -> None:
    op.drop_table("bookings")
    op.drop_table("drivers")
    op.execute("DROP TYPE IF EXISTS booking_status")
    op.execute("DROP TYPE IF EXISTS driver_status")
