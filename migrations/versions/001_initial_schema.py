"""Initial schema: users, drivers, payments and bookings.

Revision ID: 001
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

BOOKING_STATUSES = (
    "PENDING", "CONFIRMED", "ASSIGNED", "IN_PROGRESS",
    "COMPLETED", "CANCELLED", "REJECTED",
)
PAYMENT_STATUSES = (
    "PENDING", "COMPLETED", "ADVANCE_PAID", "FAILED",
    "REFUNDED", "PARTIALLY_REFUNDED",
)
PAYMENT_METHODS = ("CASH", "CARD", "UPI", "WALLET", "NET_BANKING")
TRIP_TYPES = (
    "ONE_WAY", "ROUND_TRIP", "LOCAL_2_20", "LOCAL_4_40", "LOCAL_8_80",
    "LOCAL_12_120", "AIRPORT_PICKUP", "AIRPORT_DROP",
)
VEHICLE_CLASSES = (
    "HATCHBACK", "SEDAN", "SUV", "SUV_INNOVA", "PREMIUM_SEDAN", "TRAVELLER_12_1",
)


def _timestamps():
    return [
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
    ]


def upgrade() -> None:
    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("phone", sa.String(10), unique=True, nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column(
            "role",
            sa.Enum("CUSTOMER", "DRIVER", "ADMIN", name="user_role"),
            nullable=False,
            server_default="CUSTOMER",
        ),
        sa.Column("fcm_token", sa.String(512), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer, sa.ForeignKey("users.id"),
            unique=True, nullable=False,
        ),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("phone", sa.String(10), nullable=False),
        sa.Column("rating", sa.Float, nullable=False, server_default="5.0"),
        sa.Column("rating_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completed_rides", sa.Integer, nullable=False, server_default="0"),
        sa.Column("fcm_token", sa.String(512), nullable=True),
        sa.Column("is_available", sa.Boolean, server_default=sa.true()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # ── payments ──────────────────────────────────────────────────────
    op.create_table(
        "payments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="INR"),
        sa.Column(
            "status",
            sa.Enum(*PAYMENT_STATUSES, name="payment_status"),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column(
            "method", sa.Enum(*PAYMENT_METHODS, name="payment_method"), nullable=False
        ),
        sa.Column("gateway_order_id", sa.String(64), unique=True, nullable=True),
        sa.Column("gateway_payment_id", sa.String(64), nullable=True),
        sa.Column("gateway_signature", sa.String(128), nullable=True),
        sa.Column("receipt_id", sa.String(40), nullable=True),
        sa.Column("paid_amount", sa.Integer, nullable=True),
        sa.Column("refund_id", sa.String(64), nullable=True),
        sa.Column("refunded_amount", sa.Integer, nullable=True),
        sa.Column("failure_reason", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_payments_status", "payments", ["status"])
    op.create_index("idx_payments_user", "payments", ["user_id"])

    # ── bookings ──────────────────────────────────────────────────────
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("reference", sa.String(12), unique=True, nullable=False),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("trip_type", sa.Enum(*TRIP_TYPES, name="trip_type"), nullable=False),
        sa.Column(
            "vehicle_class",
            sa.Enum(*VEHICLE_CLASSES, name="vehicle_class"),
            nullable=False,
        ),
        sa.Column("pickup", sa.JSON, nullable=False),
        sa.Column("drop", sa.JSON, nullable=True),
        sa.Column("via", sa.JSON, nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("passenger", sa.JSON, nullable=False),
        sa.Column("fare", sa.JSON, nullable=False),
        sa.Column(
            "status",
            sa.Enum(*BOOKING_STATUSES, name="booking_status"),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column(
            "payment_id", sa.Integer, sa.ForeignKey("payments.id"),
            unique=True, nullable=False,
        ),
        sa.Column("driver_id", sa.Integer, sa.ForeignKey("drivers.id"), nullable=True),
        sa.Column("cancellation", sa.JSON, nullable=True),
        sa.Column("rating", sa.JSON, nullable=True),
        sa.Column("actual_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("search_id", sa.String(32), nullable=True),
        sa.Column("special_requests", sa.JSON, nullable=False),
        sa.Column("notes", sa.Text, nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_bookings_status", "bookings", ["status"])
    op.create_index("idx_bookings_user_start", "bookings", ["user_id", "start_time"])
    op.create_index("idx_bookings_driver", "bookings", ["driver_id"])
    op.create_index("idx_bookings_created", "bookings", ["created_at"])


def downgrade() -> None:
    op.drop_table("bookings")
    op.drop_table("payments")
    op.drop_table("drivers")
    op.drop_table("users")
    for enum_name in (
        "booking_status", "vehicle_class", "trip_type",
        "payment_method", "payment_status", "user_role",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
