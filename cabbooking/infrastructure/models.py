"""
SQLAlchemy ORM models  (PostgreSQL in production, SQLite in tests).

Tables
------
* ``users``     -- customers, drivers and admins (profile owned by the auth service)
* ``drivers``   -- driver profile with completed-ride counter and rating
* ``payments``  -- one per booking, created first in the same transaction
* ``payment_orders`` -- every gateway order opened for a payment, with any
  capture on it that had to be refunded
* ``bookings``  -- one per trip request, references exactly one payment

Embedded records (locations, passenger, fare breakdown, cancellation,
rating) are JSON columns: they are read and written whole, never queried.

Indexes
-------
* **Unique** on ``bookings.reference``, ``bookings.payment_id``,
  ``payments.gateway_order_id`` and ``payment_orders.order_id`` (webhook
  look-up).
* **B-Tree** on ``status``, ``user_id`` + ``start_time`` and ``created_at``
  for the duplicate check, the daily limit and the reconciliation sweep.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from .database import Base, UTCDateTime, utcnow
from cabbooking.domain.enums import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    TripType,
    UserRole,
    VehicleClass,
)


class UserModel(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    phone = Column(String(10), unique=True, nullable=False)
    email = Column(String(255), nullable=True)
    role = Column(Enum(UserRole, name="user_role"), default=UserRole.CUSTOMER, nullable=False)
    fcm_token = Column(String(512), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)


class DriverModel(Base):
    __tablename__ = "drivers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    name = Column(String(120), nullable=False)
    phone = Column(String(10), nullable=False)
    rating = Column(Float, default=5.0, nullable=False)
    rating_count = Column(Integer, default=0, nullable=False)
    completed_rides = Column(Integer, default=0, nullable=False)
    fcm_token = Column(String(512), nullable=True)
    is_available = Column(Boolean, default=True)
    created_at = Column(UTCDateTime, default=utcnow)


class PaymentModel(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), default="INR", nullable=False)
    status = Column(
        Enum(PaymentStatus, name="payment_status"),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    method = Column(Enum(PaymentMethod, name="payment_method"), nullable=False)

    gateway_order_id = Column(String(64), unique=True, nullable=True)
    gateway_payment_id = Column(String(64), nullable=True)
    gateway_signature = Column(String(128), nullable=True)
    receipt_id = Column(String(40), nullable=True)
    paid_amount = Column(Integer, nullable=True)
    refund_id = Column(String(64), nullable=True)
    refunded_amount = Column(Integer, nullable=True)
    failure_reason = Column(String(255), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_payments_status", "status"),
        Index("idx_payments_user", "user_id"),
    )


class PaymentOrderModel(Base):
    """
    Every gateway order ever opened for a payment.  A discount re-opens the
    order at the new amount, but the earlier one stays payable in the
    customer's checkout, so captures are resolved through this table.
    """

    __tablename__ = "payment_orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False)
    order_id = Column(String(64), unique=True, nullable=False)
    amount = Column(Integer, nullable=False)

    # First capture seen on this order; claimed once.
    gateway_payment_id = Column(String(64), nullable=True)
    captured_amount = Column(Integer, nullable=True)

    # Money captured here that the booking could not use.
    settlement = Column(String(40), nullable=True)
    settlement_amount = Column(Integer, nullable=True)
    refund_id = Column(String(64), nullable=True)
    note = Column(String(255), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_payment_orders_payment", "payment_id"),
        Index("idx_payment_orders_settlement", "settlement"),
    )


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reference = Column(String(12), unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    trip_type = Column(Enum(TripType, name="trip_type"), nullable=False)
    vehicle_class = Column(Enum(VehicleClass, name="vehicle_class"), nullable=False)

    pickup = Column(JSON, nullable=False)
    drop = Column(JSON(none_as_null=True), nullable=True)
    via = Column(JSON, nullable=False, default=list)
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=True)

    passenger = Column(JSON, nullable=False)
    fare = Column(JSON, nullable=False)

    status = Column(
        Enum(BookingStatus, name="booking_status"),
        default=BookingStatus.PENDING,
        nullable=False,
    )
    payment_id = Column(Integer, ForeignKey("payments.id"), unique=True, nullable=False)
    driver_id = Column(Integer, ForeignKey("drivers.id"), nullable=True)

    cancellation = Column(JSON(none_as_null=True), nullable=True)
    rating = Column(JSON(none_as_null=True), nullable=True)
    actual_start = Column(UTCDateTime, nullable=True)
    actual_end = Column(UTCDateTime, nullable=True)

    search_id = Column(String(32), nullable=True)
    special_requests = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_bookings_status", "status"),
        Index("idx_bookings_user_start", "user_id", "start_time"),
        Index("idx_bookings_driver", "driver_id"),
        Index("idx_bookings_created", "created_at"),
    )
