from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    text,
)

from .db import Base, utcnow

MONEY = Numeric(10, 2)

# Booking statuses
PAYMENT_PENDING = "payment-pending"
REQUEST_PENDING = "request-pending"
ACCEPTED = "accepted"
REJECTED = "rejected"
COMPLETED = "completed"
CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED, REJECTED})
# statuses whose interval occupies the space
BLOCKING_STATUSES = (PAYMENT_PENDING, REQUEST_PENDING, ACCEPTED)


class Space(Base):
    __tablename__ = "spaces"

    id = Column(String, primary_key=True)
    host_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)

    rate_per_hour = Column(MONEY, nullable=False)
    min_hours = Column(Integer, nullable=True)
    discount_hours = Column(Integer, nullable=True)
    time_zone = Column(String, nullable=False, default="UTC")

    status = Column(String, nullable=False, default="draft")  # draft/published
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Availability(Base):
    __tablename__ = "availabilities"

    id = Column(String, primary_key=True)
    space_id = Column(String, ForeignKey("spaces.id", ondelete="CASCADE"), nullable=False, index=True)

    day = Column(String, nullable=False)  # Mon..Sun or YYYY-MM-DD
    start_time = Column(String, nullable=False)
    end_time = Column(String, nullable=False)  # may be 24:00


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String, primary_key=True)
    client_id = Column(String, nullable=False, index=True)
    host_id = Column(String, nullable=False, index=True)
    space_id = Column(String, ForeignKey("spaces.id"), nullable=False, index=True)
    vehicle_id = Column(String, nullable=True)

    type = Column(String, nullable=False)  # normal/custom
    status = Column(String, nullable=False, index=True)
    canceled_by = Column(String, nullable=True)  # client/host/admin

    day = Column(String, nullable=False)
    start_date = Column(String, nullable=False)
    start_time = Column(String, nullable=False)
    end_date = Column(String, nullable=False)
    end_time = Column(String, nullable=False)

    gross_amount = Column(MONEY, nullable=False)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_bookings_space_dates", "space_id", "start_date", "end_date"),
    )


class BookingLog(Base):
    __tablename__ = "booking_logs"

    id = Column(String, primary_key=True)
    booking_id = Column(String, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, unique=True)

    client_checkin = Column(JSON, nullable=True)
    host_checkin = Column(JSON, nullable=True)
    client_checkout = Column(JSON, nullable=True)
    host_checkout = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class TimeChange(Base):
    __tablename__ = "time_changes"

    id = Column(String, primary_key=True)
    booking_id = Column(String, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)

    proposed_by = Column(String, nullable=False)
    proposer_role = Column(String, nullable=False)  # client/host

    old_day = Column(String, nullable=False)
    old_start_date = Column(String, nullable=False)
    old_start_time = Column(String, nullable=False)
    old_end_date = Column(String, nullable=False)
    old_end_time = Column(String, nullable=False)

    new_day = Column(String, nullable=False)
    new_start_date = Column(String, nullable=False)
    new_start_time = Column(String, nullable=False)
    new_end_date = Column(String, nullable=False)
    new_end_time = Column(String, nullable=False)

    status = Column(String, nullable=False, default="pending")  # pending/accepted/rejected
    responded_by = Column(String, nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index(
            "uq_time_changes_one_pending",
            "booking_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True)
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=False, unique=True)

    gross_amount = Column(MONEY, nullable=False)
    stripe_fee = Column(MONEY, nullable=False)
    platform_fee = Column(MONEY, nullable=False)
    tax_fee = Column(MONEY, nullable=False)
    total_amount = Column(MONEY, nullable=False)
    refund_amount = Column(MONEY, nullable=True)
    currency = Column(String, nullable=False)

    stripe_payment_intent_id = Column(String, nullable=True, index=True)
    stripe_client_secret = Column(String, nullable=True)

    status = Column(String, nullable=False, index=True)  # pending/succeeded/failed/cancelled/refunded
    attempts = Column(Integer, nullable=False, default=1)
    error_message = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class StripeAccount(Base):
    __tablename__ = "stripe_accounts"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, unique=True)
    account_id = Column(String, nullable=False)
    payouts_enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Payout(Base):
    __tablename__ = "payouts"

    id = Column(String, primary_key=True)
    stripe_account_id = Column(String, ForeignKey("stripe_accounts.id"), nullable=False, index=True)
    host_id = Column(String, nullable=False, index=True)

    gross_amount = Column(MONEY, nullable=False)
    stripe_fee = Column(MONEY, nullable=False)
    platform_fee = Column(MONEY, nullable=False)
    tax_fee = Column(MONEY, nullable=False)
    net_amount = Column(MONEY, nullable=False)
    currency = Column(String, nullable=False)

    status = Column(String, nullable=False, index=True)  # pending/processing/completed/failed
    attempts = Column(Integer, nullable=False, default=1)
    transfer_id = Column(String, nullable=True, index=True)
    error_message = Column(String, nullable=True)
    payout_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class PayoutItem(Base):
    __tablename__ = "payout_items"

    id = Column(String, primary_key=True)
    payout_id = Column(String, ForeignKey("payouts.id"), nullable=False, index=True)
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=False, unique=True)

    gross_amount = Column(MONEY, nullable=False)
    stripe_fee = Column(MONEY, nullable=False)
    platform_fee = Column(MONEY, nullable=False)
    tax_fee = Column(MONEY, nullable=False)
    net_amount = Column(MONEY, nullable=False)
