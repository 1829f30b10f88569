from datetime import datetime
from decimal import Decimal
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ---- spaces ----

class CreateSpaceRequest(BaseModel):
    name: str
    rate_per_hour: Decimal
    min_hours: int | None = None
    discount_hours: int | None = None
    time_zone: str = "UTC"
    status: str = "draft"


class SpaceStatusRequest(BaseModel):
    status: str


class SpaceResponse(ORMModel):
    id: str
    host_id: str
    name: str
    rate_per_hour: Decimal
    min_hours: int | None = None
    discount_hours: int | None = None
    time_zone: str
    status: str


class AvailabilityRequest(BaseModel):
    day: str
    start_time: str
    end_time: str
    similar_days: List[str] = Field(default_factory=list)


class AvailabilityResponse(ORMModel):
    id: str
    space_id: str
    day: str
    start_time: str
    end_time: str


# ---- schedules ----

class ScheduleFields(BaseModel):
    day: str
    start_date: str
    start_time: str
    end_date: str
    end_time: str


class QuoteResponse(BaseModel):
    available: bool
    reason: str | None = None
    gross_amount: Decimal | None = None


# ---- ledger ----

class PaymentResponse(ORMModel):
    id: str
    booking_id: str
    gross_amount: Decimal
    stripe_fee: Decimal
    platform_fee: Decimal
    tax_fee: Decimal
    total_amount: Decimal
    refund_amount: Decimal | None = None
    currency: str
    status: str
    attempts: int
    stripe_payment_intent_id: str | None = None
    stripe_client_secret: str | None = None
    error_message: str | None = None


class PaymentResultRequest(BaseModel):
    succeeded: bool
    booking_id: str | None = None
    intent_id: str | None = None
    error: str | None = None


class StripeAccountRequest(BaseModel):
    account_id: str
    payouts_enabled: bool = True


class StripeAccountResponse(ORMModel):
    id: str
    user_id: str
    account_id: str
    payouts_enabled: bool


class PayoutItemResponse(ORMModel):
    booking_id: str
    gross_amount: Decimal
    stripe_fee: Decimal
    platform_fee: Decimal
    tax_fee: Decimal
    net_amount: Decimal


class PayoutResponse(ORMModel):
    id: str
    host_id: str
    gross_amount: Decimal
    stripe_fee: Decimal
    platform_fee: Decimal
    tax_fee: Decimal
    net_amount: Decimal
    currency: str
    status: str
    attempts: int
    transfer_id: str | None = None
    error_message: str | None = None
    payout_date: datetime | None = None
    items: List[PayoutItemResponse] = Field(default_factory=list)


class PayoutResultRequest(BaseModel):
    completed: bool
    error: str | None = None


# ---- bookings ----

class CreateBookingRequest(ScheduleFields):
    space_id: str
    type: str = "normal"
    vehicle_id: str | None = None
    gross_amount: Decimal | None = None


class RespondRequest(BaseModel):
    accept: bool


class BookingResponse(ORMModel):
    id: str
    client_id: str
    host_id: str
    space_id: str
    vehicle_id: str | None = None
    type: str
    status: str
    canceled_by: str | None = None
    day: str
    start_date: str
    start_time: str
    end_date: str
    end_time: str
    gross_amount: Decimal
    payment: PaymentResponse | None = None


class PresenceRequest(BaseModel):
    location: str | None = None


class BookingLogResponse(ORMModel):
    booking_id: str
    client_checkin: dict | None = None
    host_checkin: dict | None = None
    client_checkout: dict | None = None
    host_checkout: dict | None = None


# ---- time changes ----

class TimeChangeRequest(ScheduleFields):
    pass


class TimeChangeResponse(ORMModel):
    id: str
    booking_id: str
    proposed_by: str
    proposer_role: str
    status: str
    old_day: str
    old_start_date: str
    old_start_time: str
    old_end_date: str
    old_end_time: str
    new_day: str
    new_start_date: str
    new_start_time: str
    new_end_date: str
    new_end_time: str
    responded_by: str | None = None
    responded_at: datetime | None = None
