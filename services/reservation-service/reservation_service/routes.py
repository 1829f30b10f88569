from typing import List

from fastapi import APIRouter, Depends, Request, status

from .container import Services
from .schemas import (
    AvailabilityRequest,
    AvailabilityResponse,
    BookingLogResponse,
    BookingResponse,
    CreateBookingRequest,
    CreateSpaceRequest,
    PaymentResponse,
    PaymentResultRequest,
    PayoutItemResponse,
    PayoutResponse,
    PayoutResultRequest,
    PresenceRequest,
    QuoteResponse,
    RespondRequest,
    ScheduleFields,
    SpaceResponse,
    SpaceStatusRequest,
    StripeAccountRequest,
    StripeAccountResponse,
    TimeChangeRequest,
    TimeChangeResponse,
)
from .security import Actor, get_actor, require_role

router = APIRouter()

PROCESSOR_ROLES = ["admin", "processor"]


def get_services(request: Request) -> Services:
    return request.app.state.services


def booking_response(booking, payment=None) -> BookingResponse:
    out = BookingResponse.model_validate(booking)
    if payment is not None:
        out.payment = PaymentResponse.model_validate(payment)
    return out


def payout_response(payout, items=()) -> PayoutResponse:
    out = PayoutResponse.model_validate(payout)
    out.items = [PayoutItemResponse.model_validate(i) for i in items]
    return out


# -------- spaces --------

@router.post("/spaces", response_model=SpaceResponse, status_code=status.HTTP_201_CREATED)
async def create_space(data: CreateSpaceRequest, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    return await services.spaces.create_space(actor, data)


@router.get("/spaces/{space_id}", response_model=SpaceResponse)
async def get_space(space_id: str, services: Services = Depends(get_services)):
    return await services.spaces.get_space(space_id)


@router.patch("/spaces/{space_id}/status", response_model=SpaceResponse)
async def set_space_status(
    space_id: str,
    data: SpaceStatusRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    return await services.spaces.set_status(space_id, actor, data.status)


@router.delete("/spaces/{space_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_space(space_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    await services.spaces.delete_space(space_id, actor)


@router.post("/spaces/{space_id}/availability", response_model=List[AvailabilityResponse], status_code=status.HTTP_201_CREATED)
async def add_availability(
    space_id: str,
    data: AvailabilityRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    return await services.spaces.add_availability(
        space_id, actor, data.day, data.start_time, data.end_time, data.similar_days
    )


@router.get("/spaces/{space_id}/availability", response_model=List[AvailabilityResponse])
async def list_availability(space_id: str, services: Services = Depends(get_services)):
    return await services.spaces.list_availability(space_id)


@router.delete("/spaces/{space_id}/availability/{availability_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_availability(
    space_id: str,
    availability_id: str,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    await services.spaces.remove_availability(space_id, availability_id, actor)


@router.post("/spaces/{space_id}/slots/check", response_model=QuoteResponse)
async def check_slot(space_id: str, data: ScheduleFields, services: Services = Depends(get_services)):
    return await services.spaces.quote(space_id, data.model_dump())


# -------- bookings --------

@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(data: CreateBookingRequest, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    booking, payment = await services.bookings.create_booking(actor, data)
    return booking_response(booking, payment)


@router.get("/bookings", response_model=List[BookingResponse])
async def list_bookings(
    role: str = "client",
    status: str | None = None,
    space_id: str | None = None,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    bookings = await services.bookings.list_bookings(actor, role, status, space_id)
    return [booking_response(b) for b in bookings]


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    return booking_response(await services.bookings.get_booking(booking_id, actor))


@router.post("/bookings/{booking_id}/respond", response_model=BookingResponse)
async def respond_to_booking(
    booking_id: str,
    data: RespondRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    return booking_response(await services.bookings.respond_to_booking(booking_id, actor, data.accept))


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(booking_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    return booking_response(await services.bookings.cancel_booking(booking_id, actor))


@router.post("/bookings/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(booking_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    return booking_response(await services.bookings.complete_booking(booking_id, actor))


@router.post("/bookings/{booking_id}/checkin", response_model=BookingLogResponse)
async def check_in(
    booking_id: str,
    data: PresenceRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    return await services.bookings.check_in(booking_id, actor, data.location)


@router.post("/bookings/{booking_id}/checkout", response_model=BookingLogResponse)
async def check_out(
    booking_id: str,
    data: PresenceRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    return await services.bookings.check_out(booking_id, actor, data.location)


@router.get("/bookings/{booking_id}/log", response_model=BookingLogResponse | None)
async def get_booking_log(booking_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    return await services.bookings.get_log(booking_id, actor)


# -------- time changes --------

@router.post("/bookings/{booking_id}/time-changes", response_model=TimeChangeResponse, status_code=status.HTTP_201_CREATED)
async def propose_time_change(
    booking_id: str,
    data: TimeChangeRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    return await services.time_changes.propose_change(booking_id, actor, data)


@router.get("/bookings/{booking_id}/time-changes", response_model=List[TimeChangeResponse])
async def list_time_changes(booking_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    return await services.time_changes.list_time_changes(booking_id, actor)


@router.patch("/time-changes/{time_change_id}", response_model=TimeChangeResponse)
async def update_time_change(
    time_change_id: str,
    data: TimeChangeRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    return await services.time_changes.update_change(time_change_id, actor, data)


@router.post("/time-changes/{time_change_id}/respond", response_model=TimeChangeResponse)
async def respond_to_time_change(
    time_change_id: str,
    data: RespondRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    return await services.time_changes.respond_to_change(time_change_id, actor, data.accept)


# -------- payments --------

@router.get("/bookings/{booking_id}/payment", response_model=PaymentResponse)
async def get_payment(booking_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    return await services.ledger.get_payment(booking_id, actor)


@router.post("/bookings/{booking_id}/payment/retry", response_model=PaymentResponse)
async def retry_payment(booking_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    return await services.ledger.retry_payment(booking_id, actor)


@router.post("/payments/results", response_model=PaymentResponse)
async def record_payment_result(
    data: PaymentResultRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    require_role(actor, PROCESSOR_ROLES)
    return await services.ledger.record_payment_result(
        data.succeeded, booking_id=data.booking_id, intent_id=data.intent_id, error=data.error
    )


# -------- payouts --------

@router.post("/stripe-accounts", response_model=StripeAccountResponse)
async def register_stripe_account(
    data: StripeAccountRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    return await services.ledger.register_stripe_account(actor, data.account_id, data.payouts_enabled)


@router.post("/bookings/{booking_id}/accrue", response_model=PayoutResponse)
async def accrue_booking(booking_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    require_role(actor, ["admin"])
    return payout_response(await services.ledger.accrue_booking(booking_id))


@router.get("/payouts", response_model=List[PayoutResponse])
async def list_payouts(
    status: str | None = None,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    return [payout_response(p) for p in await services.ledger.list_payouts(actor, status)]


@router.get("/payouts/{payout_id}", response_model=PayoutResponse)
async def get_payout(payout_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    payout, items = await services.ledger.get_payout(payout_id, actor)
    return payout_response(payout, items)


@router.post("/payouts/{payout_id}/process", response_model=PayoutResponse)
async def process_payout(payout_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    require_role(actor, ["admin"])
    return payout_response(await services.ledger.process_payout(payout_id))


@router.post("/payouts/{payout_id}/results", response_model=PayoutResponse)
async def record_payout_result(
    payout_id: str,
    data: PayoutResultRequest,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
):
    require_role(actor, PROCESSOR_ROLES)
    return payout_response(
        await services.ledger.record_payout_result(data.completed, payout_id=payout_id, error=data.error)
    )


@router.post("/payouts/{payout_id}/retry", response_model=PayoutResponse)
async def retry_payout(payout_id: str, actor: Actor = Depends(get_actor), services: Services = Depends(get_services)):
    require_role(actor, ["admin"])
    return payout_response(await services.ledger.retry_payout(payout_id))
