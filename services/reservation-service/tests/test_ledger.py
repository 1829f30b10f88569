from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from reservation_service.errors import Conflict, DependencyFailure, Forbidden, InvalidTransition, NotFound
from reservation_service.ledger import compute_fees, net_of, refund_amount_for
from reservation_service.models import Payment, PayoutItem

from conftest import FakeProcessor, booking_request, insert_booking, schedule_between, schedule_on


@pytest.mark.parametrize("gross", ["20.00", "0.01", "137.45", "999.99"])
def test_total_is_gross_plus_fees(gross):
    fees = compute_fees(Decimal(gross), FakeProcessor())
    assert fees["total_amount"] == fees["gross_amount"] + fees["stripe_fee"] + fees["platform_fee"] + fees["tax_fee"]
    assert fees["stripe_fee"] > 0


def test_processor_fee_is_charged_on_the_grossed_up_amount():
    fees = compute_fees(Decimal("20.00"), FakeProcessor())
    assert fees["stripe_fee"] == Decimal("0.90")
    assert fees["total_amount"] == Decimal("20.90")


def test_refund_keeps_penalty_only_for_client_cancellations():
    payment = Payment(gross_amount=Decimal("20.00"), total_amount=Decimal("20.90"))
    assert refund_amount_for(payment, "client") == Decimal("14.90")
    assert refund_amount_for(payment, "host") == Decimal("20.90")
    assert refund_amount_for(payment, "admin") == Decimal("20.90")


async def test_payment_result_is_idempotent(services, publisher, space, client, monday):
    booking, payment = await services.bookings.create_booking(
        client, booking_request(space.id, schedule_on(monday, "10:00", "11:00"))
    )
    first = await services.ledger.record_payment_result(True, intent_id=payment.stripe_payment_intent_id)
    again = await services.ledger.record_payment_result(True, intent_id=payment.stripe_payment_intent_id)

    assert first.status == again.status == "succeeded"
    assert (await services.bookings.get_booking(booking.id, client)).status == "accepted"
    assert publisher.event_types().count("payment.succeeded") == 1

    with pytest.raises(InvalidTransition):
        await services.ledger.record_payment_result(False, booking_id=booking.id, error="card_declined")


async def test_unknown_payment_reference(services):
    with pytest.raises(NotFound):
        await services.ledger.record_payment_result(True, intent_id="pi_missing")


async def test_failed_payment_can_be_retried(services, processor, space, client, other_client, monday):
    booking, _ = await services.bookings.create_booking(
        client, booking_request(space.id, schedule_on(monday, "10:00", "11:00"))
    )
    failed = await services.ledger.record_payment_result(False, booking_id=booking.id, error="card_declined")
    assert failed.status == "failed"
    assert (await services.bookings.get_booking(booking.id, client)).status == "payment-pending"

    with pytest.raises(Forbidden):
        await services.ledger.retry_payment(booking.id, other_client)

    retried = await services.ledger.retry_payment(booking.id, client)
    assert retried.status == "pending"
    assert retried.attempts == 2
    assert retried.error_message is None
    assert processor.calls[-1][1]["key"] == f"booking:{booking.id}:authorize:2"

    with pytest.raises(InvalidTransition):
        await services.ledger.retry_payment(booking.id, client)


async def _completed_paid_booking(services, session_factory, space, hours_ago: int, length: int = 1):
    start = (datetime.now(timezone.utc) - timedelta(hours=hours_ago)).replace(second=0, microsecond=0, tzinfo=None)
    booking = await insert_booking(
        session_factory, space, schedule_between(start, start + timedelta(hours=length)), "payment-pending"
    )
    fees = compute_fees(booking.gross_amount, services.processor)
    async with session_factory() as db, db.begin():
        db.add(Payment(
            id=f"pay-{booking.id}", booking_id=booking.id, currency="usd", status="pending",
            attempts=1, stripe_payment_intent_id=f"pi-{booking.id}", **fees,
        ))
    await services.ledger.record_payment_result(True, booking_id=booking.id)
    await services.bookings.complete_booking(booking.id)
    return booking


async def test_accrual_requires_a_payout_account(services, session_factory, space):
    booking = await _completed_paid_booking(services, session_factory, space, hours_ago=5)
    with pytest.raises(NotFound, match="payout account"):
        await services.ledger.accrue_booking(booking.id)


async def test_payout_lines_aggregate_per_host(services, session_factory, space, host):
    await services.ledger.register_stripe_account(host, "acct_1")
    first = await _completed_paid_booking(services, session_factory, space, hours_ago=10)
    second = await _completed_paid_booking(services, session_factory, space, hours_ago=5, length=2)

    # repeat accrual returns the same payout without a second line
    payout = await services.ledger.accrue_booking(first.id)
    payout, items = await services.ledger.get_payout(payout.id, host)

    assert {i.booking_id for i in items} == {first.id, second.id}
    for item in items:
        assert item.net_amount == net_of(item)
    assert payout.gross_amount == sum(i.gross_amount for i in items)
    assert payout.net_amount == sum(i.net_amount for i in items)
    assert payout.net_amount == payout.gross_amount - payout.stripe_fee - payout.platform_fee - payout.tax_fee

    async with session_factory() as db:
        lines = (await db.execute(select(PayoutItem).where(PayoutItem.booking_id == first.id))).scalars().all()
    assert len(lines) == 1


async def test_payout_lifecycle(services, processor, publisher, session_factory, space, host):
    await services.ledger.register_stripe_account(host, "acct_1")
    await _completed_paid_booking(services, session_factory, space, hours_ago=5)
    [payout] = await services.ledger.list_payouts(host)

    assert await services.ledger.due_payout_ids() == [payout.id]

    processing = await services.ledger.process_payout(payout.id)
    assert processing.status == "processing"
    assert processor.calls[-1][0] == "transfer"
    assert processor.calls[-1][1]["account_id"] == "acct_1"
    assert processor.calls[-1][1]["amount"] == Decimal("19.10")

    with pytest.raises(InvalidTransition):
        await services.ledger.process_payout(payout.id)

    failed = await services.ledger.record_payout_result(False, transfer_id=processing.transfer_id, error="account_closed")
    assert failed.status == "failed"

    retried = await services.ledger.retry_payout(payout.id)
    assert retried.status == "pending"
    assert retried.attempts == 2

    await services.ledger.process_payout(payout.id)
    assert processor.calls[-1][1]["key"] == f"payout:{payout.id}:transfer:2"

    done = await services.ledger.record_payout_result(True, payout_id=payout.id)
    assert done.status == "completed"
    assert done.payout_date is not None
    assert "payout.completed" in publisher.event_types()


async def test_small_payouts_wait_for_the_minimum(services, session_factory, space, host):
    await services.ledger.register_stripe_account(host, "acct_1")
    await _completed_paid_booking(services, session_factory, space, hours_ago=5, length=0.5)
    [payout] = await services.ledger.list_payouts(host)

    assert await services.ledger.due_payout_ids() == []
    with pytest.raises(Conflict):
        await services.ledger.process_payout(payout.id)


async def test_transfer_failure_keeps_payout_pending(services, processor, session_factory, space, host, admin):
    await services.ledger.register_stripe_account(host, "acct_1")
    await _completed_paid_booking(services, session_factory, space, hours_ago=5)
    [payout] = await services.ledger.list_payouts(admin)

    processor.fail_on.add("transfer")
    with pytest.raises(DependencyFailure):
        await services.ledger.process_payout(payout.id)

    reloaded, _ = await services.ledger.get_payout(payout.id, admin)
    assert reloaded.status == "pending"
    assert reloaded.transfer_id is None
