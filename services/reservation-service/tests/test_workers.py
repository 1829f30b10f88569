import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from reservation_service.ledger import compute_fees
from reservation_service.models import Payment
from reservation_service.workers import maintenance_loop, maintenance_tick, run_payout_batch

from conftest import insert_booking, schedule_between, schedule_on


def _past(hours: int) -> datetime:
    return (datetime.now(timezone.utc) - timedelta(hours=hours)).replace(second=0, microsecond=0, tzinfo=None)


async def _with_payment(session_factory, booking, status: str, processor):
    async with session_factory() as db, db.begin():
        db.add(Payment(
            id=f"pay-{booking.id}", booking_id=booking.id, currency="usd", status=status, attempts=1,
            stripe_payment_intent_id=f"pi-{booking.id}", **compute_fees(booking.gross_amount, processor),
        ))


async def test_stale_payment_pending_bookings_expire(services, processor, session_factory, space, monday):
    stale = await insert_booking(
        session_factory, space, schedule_on(monday, "10:00", "11:00"), "payment-pending",
        created_at=datetime.now(timezone.utc) - timedelta(hours=2),
    )
    fresh = await insert_booking(session_factory, space, schedule_on(monday, "12:00", "13:00"), "payment-pending")
    await _with_payment(session_factory, stale, "pending", processor)

    expired = await services.bookings.expire_unpaid()

    assert expired == [stale.id]
    async with session_factory() as db:
        assert (await db.get(type(stale), stale.id)).status == "cancelled"
        assert (await db.get(type(fresh), fresh.id)).status == "payment-pending"
        assert (await db.get(Payment, f"pay-{stale.id}")).status == "cancelled"
    assert processor.ops() == ["cancel"]


async def test_started_unpaid_accepted_booking_is_cancelled(services, processor, session_factory, space):
    start = _past(1)
    unpaid = await insert_booking(session_factory, space, schedule_between(start, start + timedelta(hours=3)), "accepted")
    await _with_payment(session_factory, unpaid, "failed", processor)

    assert await services.bookings.expire_unpaid() == [unpaid.id]


async def test_ended_paid_bookings_complete_and_pay_out(services, processor, session_factory, space, host):
    await services.ledger.register_stripe_account(host, "acct_1")
    start = _past(4)
    booking = await insert_booking(session_factory, space, schedule_between(start, start + timedelta(hours=1)), "accepted")
    await _with_payment(session_factory, booking, "succeeded", processor)
    start2 = _past(1)
    running = await insert_booking(session_factory, space, schedule_between(start2, start2 + timedelta(hours=3)), "accepted")
    await _with_payment(session_factory, running, "succeeded", processor)

    await maintenance_tick(services, tick=0)

    async with session_factory() as db:
        assert (await db.get(type(booking), booking.id)).status == "completed"
        assert (await db.get(type(running), running.id)).status == "accepted"
    [payout] = await services.ledger.list_payouts(host)
    assert payout.status == "processing"
    assert payout.net_amount == Decimal("19.10")
    assert processor.ops() == ["transfer"]
    assert await run_payout_batch(services) == []


async def test_loop_stops_on_event(services):
    stop = asyncio.Event()
    task = asyncio.create_task(maintenance_loop(services, stop, interval=0.01))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)
    assert task.done()
