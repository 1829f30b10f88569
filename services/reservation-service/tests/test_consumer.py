import pytest

from reservation_service.consumer import handle_payload
from reservation_service.errors import Internal
from reservation_service.events import build_event

from conftest import booking_request, schedule_on


async def test_payment_event_is_applied_once(services, publisher, redis_client, space, client, monday):
    booking, payment = await services.bookings.create_booking(
        client, booking_request(space.id, schedule_on(monday, "10:00", "11:00"))
    )
    event = build_event("processor.payment_succeeded", {"intent_id": payment.stripe_payment_intent_id})

    await handle_payload(services, redis_client, event)
    await handle_payload(services, redis_client, event)

    assert (await services.bookings.get_booking(booking.id, client)).status == "accepted"
    assert publisher.event_types().count("payment.succeeded") == 1
    assert await redis_client.exists(f"processed_event:{event['event_id']}")


async def test_rejected_event_keeps_its_marker(services, redis_client):
    event = build_event("processor.transfer_paid", {"transfer_id": "tr_missing"})
    await handle_payload(services, redis_client, event)
    assert await redis_client.exists(f"processed_event:{event['event_id']}")


async def test_transient_failure_releases_marker(services, processor, redis_client, space, client, monday):
    booking, _ = await services.bookings.create_booking(
        client, booking_request(space.id, schedule_on(monday, "10:00", "11:00"))
    )
    event = build_event("processor.payment_succeeded", {"booking_id": booking.id})

    async def broken(*args, **kwargs):
        raise Internal("database unavailable")

    services.ledger.record_payment_result = broken
    with pytest.raises(Internal):
        await handle_payload(services, redis_client, event)
    assert not await redis_client.exists(f"processed_event:{event['event_id']}")


async def test_unrelated_events_are_ignored(services, redis_client):
    await handle_payload(services, redis_client, build_event("booking.created", {"booking_id": "b1"}))
    assert await redis_client.keys("processed_event:*") == []
