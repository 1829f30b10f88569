import json
import logging

import aio_pika

from shared.idempotency import claim, release
from shared.rabbitmq import connect, declare_exchange

from .container import Services
from .errors import DomainError

logger = logging.getLogger(__name__)

QUEUE_NAME = "reservation_service_processor_events"
ROUTING_KEYS = [
    "processor.payment_succeeded",
    "processor.payment_failed",
    "processor.transfer_paid",
    "processor.transfer_failed",
]


async def dispatch(services: Services, event_type: str, data: dict):
    if event_type in ("processor.payment_succeeded", "processor.payment_failed"):
        await services.ledger.record_payment_result(
            succeeded=event_type.endswith("succeeded"),
            booking_id=data.get("booking_id"),
            intent_id=data.get("intent_id"),
            error=data.get("error"),
        )
    elif event_type in ("processor.transfer_paid", "processor.transfer_failed"):
        await services.ledger.record_payout_result(
            completed=event_type.endswith("paid"),
            payout_id=data.get("payout_id"),
            transfer_id=data.get("transfer_id"),
            error=data.get("error"),
        )


async def handle_payload(services: Services, redis_client, payload: dict):
    event_id = payload.get("event_id")
    event_type = payload.get("event_type")
    data = payload.get("data") or {}

    if not event_id or event_type not in ROUTING_KEYS:
        return

    if redis_client is not None and not await claim(redis_client, event_id):
        logger.debug("duplicate event %s skipped", event_id)
        return

    try:
        await dispatch(services, event_type, data)
    except DomainError as e:
        logger.warning("event %s (%s) rejected: %s %s", event_id, event_type, e.kind, e.reason)
        if not e.retryable:
            return
        # transient: release the marker so the requeued copy is handled
        if redis_client is not None:
            await release(redis_client, event_id)
        raise
    except Exception:
        logger.exception("event %s (%s) failed", event_id, event_type)
        if redis_client is not None:
            await release(redis_client, event_id)
        raise


def make_handler(services: Services, redis_client):
    async def handle_message(message: aio_pika.abc.AbstractIncomingMessage):
        async with message.process(requeue=True):
            try:
                payload = json.loads(message.body.decode("utf-8"))
            except ValueError:
                logger.warning("dropping malformed message %s", message.message_id)
                return
            await handle_payload(services, redis_client, payload)

    return handle_message


async def start_consumer(services: Services, redis_client, url: str | None = None):
    conn = await connect(url)
    channel = await conn.channel()
    await channel.set_qos(prefetch_count=50)

    exchange = await declare_exchange(channel)
    queue = await channel.declare_queue(QUEUE_NAME, durable=True)
    for rk in ROUTING_KEYS:
        await queue.bind(exchange, routing_key=rk)

    await queue.consume(make_handler(services, redis_client))
    logger.info("processor event consumer started")
    return conn
