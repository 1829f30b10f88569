import asyncio
import logging

from .config import MAINTENANCE_INTERVAL_SECONDS, PAYOUT_BATCH_EVERY_TICKS
from .container import Services
from .errors import DomainError

logger = logging.getLogger(__name__)


async def run_payout_batch(services: Services) -> list[str]:
    sent = []
    for payout_id in await services.ledger.due_payout_ids():
        try:
            await services.ledger.process_payout(payout_id)
            sent.append(payout_id)
        except DomainError as e:
            logger.warning("payout %s not sent: %s %s", payout_id, e.kind, e.reason)
    return sent


async def maintenance_tick(services: Services, tick: int = 0):
    expired = await services.bookings.expire_unpaid()
    completed = await services.bookings.complete_due()
    sent = []
    if PAYOUT_BATCH_EVERY_TICKS and tick % PAYOUT_BATCH_EVERY_TICKS == 0:
        sent = await run_payout_batch(services)
    if expired or completed or sent:
        logger.info("maintenance: %d expired, %d completed, %d payouts sent", len(expired), len(completed), len(sent))


async def maintenance_loop(services: Services, stop_event: asyncio.Event, interval: float = MAINTENANCE_INTERVAL_SECONDS):
    tick = 0
    while not stop_event.is_set():
        try:
            await maintenance_tick(services, tick)
        except DomainError as e:
            logger.warning("maintenance tick failed: %s %s", e.kind, e.reason)
        tick += 1
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
