import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

logger = logging.getLogger(__name__)


def build_event(event_type: str, data: dict) -> dict:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }


def _default(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def to_json(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=_default)


class Notifier:
    """Domain event sink. Emit only after the unit of work has committed."""

    def __init__(self, publisher):
        self.publisher = publisher

    async def emit(self, event_type: str, booking_id: str | None, actor_id: str | None, payload: dict | None = None):
        data = {"booking_id": booking_id, "actor_id": actor_id}
        data.update(payload or {})
        event = build_event(event_type, data)
        logger.debug("emit %s %s", event_type, event["event_id"])
        await self.publisher.publish(event_type, to_json(event))
