IDEMPOTENCY_TTL = 86400


def processed_key(event_id: str) -> str:
    return f"processed_event:{event_id}"


async def claim(redis_client, event_id: str, ttl: int = IDEMPOTENCY_TTL) -> bool:
    """
    Atomically marks the event as taken. False means another consumer already has it.
    """
    return bool(await redis_client.set(processed_key(event_id), "1", nx=True, ex=ttl))


async def release(redis_client, event_id: str):
    await redis_client.delete(processed_key(event_id))
