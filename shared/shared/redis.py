import os
import redis.asyncio as redis

REDIS_URL = os.getenv("REDIS_URL")

_client: redis.Redis | None = None


def get_redis(url: str | None = None) -> redis.Redis | None:
    """
    Lazily built client; None when Redis is not configured (dev / tests).
    """
    global _client
    if _client is not None:
        return _client
    url = url or REDIS_URL
    if not url:
        return None
    _client = redis.from_url(url, decode_responses=True)
    return _client


async def close_redis():
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
