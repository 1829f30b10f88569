import time


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Failure counter and trip timestamp kept in Redis, so every worker sees the same
    state for an upstream.

    CLOSED until failure_threshold failures land within failure_window_seconds, then
    OPEN for reset_timeout_seconds. After that the breaker is HALF_OPEN: calls go
    through, a success closes it and a failure trips it again.
    """

    def __init__(
        self,
        redis_client,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 15,
        failure_window_seconds: int = 60,
    ):
        self.redis = redis_client
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.failure_window_seconds = failure_window_seconds

    def _key(self, part: str) -> str:
        return f"cb:{self.name}:{part}"

    async def state(self) -> str:
        opened_at = await self.redis.get(self._key("opened_at"))
        if opened_at is None:
            return "CLOSED"
        if time.time() - float(opened_at) >= self.reset_timeout_seconds:
            return "HALF_OPEN"
        return "OPEN"

    async def allow_request(self) -> None:
        if await self.state() == "OPEN":
            raise CircuitBreakerOpen(f"Circuit breaker OPEN for {self.name}")

    async def record_success(self) -> None:
        await self.redis.delete(self._key("failures"), self._key("opened_at"))

    async def record_failure(self) -> None:
        if await self.state() == "HALF_OPEN":
            await self._trip()
            return

        failures = await self.redis.incr(self._key("failures"))
        if failures == 1:
            await self.redis.expire(self._key("failures"), self.failure_window_seconds)
        if failures >= self.failure_threshold:
            await self._trip()

    async def _trip(self) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._key("opened_at"), str(time.time()), ex=self.reset_timeout_seconds + 30)
        pipe.delete(self._key("failures"))
        await pipe.execute()
