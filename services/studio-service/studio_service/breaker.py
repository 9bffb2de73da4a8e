import time

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"

KEY_PREFIX = "studio:cb"


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Circuit breaker around an upstream provider, kept in Redis so every worker
    process sees the same state.

    CLOSED counts failures inside a sliding window; reaching the threshold
    opens it. OPEN rejects calls until the reset timeout has passed, then lets
    a single trial call through as HALF_OPEN. That call's outcome closes or
    re-opens it.

    Without a Redis client the breaker never opens.
    """

    def __init__(
        self,
        name: str,
        redis=None,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 15,
        failure_window_seconds: int = 60,
    ):
        self.name = name
        self.redis = redis
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.failure_window_seconds = failure_window_seconds

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    def _key(self, field: str) -> str:
        return f"{KEY_PREFIX}:{self.name}:{field}"

    async def state(self) -> str:
        if not self.enabled:
            return CLOSED
        return await self.redis.get(self._key("state")) or CLOSED

    async def allow_request(self) -> None:
        if await self.state() != OPEN:
            return

        opened_at = await self.redis.get(self._key("opened_at"))
        if not opened_at:
            await self.close()
            return

        if time.time() - float(opened_at) < self.reset_timeout_seconds:
            raise CircuitBreakerOpen(f"Circuit breaker OPEN for {self.name}")

        await self.redis.set(self._key("state"), HALF_OPEN)

    async def record_success(self) -> None:
        if self.enabled:
            await self.close()

    async def record_failure(self) -> None:
        if not self.enabled:
            return

        if await self.state() == HALF_OPEN:
            await self.open()
            return

        failures = await self.redis.incr(self._key("failures"))
        if failures == 1:
            await self.redis.expire(self._key("failures"), self.failure_window_seconds)
        if failures >= self.failure_threshold:
            await self.open()

    async def open(self) -> None:
        if not self.enabled:
            return
        ttl = self.reset_timeout_seconds + 30
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), OPEN)
        pipe.set(self._key("opened_at"), str(time.time()))
        pipe.expire(self._key("state"), ttl)
        pipe.expire(self._key("opened_at"), ttl)
        await pipe.execute()

    async def close(self) -> None:
        if not self.enabled:
            return
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), CLOSED)
        pipe.delete(self._key("failures"))
        pipe.delete(self._key("opened_at"))
        pipe.expire(self._key("state"), 3600)
        await pipe.execute()

    async def status(self) -> dict:
        failures = await self.redis.get(self._key("failures")) if self.enabled else None
        return {
            "name": self.name,
            "state": await self.state(),
            "failures": int(failures or 0),
            "enabled": self.enabled,
        }
