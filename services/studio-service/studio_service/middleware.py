import json
import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

logger = logging.getLogger("studio_service.access")

UNLIMITED_PATHS = ("/health", "/docs", "/openapi.json")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        try:
            response: Response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(json.dumps({
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": 500,
                "duration_ms": round(duration_ms, 2),
            }))
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Id"] = request_id

        logger.info(json.dumps({
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration_ms, 2),
            "session_id": request.headers.get("X-Session-Id"),
            "user_sub": getattr(request.state, "user_sub", None),
        }))
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Fixed-window per-minute limit per client IP, kept in Redis.

    Provider callbacks are never limited. Without Redis every request passes.
    """

    def __init__(self, app, redis=None, max_per_minute: int = 120):
        super().__init__(app)
        self.redis = redis
        self.max_per_minute = max_per_minute

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if self.redis is None or path in UNLIMITED_PATHS or path.startswith(("/docs/", "/webhooks/")):
            return await call_next(request)

        ip = request.client.host if request.client else "unknown"
        epoch_minute = int(time.time() // 60)
        key = f"rl:ip:{ip}:{epoch_minute}"

        count = await self.redis.incr(key)
        if count == 1:
            await self.redis.expire(key, 70)

        if count > self.max_per_minute:
            return JSONResponse(status_code=429, content={"detail": "Too many requests"})

        return await call_next(request)
