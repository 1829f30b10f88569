import json
import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("reservation_service.access")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One JSON access line per request, tagged with X-Request-Id."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-Id"] = request_id
            return response
        finally:
            logger.log(logging.INFO if status_code < 500 else logging.ERROR, json.dumps({
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": status_code,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                "user_sub": getattr(request.state, "user_sub", None),
            }))
