import time
import logging
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Long-lived responses are logged when they open, not timed
STREAMING_PATHS = ("/api/v1/arena/stream",)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with its status and duration."""

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        route = f"{request.method} {request.url.path}"

        if request.url.path in STREAMING_PATHS:
            logger.info(f"{route} stream opened ({response.status_code})")
            return response

        elapsed = time.perf_counter() - started
        logger.info(f"{route} -> {response.status_code} in {elapsed * 1000:.1f}ms")
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        return response
