"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and context, and feeds the request metrics.
"""
import time
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from msgrelay.logging_config import get_logger
from msgrelay.routes.metrics import track_request

logger = get_logger(component="http")


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: tenant_id, route, method, duration_ms, status to every log.
    tenant_id is set on request.state by the auth dependency, so it is only
    known once the request has been handled.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        request_logger = logger.bind(
            route=request.url.path,
            method=request.method,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            request_logger.error(
                "request_failed",
                tenant_id=getattr(request.state, "tenant_id", None),
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            track_request(request.method, request.url.path, 500, duration_ms / 1000)
            raise

        duration_ms = (time.time() - start_time) * 1000

        request_logger.info(
            "request_completed",
            tenant_id=getattr(request.state, "tenant_id", None),
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2)
        )
        track_request(request.method, request.url.path, response.status_code, duration_ms / 1000)

        return response
