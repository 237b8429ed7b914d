"""
Request logging middleware.

Tags each request with a request id (taken from X-Request-ID when the
caller sends one), binds it into the logging context, logs the outcome
with timing and records the request metrics.
"""
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from glassops.logging_config import bind_context, clear_context, get_logger
from glassops.routes.metrics import track_request

log = get_logger(component="http")

REQUEST_ID_HEADER = "X-Request-ID"


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs route, method, client, status and duration_ms for every request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        clear_context()
        bind_context(request_id=request_id)

        path = request.url.path
        request_log = log.bind(
            route=path,
            method=request.method,
            client=request.client.host if request.client else None,
        )
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed = time.perf_counter() - started
            track_request(request.method, path, 500, elapsed)
            request_log.error("request_failed", status_code=500, duration_ms=round(elapsed * 1000, 2), error=str(exc))
            raise
        finally:
            clear_context()

        elapsed = time.perf_counter() - started
        track_request(request.method, path, response.status_code, elapsed)
        request_log.info(
            "request_completed",
            request_id=request_id,
            status_code=response.status_code,
            duration_ms=round(elapsed * 1000, 2),
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
