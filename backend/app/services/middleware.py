"""Request tracing middleware: request ids, timing headers and one access log line per call."""
import os
import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("lca-api.middleware")

REQUEST_ID_HEADER = "X-Request-ID"
PROCESS_TIME_HEADER = "X-Process-Time"
QUIET_PATHS = frozenset({"/health", "/metrics"})

# Uploads run the whole pipeline inline, so slow requests are worth a warning
SLOW_REQUEST_MS = float(os.getenv("SLOW_REQUEST_MS", "5000"))


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """
    Reuses the caller's X-Request-ID (or assigns one) and exposes it on
    ``request.state.request_id``.  Every response carries X-Request-ID and
    X-Process-Time (ms).  Requests slower than SLOW_REQUEST_MS log at WARNING.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        response: Response = await call_next(request)

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers[PROCESS_TIME_HEADER] = str(duration_ms)

        path = request.url.path
        if path in QUIET_PATHS:
            return response
        level = logging.WARNING if duration_ms >= SLOW_REQUEST_MS else logging.INFO
        logger.log(
            level,
            "%s %s -> %d", request.method, path, response.status_code,
            extra={
                "http_method": request.method,
                "http_path": path,
                "http_status": response.status_code,
                "request_id": request_id,
                "duration_ms": duration_ms,
            },
        )
        return response
