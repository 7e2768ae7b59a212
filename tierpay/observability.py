"""Request correlation ids, request logs and HTTP metrics."""

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from tierpay.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"


def _request_path(request: Request) -> str:
    # route templates keep metric label cardinality bounded
    route = request.scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    return request.url.path


def _observe(request: Request, status_code: int, started: float) -> dict:
    duration = time.monotonic() - started
    path = _request_path(request)
    labels = (request.method, path, str(status_code))
    REQUEST_COUNT.labels(*labels).inc()
    REQUEST_LATENCY.labels(*labels).observe(duration)
    if status_code >= 500:
        REQUEST_ERRORS.labels(*labels).inc()
    return {
        "request_id": request.state.request_id,
        "path": path,
        "method": request.method,
        "status": status_code,
        "duration_ms": round(duration * 1000.0, 2),
    }


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_failed", extra=_observe(request, 500, started))
            raise
        logger.info("request_completed", extra=_observe(request, response.status_code, started))
        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        return response
