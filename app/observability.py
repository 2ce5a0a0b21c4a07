import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

logger = logging.getLogger("app.request")

REQUEST_ID_HEADER = "X-Request-ID"


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Request ids, per-route Prometheus metrics and one log line per request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
        finally:
            elapsed = time.perf_counter() - started
            labels = {"method": request.method, "path": _route_path(request), "status": str(status)}
            REQUEST_COUNT.labels(**labels).inc()
            REQUEST_LATENCY.labels(**labels).observe(elapsed)
            if status >= 500:
                REQUEST_ERRORS.labels(**labels).inc()
            logger.info(
                "request_completed method=%s path=%s status=%s duration_ms=%d request_id=%s",
                request.method,
                request.url.path,
                status,
                elapsed * 1000,
                request_id,
            )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
