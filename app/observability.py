"""Per-request correlation id, access logging and HTTP metrics."""
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

logger = logging.getLogger(__name__)

# Probe and scrape traffic is not logged; it is still counted.
_QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


def _route_template(request: Request) -> str:
    # Label by route template so metric cardinality stays bounded.
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            response.headers["x-request-id"] = request_id
            return response
        finally:
            elapsed = time.perf_counter() - started
            route = _route_template(request)
            labels = (request.method, route, str(status))
            REQUEST_COUNT.labels(*labels).inc()
            REQUEST_LATENCY.labels(*labels).observe(elapsed)
            if status >= 500:
                REQUEST_ERRORS.labels(*labels).inc()
            if request.url.path not in _QUIET_PATHS:
                level = logging.ERROR if status >= 500 else logging.INFO
                logger.log(
                    level,
                    "%s %s -> %s",
                    request.method,
                    request.url.path,
                    status,
                    extra={
                        "request_id": request_id,
                        "path": route,
                        "method": request.method,
                        "status": status,
                        "duration_ms": round(elapsed * 1000.0, 2),
                    },
                )
