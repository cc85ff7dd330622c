"""Prometheus metrics for the application."""

import re
import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from studio import __version__

# --- Metrics ---

APP_INFO = Info("app", "Imagine Studio application info")
APP_INFO.info({"version": __version__, "name": "imagine_studio"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60],
)


# --- Middleware ---

# Job and key ids are opaque strings; collapse them to keep label cardinality low
_ID_SEGMENT = re.compile(r"^(/api/v1/(?:videos|keys)/)([^/]+)(/.*)?$")
_STATIC_SEGMENTS = frozenset({"bulk", "check"})


def _normalize_path(path: str) -> str:
    """Replace job / key ids in paths with {id}."""
    match = _ID_SEGMENT.match(path)
    if not match or match.group(2) in _STATIC_SEGMENTS:
        return path
    return f"{match.group(1)}{{id}}{match.group(3) or ''}"


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
