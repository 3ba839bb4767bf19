"""
Prometheus Metrics Middleware

Exposes:
  - http_requests_total           (counter)
  - http_request_duration_seconds (histogram)
  - http_requests_in_progress     (gauge)
  - app_info                      (info)
"""

import re
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)
REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "Request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5),
)
REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of in-progress requests",
    ["method"],
)
APP_INFO = Info("trustgate", "Application metadata")

_UUID_SEGMENT = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")
_NUMERIC_SEGMENT = re.compile(r"/\d+")


def _normalize_path(path: str) -> str:
    """Collapse UUID / numeric path segments to prevent cardinality explosion."""
    path = _UUID_SEGMENT.sub("{id}", path)
    return _NUMERIC_SEGMENT.sub("/{id}", path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        method = request.method
        path = _normalize_path(request.url.path)

        if path == "/metrics":
            return await call_next(request)

        REQUESTS_IN_PROGRESS.labels(method=method).inc()
        start = time.perf_counter()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            REQUEST_COUNT.labels(method=method, endpoint=path, status=status).inc()
            REQUEST_DURATION.labels(method=method, endpoint=path).observe(
                time.perf_counter() - start
            )
            REQUESTS_IN_PROGRESS.labels(method=method).dec()


def metrics_endpoint(request: Request) -> Response:
    """Expose /metrics for Prometheus scraping."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def set_app_info(version: str, env: str) -> None:
    APP_INFO.info({"version": version, "environment": env})
