from __future__ import annotations

import time

from fastapi import Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

from src.app.settings import settings

REQUEST_COUNT = Counter(
    "notebook_http_requests_total",
    "Total HTTP requests",
    ["method", "route", "status"],
)
REQUEST_LATENCY = Histogram(
    "notebook_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "route"],
)
INDEX_OPERATIONS = Counter(
    "notebook_vector_index_operations_total",
    "Vector index operations by backend",
    ["operation", "backend"],
)


def _route_label(request: Request) -> str:
    # Templated path keeps notebook ids out of label values.
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


async def metrics_middleware(request: Request, call_next):
    if not settings.metrics_enabled or request.url.path == "/metrics":
        return await call_next(request)
    start = time.monotonic()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        return response
    finally:
        duration = time.monotonic() - start
        route = _route_label(request)
        REQUEST_COUNT.labels(request.method, route, str(status)).inc()
        REQUEST_LATENCY.labels(request.method, route).observe(duration)


def record_index_operation(operation: str, backend: str) -> None:
    if settings.metrics_enabled:
        INDEX_OPERATIONS.labels(operation, backend).inc()


def metrics_response() -> Response:
    if not settings.metrics_enabled:
        return Response(status_code=404)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
