"""Prometheus metrics for the LSAT gateway.

Metrics goals:
- low-cardinality labels (reason codes and outcomes, never tokens or hashes)
- visibility into challenges, grants, denials and payment node failures
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


HTTP_REQUESTS_TOTAL = Counter(
    "lsat_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "lsat_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
CHALLENGES_TOTAL = Counter(
    "lsat_challenges_total",
    "Total payment challenges issued",
)
DECISIONS_TOTAL = Counter(
    "lsat_decisions_total",
    "Total authorization decisions",
    ["outcome", "reason"],
)
GATEWAY_ERRORS_TOTAL = Counter(
    "lsat_gateway_errors_total",
    "Total payment node failures",
    ["operation"],
)


def record_challenge() -> None:
    CHALLENGES_TOTAL.inc()


def record_decision(outcome: str, reason: str = "") -> None:
    DECISIONS_TOTAL.labels(outcome=str(outcome), reason=str(reason or "OK")).inc()


def record_gateway_error(operation: str) -> None:
    GATEWAY_ERRORS_TOTAL.labels(operation=str(operation)).inc()


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("LSAT_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
