"""Prometheus metrics for the shield.

Metrics goals:
- low-cardinality labels (recommendation, detector id, vote result)
- observability for decisions, detector health, standby and storage

Metric objects are process-global (prometheus_client's default registry);
several Shield instances in one process share them.
"""
from __future__ import annotations

import os
import time
from typing import Any

from fastapi import Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "shield_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "shield_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
DECISIONS_TOTAL = Counter(
    "shield_decisions_total",
    "Total shield decisions",
    ["recommendation"],
)
DETECTOR_VOTES_TOTAL = Counter(
    "shield_detector_votes_total",
    "Detector ballots by result (triggered / clear / abstained)",
    ["detector", "result"],
)
STANDBY_ACTIVE = Gauge(
    "shield_standby_active",
    "1 if the shield is halted in STANDBY",
)
ADAPTIVE_THRESHOLD = Gauge(
    "shield_adaptive_threshold",
    "Current adaptive trigger threshold",
)
PERSISTENCE_FAILURES_TOTAL = Counter(
    "shield_persistence_failures_total",
    "Total persistence read/write failures",
    ["operation"],
)


def record_decision(recommendation: str) -> None:
    DECISIONS_TOTAL.labels(recommendation=str(recommendation)).inc()


def record_detector_vote(detector_id: str, vote: Any) -> None:
    if getattr(vote, "abstained", False):
        result = "abstained"
    elif getattr(vote, "triggered", False):
        result = "triggered"
    else:
        result = "clear"
    DETECTOR_VOTES_TOTAL.labels(detector=str(detector_id), result=result).inc()


def set_standby_active(active: bool) -> None:
    STANDBY_ACTIVE.set(1.0 if active else 0.0)


def set_adaptive_threshold(value: float) -> None:
    ADAPTIVE_THRESHOLD.set(float(value))


def record_persistence_failure(operation: str) -> None:
    PERSISTENCE_FAILURES_TOTAL.labels(operation=str(operation)).inc()


def instrument_fastapi(app) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    Set SHIELD_METRICS_ENABLED=0 to skip instrumentation.
    """
    from fastapi.responses import Response

    if not _env_bool("SHIELD_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
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

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
