"""Prometheus metrics for the quota gateway.

Metrics goals:
- low-cardinality labels (never subscriber ids or payload content)
- internal observability for outcomes, denials, ledger health and anomalies
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "qg_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "qg_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
OUTCOMES_TOTAL = Counter(
    "qg_outcomes_total",
    "Terminal request outcomes",
    ["state", "reason", "tier"],
)
UNITS_COMMITTED_TOTAL = Counter(
    "qg_units_committed_total",
    "Quota units debited from the ledger",
    ["tier"],
)
LEDGER_CALL_LATENCY_SECONDS = Histogram(
    "qg_ledger_call_latency_seconds",
    "Ledger call latency in seconds",
    ["operation", "result"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
COMMIT_ANOMALIES_TOTAL = Counter(
    "qg_commit_anomalies_total",
    "Content served without a confirmed ledger debit",
)


SINK_FAILURES_TOTAL = Counter(
    "qg_sink_failures_total",
    "Audit log or reconciliation journal writes that failed",
    ["sink"],
)


def record_outcome(state: str, reason: str, tier: str, cost: int = 0) -> None:
    OUTCOMES_TOTAL.labels(state=str(state), reason=str(reason or "none"), tier=str(tier or "unknown")).inc()
    if cost > 0:
        UNITS_COMMITTED_TOTAL.labels(tier=str(tier or "unknown")).inc(cost)


def observe_ledger_call(operation: str, result: str, elapsed_seconds: float) -> None:
    LEDGER_CALL_LATENCY_SECONDS.labels(operation=str(operation), result=str(result)).observe(max(0.0, elapsed_seconds))


def record_commit_anomaly() -> None:
    COMMIT_ANOMALIES_TOTAL.inc()


def record_sink_failure(sink: str) -> None:
    SINK_FAILURES_TOTAL.labels(sink=str(sink)).inc()


def instrument_fastapi(app: FastAPI, authorize: Optional[Callable[[Request], bool]] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("QG_METRICS_ENABLED", True):
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

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request) -> Response:
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
