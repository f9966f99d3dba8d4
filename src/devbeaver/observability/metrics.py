"""Prometheus metrics for the DevBeaver backend.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for orchestrator outcomes and a histogram for lock waits.
"""

from __future__ import annotations

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "devbeaver_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

OPERATION_OUTCOMES = Counter(
    "devbeaver_operations_total",
    "Orchestrator operations by outcome (ok or error kind)",
    labelnames=("operation", "outcome"),
)

LOCK_WAIT = Histogram(
    "devbeaver_lock_wait_seconds",
    "Time spent waiting for a per-user resource lock",
    labelnames=("kind",),
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0),
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /users/{id}/images) to a coarse label.

    Keeps the first segment, plus the segment after a user id for /users routes.
    """
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    if segs[0] == "api" and len(segs) > 1:
        segs = segs[1:]
    if segs[0] == "users" and len(segs) > 2:
        return "/users/{user_id}/" + segs[2]
    return "/" + segs[0]


def record_outcome(operation: str, outcome: str) -> None:
    try:
        OPERATION_OUTCOMES.labels(operation=operation, outcome=outcome).inc()
    except Exception:
        # Metrics must never break an operation
        pass


def observe_lock_wait(kind: str, seconds: float) -> None:
    try:
        LOCK_WAIT.labels(kind=kind).observe(seconds)
    except Exception:
        pass


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith("/metrics") or request.url.path.startswith("/api/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except Exception:
            pass
        return response

    return middleware
