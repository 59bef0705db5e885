from __future__ import annotations

"""Prometheus metrics for the InFlow chat gateway.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for cache outcomes, upstream failures and envelope parsing.
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "inflow_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

CACHE_LOOKUPS = Counter(
    "inflow_cache_lookups_total",
    "Response cache lookups by outcome",
    labelnames=("status",),
)

UPSTREAM_FAILURES = Counter(
    "inflow_upstream_failures_total",
    "Failed calls to the completion API",
    labelnames=("kind",),
)

ENVELOPE_PARSES = Counter(
    "inflow_envelope_parse_total",
    "Envelope parse outcomes for completed responses",
    labelnames=("outcome",),
)

GATEWAY_REJECTIONS = Counter(
    "inflow_gateway_rejections_total",
    "Chat requests rejected before streaming",
    labelnames=("status",),
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /projects/{id}) to a coarse label."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 2 and segs[1] == "api":
        return "/api/" + segs[2]
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def _safe_inc(counter: Counter, label: str) -> None:
    try:
        counter.labels(label).inc()
    except Exception:
        pass


def record_cache_lookup(hit: bool) -> None:
    _safe_inc(CACHE_LOOKUPS, "hit" if hit else "miss")


def record_upstream_failure(kind: str) -> None:
    _safe_inc(UPSTREAM_FAILURES, kind)


def record_envelope_parse(ok: bool) -> None:
    _safe_inc(ENVELOPE_PARSES, "ok" if ok else "failed")


def record_rejection(status: int) -> None:
    _safe_inc(GATEWAY_REJECTIONS, str(status))


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith(("/metrics", "/api/metrics")):
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
