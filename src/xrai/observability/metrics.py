"""Prometheus metrics for the XRAi assistant API.

An HTTP middleware records request latency per method/path/status; the turn
orchestrator reports turn outcomes and streamed deltas.
"""

from __future__ import annotations

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "xrai_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

TURNS_TOTAL = Counter(
    "xrai_turns_total",
    "Chat turns by outcome",
    labelnames=("outcome",),
)

# Turns stream for tens of seconds, hence the wider buckets
TURN_DURATION = Histogram(
    "xrai_turn_duration_seconds",
    "Wall time of a chat turn from submit to persisted reply",
    labelnames=("outcome",),
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0, 80.0, 160.0),
)

STREAM_DELTAS_TOTAL = Counter(
    "xrai_stream_deltas_total",
    "Text deltas received from AI providers",
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /conversations/{id}) to a coarse label."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def observe_turn(outcome: str, elapsed: float) -> None:
    TURNS_TOTAL.labels(outcome=outcome).inc()
    TURN_DURATION.labels(outcome=outcome).observe(elapsed)


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
