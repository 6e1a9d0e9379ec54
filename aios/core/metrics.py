"""Prometheus metrics for the application."""

import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("aios", "AI provider routing service info")
APP_INFO.info({"version": "1.0.0", "name": "aios"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

DISPATCH_ATTEMPTS = Counter(
    "aios_dispatch_attempts_total",
    "Provider attempts made by the dispatcher",
    ["provider", "outcome"],  # outcome: success | failed | skipped
)

DISPATCH_FAILURES = Counter(
    "aios_dispatch_failures_total",
    "Dispatch calls where every provider in the plan was skipped or failed",
)

PROVIDER_LATENCY = Histogram(
    "aios_provider_latency_seconds",
    "Latency of successful provider calls",
    ["provider"],
    buckets=[0.25, 0.5, 1, 2.5, 5, 10, 20, 30, 60],
)

CREDENTIALS_EXHAUSTED = Counter(
    "aios_credentials_exhausted_total",
    "Credentials marked exhausted",
    ["provider"],
)


# --- Middleware ---

# Normalize dynamic path segments to reduce cardinality
_PATH_PREFIXES = ("/api/v1/ai/providers/",)


def _normalize_path(path: str) -> str:
    """Collapse everything after the provider id to avoid key suffixes in labels."""
    for prefix in _PATH_PREFIXES:
        if path.startswith(prefix):
            rest = path[len(prefix) :]
            parts = rest.split("/", 2)
            if len(parts) > 1:
                return f"{prefix}{parts[0]}/{parts[1]}"
    return path


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
