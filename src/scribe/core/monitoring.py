"""Prometheus metrics, Sentry integration, and provider call tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry with user-aware before_send callback
- track_provider_call(): Context manager for provider call metrics
- record_transition(): Counter for committed job transitions
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Job Metrics ──────────────────────────────────────────────────────────────

jobs_transitions_total = Counter(
    "jobs_transitions_total",
    "Committed job status transitions",
    ["from_status", "to_status"],
)

credits_debited_total = Counter(
    "credits_debited_total",
    "Credits debited for processing",
    ["provider"],
)

# ── Provider Metrics ─────────────────────────────────────────────────────────

provider_requests_total = Counter(
    "provider_requests_total",
    "Total transcription provider requests",
    ["provider", "model", "status"],
)

provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "Transcription provider request duration in seconds",
    ["provider", "model"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Uses the matched route template as the endpoint label so job ids do not
    explode label cardinality. Skips the /metrics endpoint itself.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Job / Provider Helpers ───────────────────────────────────────────────────


def record_transition(from_status: str, to_status: str) -> None:
    jobs_transitions_total.labels(from_status=from_status, to_status=to_status).inc()


def record_debit(provider: str, amount: int) -> None:
    if amount > 0:
        credits_debited_total.labels(provider=provider).inc(amount)


@asynccontextmanager
async def track_provider_call(
    provider: str,
    model: str,
) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks provider call metrics.

    Usage:
        async with track_provider_call("groq", model_id) as tracker:
            result = await backend.process(...)
            tracker["status"] = "rate_limited"  # optional override

    Records duration and a request count labelled success/error, unless
    the caller overrides ``tracker["status"]``.
    """
    tracker: dict[str, Any] = {"status": None}
    start_time = time.perf_counter()
    status = "success"

    try:
        yield tracker
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time

        provider_requests_total.labels(
            provider=provider,
            model=model,
            status=tracker.get("status") or status,
        ).inc()

        provider_request_duration_seconds.labels(
            provider=provider,
            model=model,
        ).observe(duration)


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Strip uploaded audio payloads from request bodies."""
        request = event.get("request")
        if isinstance(request, dict) and "data" in request:
            request["data"] = "[filtered]"
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
