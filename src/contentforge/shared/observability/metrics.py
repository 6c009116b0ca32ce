"""Prometheus metrics for the content-generation service."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


# ── HTTP metrics ─────────────────────────────────────────────
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Backend call metrics ─────────────────────────────────────
BACKEND_CALLS_TOTAL = Counter(
    "backend_calls_total",
    "Generative backend call attempts",
    ["outcome", "streaming"],
)

BACKEND_CALL_LATENCY = Histogram(
    "backend_call_latency_seconds",
    "Generative backend call latency (time to full response or first chunk)",
    ["streaming"],
    buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# ── Key pool metrics ─────────────────────────────────────────
CREDENTIALS_ALIVE = Gauge(
    "key_pool_credentials_alive",
    "Credentials not permanently disabled",
)

CREDENTIAL_PENALTIES_TOTAL = Counter(
    "key_pool_penalties_total",
    "Penalties applied to credentials",
    ["kind"],  # throttle / quota / revoked
)
