"""Prometheus metrics for the provider broker."""

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

# ── Provider metrics ─────────────────────────────────────────
PROVIDER_ATTEMPTS = Counter(
    "provider_attempts_total",
    "Provider attempts by outcome",
    ["capability", "provider", "outcome"],  # success / failure / skipped
)

PROVIDER_LATENCY = Histogram(
    "provider_latency_seconds",
    "Latency of a provider attempt, retries included",
    ["capability", "provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

FAILOVERS_TOTAL = Counter(
    "provider_failovers_total",
    "Operations that succeeded on a provider other than the first candidate",
    ["capability"],
)

OPERATIONS_TOTAL = Counter(
    "broker_operations_total",
    "Orchestrated operations by final outcome",
    ["capability", "action", "outcome"],  # success / exhausted / timeout / resource / cached
)

RATE_LIMIT_REJECTIONS = Counter(
    "rate_limit_rejections_total",
    "Admissions refused by the rate limiter",
    ["key"],
)

# ── Resource gauges ──────────────────────────────────────────
POOL_CONNECTIONS = Gauge(
    "pool_connections",
    "Pooled connections per service key",
    ["service_key", "state"],  # active / idle
)

ACTIVE_SESSIONS = Gauge(
    "active_sessions",
    "Active sessions per service type",
    ["service_type"],
)
