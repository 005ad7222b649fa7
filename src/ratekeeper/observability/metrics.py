"""Prometheus metrics for the access coordinator."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


# ── Dispatch metrics ─────────────────────────────────────────
DISPATCHES_TOTAL = Counter(
    "ratekeeper_dispatches_total",
    "Operations invoked against a provider",
    ["source", "provider", "outcome"],
)

OPERATION_DURATION = Histogram(
    "ratekeeper_operation_duration_seconds",
    "Operation duration in seconds",
    ["source", "provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

REJECTIONS_TOTAL = Counter(
    "ratekeeper_rejections_total",
    "Requests surfaced to the caller as errors",
    ["source", "code"],
)

RETRIES_TOTAL = Counter(
    "ratekeeper_retries_total",
    "Requests requeued after a failure",
    ["source", "kind"],
)

# ── Queue metrics ────────────────────────────────────────────
QUEUE_DEPTH = Gauge(
    "ratekeeper_queue_depth",
    "Requests waiting for dispatch",
    ["source"],
)

ACTIVE_REQUESTS = Gauge(
    "ratekeeper_active_requests",
    "Operations currently in flight",
    ["source"],
)

# ── Health metrics ───────────────────────────────────────────
CIRCUIT_STATE = Gauge(
    "ratekeeper_circuit_open",
    "1 while the source circuit is open or half-open",
    ["source"],
)

PROVIDER_UTILIZATION = Gauge(
    "ratekeeper_provider_utilization_ratio",
    "request_count / daily_limit per provider",
    ["source", "provider"],
)

PROVIDER_DEACTIVATIONS = Counter(
    "ratekeeper_provider_deactivations_total",
    "Providers taken out of rotation",
    ["source", "provider", "reason"],
)
