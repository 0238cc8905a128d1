"""Prometheus metrics for the Toolbox control plane.

Uses the default global registry so prometheus_client's built-in
process/platform collectors are exported alongside application metrics.

Usage::

    from toolbox_control.observability.metrics import PROVISION_TOTAL

    PROVISION_TOTAL.labels(outcome="success").inc()
"""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# ---------------------------------------------------------------------------
# HTTP request metrics
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "http_server_requests_total",
    "Total HTTP requests by method, path pattern, and status code.",
    labelnames=["method", "path", "status"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_server_request_duration_seconds",
    "HTTP request latency in seconds.",
    labelnames=["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_FLIGHT = Gauge(
    "http_server_requests_in_flight",
    "Number of HTTP requests currently being processed.",
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Environment lifecycle
# ---------------------------------------------------------------------------

PROVISION_TOTAL = Counter(
    "toolbox_provision_total",
    "Provision attempts by outcome.",
    labelnames=["outcome"],
    registry=REGISTRY,
)

PROVIDER_POLL_ATTEMPTS = Histogram(
    "toolbox_provider_poll_attempts",
    "Provider polls needed before an instance became active.",
    buckets=(1, 2, 3, 5, 10, 15, 20, 30),
    registry=REGISTRY,
)

DEPROVISION_TOTAL = Counter(
    "toolbox_deprovision_total",
    "Deprovision attempts by outcome.",
    labelnames=["outcome"],
    registry=REGISTRY,
)

REFRESH_TOTAL = Counter(
    "toolbox_refresh_total",
    "Status refreshes by outcome.",
    labelnames=["outcome"],
    registry=REGISTRY,
)

ORPHANED_RESOURCES_TOTAL = Counter(
    "toolbox_orphaned_resources_total",
    "Resources left behind for manual cleanup.",
    labelnames=["kind"],
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Tool instance commands
# ---------------------------------------------------------------------------

INSTANCE_COMMANDS_TOTAL = Counter(
    "toolbox_instance_commands_total",
    "Agent commands issued for tool instances.",
    labelnames=["command", "outcome"],
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Generate Prometheus exposition text and content-type header."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
