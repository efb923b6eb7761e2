"""Prometheus metric definitions shared by the API and the worker."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


mint_requests_total = Counter(
    "mint_requests_total",
    "Mint requests by ledger decision",
    ["service", "decision"],
)
mint_request_latency_seconds = Histogram(
    "mint_request_latency_seconds",
    "Mint request handling latency seconds",
    ["service"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
saga_transitions_total = Counter(
    "saga_transitions_total",
    "Mint intent state transitions",
    ["service", "from_state", "to_state"],
)
chain_calls_total = Counter(
    "chain_calls_total",
    "Calls made to the chain interface",
    ["service", "operation", "outcome"],
)
mint_e2e_seconds = Histogram(
    "mint_e2e_seconds",
    "Seconds from outbox event creation to terminal saga outcome",
    ["service", "terminal_state"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet terminal",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest non-terminal outbox event",
    ["service"],
)
retries_total = Counter("retries_total", "Outbox retry count", ["service", "error_class"])
outbox_terminal_total = Counter(
    "outbox_terminal_total",
    "Outbox events reaching a terminal status",
    ["service", "status"],
)
rate_limited_total = Counter("rate_limited_total", "Requests rejected by the rate limiter", ["service"])


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
