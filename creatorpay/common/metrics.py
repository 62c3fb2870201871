"""Prometheus metric definitions for the monetization service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


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
webhook_events_total = Counter(
    "webhook_events_total",
    "Authenticated webhook deliveries by outcome",
    ["service", "provider", "outcome"],
)
webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected by signature verification",
    ["service", "provider"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Webhook events that hit the idempotency gate",
    ["service", "provider"],
)
orphan_events_total = Counter(
    "orphan_events_total",
    "Webhook events with no matching transaction or payout",
    ["service", "provider"],
)
charges_created_total = Counter(
    "charges_created_total",
    "Pending transactions created by the charge initiator",
    ["service", "provider", "kind", "routing"],
)
payouts_total = Counter("payouts_total", "Payout status changes", ["service", "status"])
provider_call_seconds = Histogram(
    "provider_call_seconds",
    "Outbound payment provider call latency",
    ["service", "provider", "operation"],
)
negative_balance_total = Counter(
    "negative_balance_total",
    "Rejected balance deltas that would have gone negative",
    ["service"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
