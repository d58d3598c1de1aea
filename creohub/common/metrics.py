"""Prometheus metric definitions for gateway calls, initiations and webhooks."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


payment_initiations_total = Counter(
    "payment_initiations_total",
    "Payment initiations by provider and outcome",
    ["provider", "outcome"],
)
gateway_request_seconds = Histogram(
    "gateway_request_seconds",
    "Outbound provider API call duration seconds",
    ["provider", "operation"],
)
gateway_token_refresh_total = Counter(
    "gateway_token_refresh_total",
    "Access token exchanges performed against providers",
    ["provider"],
)
webhook_notifications_total = Counter(
    "webhook_notifications_total",
    "Provider notifications received by outcome",
    ["provider", "outcome"],
)
duplicate_notifications_skipped_total = Counter(
    "duplicate_notifications_skipped_total",
    "Provider notifications skipped as already processed",
    ["provider"],
)
order_status_transitions_total = Counter(
    "order_status_transitions_total",
    "Order payment status transitions applied",
    ["to_state"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["route", "method"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
