"""
Prometheus metrics for the notification gate.

This module provides:
- HTTP request counter (method, path, status)
- Inbound webhook outcome counter (result)
- Dispatch outcome counter (outcome)
- Session event counter (event)
- Request latency and provider call latency histograms

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: created, duplicate, invalid_signature, validation_error, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total inbound webhook processing outcomes",
    labelnames=["result"]
)

# outcome: sent, skipped_no_session, skipped_disabled, provider_error,
# malformed_response, internal_error
notification_dispatch_total = Counter(
    "notification_dispatch_total",
    "Total outbound notification dispatch outcomes",
    labelnames=["outcome", "debug"]
)

# event: created, extended, deactivated, expired
whatsapp_session_events_total = Counter(
    "whatsapp_session_events_total",
    "Consent session lifecycle events",
    labelnames=["event"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

provider_request_latency_seconds = Histogram(
    "provider_request_latency_seconds",
    "Messaging provider call latency in seconds",
    labelnames=["operation"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]
    if normalized_path.startswith("/sessions/") and normalized_path != "/sessions/cleanup":
        if normalized_path.endswith("/ticket"):
            normalized_path = "/sessions/{phone}/ticket"
        else:
            normalized_path = "/sessions/{phone}"
    elif normalized_path.startswith("/providers/") and normalized_path != "/providers/test-connection":
        normalized_path = "/providers/{organization_id}/test"
    elif normalized_path.startswith("/organizations/"):
        normalized_path = "/organizations/{organization_id}/sessions"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    """
    Record an inbound webhook processing outcome.

    Args:
        result: Processing result - one of:
            - "created": New inbound message recorded, session opened or extended
            - "duplicate": Message already recorded (idempotent)
            - "invalid_signature": HMAC validation failed
            - "validation_error": Request body validation failed
            - "error": Storage failure
    """
    webhook_requests_total.labels(result=result).inc()


def record_dispatch_outcome(outcome: str, debug: bool = False) -> None:
    """Record the terminal outcome of one dispatch attempt."""
    notification_dispatch_total.labels(outcome=outcome, debug=str(debug).lower()).inc()


def record_session_event(event: str, count: int = 1) -> None:
    """Record consent session lifecycle events."""
    whatsapp_session_events_total.labels(event=event).inc(count)


def observe_provider_latency(operation: str, latency_seconds: float) -> None:
    """Record how long a provider call took (send or connection test)."""
    provider_request_latency_seconds.labels(operation=operation).observe(latency_seconds)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
