"""
Prometheus metrics for the inbox relay.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook event counter (kind, result)
- Outbound send counter (result)

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

# kind: delivery, change, message, status
# result: applied, skipped, ignored, no_account, invalid_signature
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook processing outcomes",
    labelnames=["kind", "result"]
)

# result: sent, invalid_argument, upstream_error
outbound_sends_total = Counter(
    "outbound_sends_total",
    "Outbound send outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
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
    # /api/status/{phone} would otherwise produce one label set per contact
    normalized_path = path.split("?")[0]
    if normalized_path.startswith("/api/status/"):
        normalized_path = "/api/status/{phone}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_event(kind: str, result: str, count: int = 1) -> None:
    if count:
        webhook_events_total.labels(kind=kind, result=result).inc(count)


def record_outbound_send(result: str) -> None:
    outbound_sends_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
