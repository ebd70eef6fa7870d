"""
Prometheus metrics for the WhatsApp inbox service.

This module provides:
- HTTP request counter (method, path, status)
- Webhook event counter (kind, result)
- Provider send counter (result)
- Request latency histogram (method, path)
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

# kind: message, status, change, delivery
# result: stored, duplicate, applied, unmatched, dropped, failed,
#         ignored, invalid_signature, parse_error
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook events by kind and processing result",
    labelnames=["kind", "result"]
)

# result: sent, failed
provider_send_total = Counter(
    "provider_send_total",
    "Outbound sends to the WhatsApp Cloud API",
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
        path: Route template when available, else the raw path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    http_requests_total.labels(
        method=method,
        path=path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=path
    ).observe(latency_seconds)


def record_webhook_event(kind: str, result: str) -> None:
    """
    Record the outcome of one webhook event.

    Args:
        kind: message, status, change, or delivery for whole-body outcomes
        result: stored, duplicate, applied, unmatched, dropped, failed,
            ignored, invalid_signature or parse_error
    """
    webhook_events_total.labels(kind=kind, result=result).inc()


def record_provider_send(result: str) -> None:
    """
    Record one outbound send to the Cloud API.

    Args:
        result: sent or failed
    """
    provider_send_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
