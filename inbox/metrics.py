"""
Prometheus metrics for the inbox service.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook request and per-event outcome counters (provider, result)
- AI auto-reply outcome counter
- Media relay, outbound reply and handoff notification counters

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

# result: ok, ignored, invalid_signature, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook deliveries by outcome",
    labelnames=["provider", "result"]
)

# result: message, duplicate, status, read, dropped, error
webhook_events_total = Counter(
    "webhook_events_total",
    "Total normalized webhook events by outcome",
    labelnames=["provider", "result"]
)

# outcome: replied, fallback, handoff, skipped
ai_replies_total = Counter(
    "ai_replies_total",
    "AI auto-reply outcomes",
    labelnames=["outcome"]
)

media_relay_total = Counter(
    "media_relay_total",
    "Media relay attempts by result",
    labelnames=["result"]
)

# result: sent, failed, unsupported
outbound_messages_total = Counter(
    "outbound_messages_total",
    "Replies delivered to provider channels by result",
    labelnames=["provider", "result"]
)

handoff_notifications_total = Counter(
    "handoff_notifications_total",
    "Human handoff notifications sent",
    labelnames=["source"]
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
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_outcome(provider: str, result: str) -> None:
    """Record the outcome of a whole webhook delivery."""
    webhook_requests_total.labels(provider=provider, result=result).inc()


def record_webhook_event(provider: str, result: str) -> None:
    """Record the outcome of a single normalized event inside a delivery."""
    webhook_events_total.labels(provider=provider, result=result).inc()


def record_ai_reply(outcome: str) -> None:
    ai_replies_total.labels(outcome=outcome).inc()


def record_media_relay(result: str) -> None:
    media_relay_total.labels(result=result).inc()


def record_outbound_message(provider: str, result: str) -> None:
    outbound_messages_total.labels(provider=provider, result=result).inc()


def record_handoff_notification(source: str) -> None:
    handoff_notifications_total.labels(source=source).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
