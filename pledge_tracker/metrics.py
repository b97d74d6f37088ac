"""
Prometheus metrics for the pledge tracker.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook intake counter (result)
- Broadcast outcome counter (source, result)
- Poller tick counter (result)
- Connected real-time client gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook intake requests",
    labelnames=["result"]
)

# source: paddle_update, reset, reset_sms, poller
# result: sent, failed
broadcasts_total = Counter(
    "broadcasts_total",
    "Totals snapshots pushed to real-time clients",
    labelnames=["source", "result"]
)

# result: no_change, increase, error
poller_ticks_total = Counter(
    "poller_ticks_total",
    "Text pledge poller ticks by outcome",
    labelnames=["result"]
)

websocket_clients = Gauge(
    "websocket_clients",
    "Currently connected real-time clients"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template when known, else the raw request path
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


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_broadcast(source: str, result: str) -> None:
    broadcasts_total.labels(source=source, result=result).inc()


def record_poller_tick(result: str) -> None:
    poller_ticks_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
