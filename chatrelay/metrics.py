"""
Prometheus metrics for the relay.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook outcome counter (endpoint, result)
- Gateway submission and retry counters
- Status transition counter (status, outcome)
- Realtime connection gauge and broadcast counter

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

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: created, duplicate, applied, ignored, not_tracked, unrecognized,
# invalid_signature, validation_error, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["endpoint", "result"]
)

gateway_submissions_total = Counter(
    "gateway_submissions_total",
    "Gateway submission outcomes after retries",
    labelnames=["result"]
)

gateway_retries_total = Counter(
    "gateway_retries_total",
    "Gateway submission retries by error class",
    labelnames=["error_class"]
)

status_transitions_total = Counter(
    "status_transitions_total",
    "Status reports reconciled, by reported status and outcome",
    labelnames=["status", "outcome"]
)

realtime_connections = Gauge(
    "realtime_connections",
    "Currently connected realtime subscribers"
)

realtime_broadcasts_total = Counter(
    "realtime_broadcasts_total",
    "Realtime event deliveries by event and result",
    labelnames=["event", "result"]
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


def record_webhook_outcome(endpoint: str, result: str) -> None:
    """Record a webhook processing outcome for the incoming or status endpoint."""
    webhook_requests_total.labels(endpoint=endpoint, result=result).inc()


def record_gateway_submission(result: str) -> None:
    gateway_submissions_total.labels(result=result).inc()


def record_gateway_retry(error: Exception) -> None:
    error_class = getattr(error, "error_class", None)
    label = error_class.value if error_class is not None else type(error).__name__
    gateway_retries_total.labels(error_class=label).inc()


def record_status_transition(status: str, outcome: str) -> None:
    status_transitions_total.labels(status=status, outcome=outcome).inc()


def record_broadcast(event: str, result: str) -> None:
    realtime_broadcasts_total.labels(event=event, result=result).inc()


def set_realtime_connections(count: int) -> None:
    realtime_connections.set(count)


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
