"""
Prometheus metrics for the WhatsApp pipeline.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook outcome counter (result)
- Outbound send counter (status)
- AI failure counter (failure_type)
- Rate limiter wait histogram

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: created, duplicate, log_error, missing_payload, invalid_payload,
# missing_signature, invalid_signature, misconfigured
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# status: sent, failed
whatsapp_outbound_total = Counter(
    "whatsapp_outbound_total",
    "Outbound WhatsApp delivery outcomes",
    labelnames=["status"]
)

ai_failures_total = Counter(
    "ai_failures_total",
    "AI generation failures that fell back to a canned response",
    labelnames=["failure_type"]
)

rate_limit_wait_seconds = Histogram(
    "rate_limit_wait_seconds",
    "Time spent waiting for a sender rate limit token",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
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


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_outbound(status: str) -> None:
    whatsapp_outbound_total.labels(status=status).inc()


def record_ai_failure(failure_type: str) -> None:
    ai_failures_total.labels(failure_type=failure_type).inc()


def record_rate_limit_wait(wait_seconds: float) -> None:
    rate_limit_wait_seconds.observe(wait_seconds)


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
