"""
Prometheus metrics for the chat client core.

This module provides:
- Auth state transition counter (state)
- Auth failure counter (error)
- Message send outcome counter (result) and send latency histogram
- Subscription delivery counter and active subscription gauge (kind)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# state: unauthenticated, challenge_pending, profile_missing, ready
auth_transitions_total = Counter(
    "auth_transitions_total",
    "Total auth state transitions",
    labelnames=["state"]
)

# error: validation, provider, invalid_code
auth_failures_total = Counter(
    "auth_failures_total",
    "Total failed auth steps",
    labelnames=["error"]
)

# result: ok, failed, rejected
messages_sent_total = Counter(
    "messages_sent_total",
    "Total message send outcomes",
    labelnames=["result"]
)

send_latency_seconds = Histogram(
    "send_latency_seconds",
    "Time from send to durable write in seconds",
)

# kind: directory, chat
subscription_deliveries_total = Counter(
    "subscription_deliveries_total",
    "Total snapshots processed by live subscriptions",
    labelnames=["kind"]
)

active_subscriptions = Gauge(
    "active_subscriptions",
    "Currently open live subscriptions",
    labelnames=["kind"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_auth_transition(state: str) -> None:
    """Record that the auth controller entered ``state``."""
    auth_transitions_total.labels(state=state).inc()


def record_auth_failure(error: str) -> None:
    """
    Record a failed auth step.

    Args:
        error: One of "validation", "provider", "invalid_code"
    """
    auth_failures_total.labels(error=error).inc()


def record_send_outcome(result: str, latency_seconds: float = None) -> None:
    """
    Record a message send outcome.

    Args:
        result: Send result - one of:
            - "ok": Message durably written
            - "failed": Store write failed
            - "rejected": Blank text, no write attempted
        latency_seconds: Write latency, recorded for "ok" only
    """
    messages_sent_total.labels(result=result).inc()
    if latency_seconds is not None:
        send_latency_seconds.observe(latency_seconds)


def record_delivery(kind: str) -> None:
    subscription_deliveries_total.labels(kind=kind).inc()


def subscription_opened(kind: str) -> None:
    active_subscriptions.labels(kind=kind).inc()


def subscription_closed(kind: str) -> None:
    active_subscriptions.labels(kind=kind).dec()


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
    """
    return CONTENT_TYPE_LATEST
