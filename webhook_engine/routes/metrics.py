"""
Prometheus metrics endpoint.

Exposes delivery engine metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics (operator API)
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Intake Metrics
# ============================================

webhook_events_accepted = Counter(
    'webhook_events_accepted_total',
    'Events accepted for delivery',
    ['event_type']
)

webhook_events_rejected = Counter(
    'webhook_events_rejected_total',
    'Events rejected before dispatch',
    ['reason']
)

# ============================================
# Delivery Metrics
# ============================================

webhook_attempts = Counter(
    'webhook_delivery_attempts_total',
    'Outbound delivery attempts by outcome',
    ['outcome']
)

webhook_attempt_duration = Histogram(
    'webhook_delivery_duration_seconds',
    'Outbound delivery latency in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

webhook_event_logs_finished = Counter(
    'webhook_event_logs_finished_total',
    'Event logs that reached a terminal state',
    ['status']
)

webhook_retries_scheduled = Counter(
    'webhook_retries_scheduled_total',
    'Retries scheduled after a failed attempt'
)

webhook_queue_depth = Gauge(
    'webhook_delivery_queue_depth',
    'Delivery jobs waiting for a worker'
)

# ============================================
# Health Metrics
# ============================================

webhooks_auto_disabled = Counter(
    'webhooks_auto_disabled_total',
    'Webhooks disabled by the circuit breaker'
)

webhook_history_dropped = Counter(
    'webhook_history_dropped_total',
    'Finished event logs dropped from the history buffer before reaching storage'
)

webhook_pending_evicted = Counter(
    'webhook_pending_logs_evicted_total',
    'Pending event logs dropped from the log ring before finishing'
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_event_accepted(event_type: str):
    webhook_events_accepted.labels(event_type=event_type).inc()


def track_event_rejected(reason: str):
    webhook_events_rejected.labels(reason=reason).inc()


def track_attempt(outcome: str, duration_ms: float):
    """Record one outbound HTTP call."""
    webhook_attempts.labels(outcome=outcome).inc()
    webhook_attempt_duration.observe(duration_ms / 1000)


def track_event_log_finished(status: str):
    webhook_event_logs_finished.labels(status=status).inc()


def track_retry_scheduled():
    webhook_retries_scheduled.inc()


def update_queue_depth(depth: int):
    webhook_queue_depth.set(depth)


def track_auto_disabled():
    webhooks_auto_disabled.inc()


def track_pending_evicted(count: int = 1):
    webhook_pending_evicted.inc(count)


def track_history_dropped(count: int):
    webhook_history_dropped.inc(count)


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
