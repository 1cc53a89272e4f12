"""
Prometheus metrics endpoint.

Exposes dispatch, delivery and webhook metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
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
# Dispatch Job Metrics
# ============================================

dispatch_jobs_queued = Counter(
    'dispatch_jobs_queued_total',
    'Total dispatch jobs queued'
)

dispatch_jobs_completed = Counter(
    'dispatch_jobs_completed_total',
    'Total dispatch jobs completed',
    ['outcome']  # success, partial
)

dispatch_jobs_failed = Counter(
    'dispatch_jobs_failed_total',
    'Total dispatch jobs that exhausted their attempts'
)

dispatch_jobs_retried = Counter(
    'dispatch_jobs_retried_total',
    'Total dispatch job retry attempts'
)

dispatch_queue_depth = Gauge(
    'dispatch_queue_depth',
    'Dispatch jobs per queue state',
    ['state']
)

# ============================================
# Target Delivery Metrics
# ============================================

targets_sent = Counter(
    'dispatch_targets_sent_total',
    'Total targets delivered',
    ['platform']
)

targets_failed = Counter(
    'dispatch_targets_failed_total',
    'Total targets that failed',
    ['platform', 'kind']  # permanent, transient
)

# ============================================
# Webhook Metrics
# ============================================

webhook_deliveries = Counter(
    'webhook_deliveries_total',
    'Total webhook deliveries by outcome',
    ['event', 'status']
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


def track_job_queued():
    dispatch_jobs_queued.inc()


def track_job_completed(success: bool):
    dispatch_jobs_completed.labels(outcome="success" if success else "partial").inc()


def track_job_failed():
    dispatch_jobs_failed.inc()


def track_job_retry():
    dispatch_jobs_retried.inc()


def update_queue_depth(counts: dict[str, int]):
    """Update the per-state gauge from a state -> count mapping."""
    for state, count in counts.items():
        dispatch_queue_depth.labels(state=state).set(count)


def track_target_sent(platform: str):
    targets_sent.labels(platform=platform).inc()


def track_target_failed(platform: str, kind: str):
    targets_failed.labels(platform=platform, kind=kind).inc()


def track_webhook_delivery(event: str, status: str):
    """Record a webhook delivery reaching a terminal status."""
    webhook_deliveries.labels(event=event, status=status).inc()


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
