"""
Prometheus metrics endpoint.

Exposes HTTP and pipeline metrics for monitoring.
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
# Business Metrics - Transactions
# ============================================

transactions_submitted = Counter(
    'transactions_submitted_total',
    'Total transactions received from intake',
    ['source_type']
)

transactions_succeeded = Counter(
    'transactions_succeeded_total',
    'Total transactions that created an external job'
)

transactions_failed = Counter(
    'transactions_failed_total',
    'Total failed processing runs',
    ['error_code']
)

# ============================================
# Retry Queue Metrics
# ============================================

retries_scheduled = Counter(
    'retries_scheduled_total',
    'Total retry attempts scheduled',
    ['operation']
)

dead_letters = Counter(
    'dead_letters_total',
    'Total retry entries moved to dead-letter',
    ['operation']
)

retry_queue_depth = Gauge(
    'retry_queue_depth',
    'Current number of active (not dead-lettered) retry entries'
)

# ============================================
# Dispatch Metrics
# ============================================

subcontractor_notifications = Counter(
    'subcontractor_notifications_total',
    'Dispatch messages sent to subcontractors',
    ['outcome']
)

job_assignments = Counter(
    'job_assignments_total',
    'Job requests assigned to a subcontractor'
)

capacity_rejections = Counter(
    'capacity_rejections_total',
    'Slot reservations refused because the day was full'
)

# ============================================
# Rate Limiting Metrics
# ============================================

rate_limit_exceeded = Counter(
    'rate_limit_exceeded_total',
    'Total requests blocked by rate limiting',
    ['scope']
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


def track_transaction_submitted(source_type: str):
    """Record a transaction arriving from intake."""
    transactions_submitted.labels(source_type=source_type).inc()


def track_transaction_succeeded():
    """Record a successful processing run."""
    transactions_succeeded.inc()


def track_transaction_failed(error_code: str):
    """Record a failed processing run."""
    transactions_failed.labels(error_code=error_code).inc()


def track_retry_scheduled(operation: str):
    """Record a retry being scheduled."""
    retries_scheduled.labels(operation=operation).inc()


def track_dead_letter(operation: str):
    """Record a retry entry being dead-lettered."""
    dead_letters.labels(operation=operation).inc()


def update_retry_queue_depth(depth: int):
    """Update active retry entry count."""
    retry_queue_depth.set(depth)


def track_subcontractor_notification(outcome: str):
    """Record a dispatch message send (sent, skipped, failed)."""
    subcontractor_notifications.labels(outcome=outcome).inc()


def track_job_assigned():
    """Record a job request assignment."""
    job_assignments.inc()


def track_capacity_rejection():
    """Record a refused slot reservation."""
    capacity_rejections.inc()


def track_rate_limit_exceeded(scope: str):
    """Record a rate limit block."""
    rate_limit_exceeded.labels(scope=scope).inc()


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
