"""
Prometheus metrics for the newsletter service.
Provides metrics for HTTP requests, background workers, idempotency and delivery.
"""
from typing import Optional

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# HTTP Request Metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['route', 'method', 'status']
)

http_request_duration_ms = Histogram(
    'http_request_duration_ms',
    'HTTP request duration in milliseconds',
    ['route', 'method'],
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)
)

# Background Task Metrics
worker_task_total = Counter(
    'worker_task_total',
    'Total number of background task runs',
    ['name', 'status']
)

worker_task_duration_ms = Histogram(
    'worker_task_duration_ms',
    'Background task duration in milliseconds',
    ['name'],
    buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000)
)

# Idempotency Metrics
idempotency_requests_total = Counter(
    'idempotency_requests_total',
    'Admission outcomes for idempotent requests',
    ['outcome']  # first_writer, replayed, rejected
)

idempotency_records_expired_total = Counter(
    'idempotency_records_expired_total',
    'Total number of idempotency records deleted by the sweeper'
)

idempotency_sweeps_total = Counter(
    'idempotency_sweeps_total',
    'Total number of sweeper passes',
    ['status']
)

# Publishing / Delivery Metrics
newsletter_issues_published_total = Counter(
    'newsletter_issues_published_total',
    'Total number of newsletter issues published'
)

delivery_tasks_enqueued_total = Counter(
    'delivery_tasks_enqueued_total',
    'Total number of delivery tasks written to the outbox'
)

delivery_attempts_total = Counter(
    'delivery_attempts_total',
    'Total number of delivery attempts',
    ['status']  # delivered, retry_scheduled, dead_lettered
)


class MetricsCollector:
    """Centralized metrics collection and management."""

    def record_http_request(self, route: str, method: str, status_code: int, duration_ms: float):
        """Record HTTP request metrics."""
        http_requests_total.labels(
            route=route,
            method=method,
            status=str(status_code)
        ).inc()

        http_request_duration_ms.labels(
            route=route,
            method=method
        ).observe(duration_ms)

    def record_worker_task(self, task_name: str, status: str, duration_ms: Optional[float] = None):
        """Record background task metrics."""
        worker_task_total.labels(
            name=task_name,
            status=status
        ).inc()

        if duration_ms is not None:
            worker_task_duration_ms.labels(name=task_name).observe(duration_ms)

    def record_idempotency_outcome(self, outcome: str):
        idempotency_requests_total.labels(outcome=outcome).inc()

    def record_sweep(self, status: str, deleted_count: int = 0):
        idempotency_sweeps_total.labels(status=status).inc()
        if deleted_count:
            idempotency_records_expired_total.inc(deleted_count)

    def record_publish(self, delivery_tasks: int):
        newsletter_issues_published_total.inc()
        if delivery_tasks:
            delivery_tasks_enqueued_total.inc(delivery_tasks)

    def record_delivery_attempt(self, status: str):
        delivery_attempts_total.labels(status=status).inc()

    def get_metrics_response(self) -> Response:
        """Get Prometheus metrics response."""
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )


# Global metrics collector instance
metrics = MetricsCollector()


# Shortcut used by the middleware
def record_http_request(route: str, method: str, status_code: int, duration_ms: float):
    """Record HTTP request metrics."""
    metrics.record_http_request(route, method, status_code, duration_ms)
