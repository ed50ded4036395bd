"""
Celery configuration for out-of-process newsletter background tasks
"""
from celery import Celery

from newsletter.config import settings

# Create Celery instance
celery_app = Celery(
    "newsletter",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "newsletter.tasks.cleanup_tasks",
        "newsletter.tasks.delivery_tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task routing
    task_routes={
        "newsletter.tasks.cleanup_tasks.*": {"queue": "maintenance"},
        "newsletter.tasks.delivery_tasks.*": {"queue": "delivery"},
    },

    # Queue configuration
    task_default_queue="default",

    # Task execution
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,

    # Result backend
    result_expires=3600,  # 1 hour

    # Beat schedule for periodic tasks
    beat_schedule={
        "expire-idempotency-keys": {
            "task": "newsletter.tasks.cleanup_tasks.expire_idempotency_keys",
            "schedule": settings.IDEMPOTENCY_SWEEP_INTERVAL_SECONDS,
        },
        "drain-delivery-queue": {
            "task": "newsletter.tasks.delivery_tasks.drain_delivery_queue",
            "schedule": settings.DELIVERY_POLL_INTERVAL_SECONDS,
        },
    },
)
