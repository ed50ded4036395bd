"""
Newsletter delivery tasks
"""
import asyncio
import time

from newsletter.celery_app import celery_app
from newsletter.obs.logging import get_logger, log_error, log_worker_task
from newsletter.obs.metrics import metrics
from newsletter.services.delivery_worker import DeliveryWorker

logger = get_logger(__name__)

# Upper bound per beat tick so one run cannot monopolize a worker
MAX_TASKS_PER_RUN = 500


@celery_app.task
def drain_delivery_queue():
    """
    Send every due email in the delivery queue.
    """
    started = time.perf_counter()
    worker = DeliveryWorker()
    try:
        handled = asyncio.run(worker.drain(max_tasks=MAX_TASKS_PER_RUN))
    except Exception as e:
        metrics.record_worker_task("drain_delivery_queue", "failure")
        log_error(logger, e, service='worker', task_name="drain_delivery_queue")
        return {"success": False, "error": type(e).__name__}

    duration_ms = (time.perf_counter() - started) * 1000
    metrics.record_worker_task("drain_delivery_queue", "success", duration_ms)
    log_worker_task(logger, "drain_delivery_queue", "success", duration_ms)
    return {"success": True, "handled": handled}
