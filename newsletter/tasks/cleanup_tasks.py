"""
Idempotency maintenance tasks
"""
import time

from newsletter.celery_app import celery_app
from newsletter.config import settings
from newsletter.database import SessionLocal
from newsletter.obs.logging import get_logger, log_error, log_worker_task
from newsletter.obs.metrics import metrics
from newsletter.services.idempotency import sweep_expired_records

logger = get_logger(__name__)


@celery_app.task
def expire_idempotency_keys():
    """
    Delete idempotency records older than IDEMPOTENCY_TTL_SECONDS.
    """
    started = time.perf_counter()
    db = SessionLocal()
    try:
        deleted = sweep_expired_records(db, settings.IDEMPOTENCY_TTL_SECONDS)
    except Exception as e:
        metrics.record_sweep("failure")
        log_error(logger, e, service='worker', task_name="expire_idempotency_keys")
        return {"success": False, "error": type(e).__name__}
    finally:
        db.close()

    duration_ms = (time.perf_counter() - started) * 1000
    metrics.record_sweep("success", deleted)
    metrics.record_worker_task("expire_idempotency_keys", "success", duration_ms)
    log_worker_task(logger, "expire_idempotency_keys", "success", duration_ms, deleted_count=deleted)
    return {"success": True, "deleted_count": deleted}
