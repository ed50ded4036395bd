"""
Background expiry of idempotency records.

Rows are deleted purely by age, pending or completed, so a pending row left
behind by a crashed writer cannot block its key forever.
"""
import asyncio
import time
from typing import Optional

from sqlalchemy.orm import sessionmaker

from newsletter.config import settings
from newsletter.database import SessionLocal
from newsletter.obs.logging import get_logger, log_error, log_worker_task
from newsletter.obs.metrics import metrics
from newsletter.obs.tracing import add_span_attributes, add_span_error, worker_span
from newsletter.services.idempotency import sweep_expired_records

logger = get_logger(__name__)

TASK_NAME = "idempotency_sweeper"


class ExpirySweeper:
    """Long-lived task deleting idempotency rows older than the TTL."""

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        ttl_seconds: Optional[int] = None,
        interval_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.ttl_seconds = settings.IDEMPOTENCY_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.interval_seconds = (
            settings.IDEMPOTENCY_SWEEP_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        self.running = False
        self._task: Optional[asyncio.Task] = None

    def sweep_once(self) -> int:
        """Run a single sweep pass and return the number of deleted rows."""
        db = self.session_factory()
        try:
            return sweep_expired_records(db, self.ttl_seconds)
        finally:
            db.close()

    async def start(self):
        """Start the sweep loop on the running event loop"""
        if self.running:
            logger.warning("Idempotency sweeper is already running")
            return

        self.running = True
        logger.info(
            "Starting idempotency sweeper",
            extra={'task_name': TASK_NAME},
        )
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self):
        """Stop the sweep loop and wait for it to exit"""
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Stopped idempotency sweeper", extra={'task_name': TASK_NAME})

    async def _run_loop(self):
        while self.running:
            started = time.perf_counter()
            with worker_span(TASK_NAME, **{"idempotency.ttl_seconds": self.ttl_seconds}):
                try:
                    deleted = await asyncio.to_thread(self.sweep_once)
                except Exception as e:
                    # A failed sweep only delays reclamation until the next pass
                    add_span_error(e)
                    metrics.record_sweep("failure")
                    metrics.record_worker_task(TASK_NAME, "failure")
                    log_error(logger, e, service='worker', task_name=TASK_NAME)
                else:
                    duration_ms = (time.perf_counter() - started) * 1000
                    add_span_attributes({"idempotency.deleted": deleted})
                    metrics.record_sweep("success", deleted)
                    metrics.record_worker_task(TASK_NAME, "success", duration_ms)
                    if deleted:
                        log_worker_task(logger, TASK_NAME, "success", duration_ms, deleted_count=deleted)

            await asyncio.sleep(self.interval_seconds)
