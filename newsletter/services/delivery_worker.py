"""
Delivery worker draining the issue_delivery_queue outbox.

Each iteration claims at most one due row with FOR UPDATE SKIP LOCKED, so any
number of workers can run side by side without sending the same email twice.
A row is only deleted once the email API accepted the message; failures are
rescheduled with exponential backoff and dead-lettered after the last attempt.
"""
import asyncio
import enum
import time
from datetime import datetime, timedelta
from typing import Optional, Tuple

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from newsletter.config import settings
from newsletter.database import SessionLocal
from newsletter.models.issue_delivery import IssueDeliveryFailure, IssueDeliveryTask
from newsletter.models.newsletter_issue import NewsletterIssue
from newsletter.obs.logging import get_logger, log_error
from newsletter.obs.metrics import metrics
from newsletter.obs.tracing import add_span_attributes, add_span_error, worker_span
from newsletter.services.email_client import EmailClient, EmailDeliveryError
from newsletter.utils.clock import utcnow

logger = get_logger(__name__)

TASK_NAME = "issue_delivery"

_email_adapter = TypeAdapter(EmailStr)


class ExecutionOutcome(str, enum.Enum):
    TASK_COMPLETED = "task_completed"
    EMPTY_QUEUE = "empty_queue"


def dequeue_task(session: Session, now: Optional[datetime] = None) -> Optional[IssueDeliveryTask]:
    """Claim one due delivery row inside the session's transaction."""
    statement = (
        select(IssueDeliveryTask)
        .where(IssueDeliveryTask.execute_after <= (now or utcnow()))
        .order_by(IssueDeliveryTask.execute_after)
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    return session.execute(statement).scalar_one_or_none()


class DeliveryWorker:
    """Long-lived task sending queued newsletter emails."""

    def __init__(
        self,
        email_client: Optional[EmailClient] = None,
        session_factory: sessionmaker = SessionLocal,
        poll_interval_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_base_delay_seconds: Optional[float] = None,
    ):
        self.email_client = email_client or EmailClient()
        self.session_factory = session_factory
        self.poll_interval_seconds = (
            settings.DELIVERY_POLL_INTERVAL_SECONDS if poll_interval_seconds is None else poll_interval_seconds
        )
        self.max_attempts = settings.DELIVERY_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.retry_base_delay_seconds = (
            settings.DELIVERY_RETRY_BASE_DELAY_SECONDS
            if retry_base_delay_seconds is None
            else retry_base_delay_seconds
        )
        self.running = False
        self._task: Optional[asyncio.Task] = None

    def retry_delay(self, attempts: int) -> timedelta:
        """Backoff before the next attempt, given the attempts made so far."""
        return timedelta(seconds=self.retry_base_delay_seconds * 2 ** (attempts - 1))

    async def try_execute_task(self) -> ExecutionOutcome:
        """Process at most one due delivery row.

        Database work runs on a worker thread; only the email API call is
        awaited on the event loop. The claimed row stays locked until the
        outcome is committed.
        """
        session = self.session_factory()
        try:
            task, message = await asyncio.to_thread(self._claim, session)
            if task is None:
                return ExecutionOutcome.EMPTY_QUEUE
            if message is None:
                return ExecutionOutcome.TASK_COMPLETED

            try:
                await self.email_client.send_email(*message)
            except EmailDeliveryError as e:
                await asyncio.to_thread(self._settle, session, task, e)
            else:
                await asyncio.to_thread(self._settle, session, task, None)
            return ExecutionOutcome.TASK_COMPLETED
        except Exception:
            await asyncio.to_thread(session.rollback)
            raise
        finally:
            await asyncio.to_thread(session.close)

    def _claim(self, session: Session) -> Tuple[Optional[IssueDeliveryTask], Optional[tuple]]:
        """Lock a due row and build its message.

        Returns ``(None, None)`` for an empty queue and ``(task, None)`` when the
        row could not be sent and was dead-lettered.
        """
        task = dequeue_task(session)
        if task is None:
            session.rollback()
            return None, None

        try:
            recipient = _email_adapter.validate_python(task.subscriber_email)
        except PydanticValidationError:
            self._dead_letter(session, task, "Invalid subscriber email address")
            session.commit()
            return task, None

        issue = session.get(NewsletterIssue, task.newsletter_issue_id)
        if issue is None:
            self._dead_letter(session, task, "Newsletter issue no longer exists")
            session.commit()
            return task, None

        return task, (recipient, issue.title, issue.html_content, issue.text_content)

    def _settle(self, session: Session, task: IssueDeliveryTask, error: Optional[EmailDeliveryError]):
        """Acknowledge, reschedule or dead-letter a claimed row and commit."""
        if error is not None:
            self._record_failure(session, task, error)
        else:
            session.delete(task)
            metrics.record_delivery_attempt("delivered")
            logger.info(
                "Newsletter issue delivered",
                extra={
                    'task_name': TASK_NAME,
                    'newsletter_issue_id': task.newsletter_issue_id,
                },
            )
        session.commit()

    def _record_failure(self, session: Session, task: IssueDeliveryTask, error: Exception):
        task.attempts = (task.attempts or 0) + 1
        task.last_error = str(error)

        if task.attempts >= self.max_attempts:
            self._dead_letter(session, task, str(error))
            return

        task.execute_after = utcnow() + self.retry_delay(task.attempts)
        metrics.record_delivery_attempt("retry_scheduled")
        logger.warning(
            f"Delivery failed, retry scheduled: {error}",
            extra={
                'task_name': TASK_NAME,
                'newsletter_issue_id': task.newsletter_issue_id,
                'attempts': task.attempts,
            },
        )

    def _dead_letter(self, session: Session, task: IssueDeliveryTask, reason: str):
        session.add(
            IssueDeliveryFailure(
                newsletter_issue_id=task.newsletter_issue_id,
                subscriber_email=task.subscriber_email,
                attempts=task.attempts or 0,
                last_error=reason,
                failed_at=utcnow(),
            )
        )
        session.delete(task)
        metrics.record_delivery_attempt("dead_lettered")
        logger.error(
            f"Delivery abandoned: {reason}",
            extra={
                'task_name': TASK_NAME,
                'newsletter_issue_id': task.newsletter_issue_id,
                'attempts': task.attempts,
            },
        )

    async def drain(self, max_tasks: Optional[int] = None) -> int:
        """Process due rows until the queue is empty. Returns rows handled."""
        handled = 0
        while max_tasks is None or handled < max_tasks:
            if await self.try_execute_task() == ExecutionOutcome.EMPTY_QUEUE:
                break
            handled += 1
        return handled

    async def start(self):
        """Start the delivery loop on the running event loop"""
        if self.running:
            logger.warning("Delivery worker is already running")
            return

        self.running = True
        logger.info("Starting delivery worker", extra={'task_name': TASK_NAME})
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self):
        """Stop the delivery loop and wait for it to exit"""
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Stopped delivery worker", extra={'task_name': TASK_NAME})

    async def _run_loop(self):
        while self.running:
            started = time.perf_counter()
            with worker_span(TASK_NAME):
                try:
                    outcome = await self.try_execute_task()
                except Exception as e:
                    add_span_error(e)
                    outcome = None
                    metrics.record_worker_task(TASK_NAME, "failure")
                    log_error(logger, e, service='worker', task_name=TASK_NAME)
                else:
                    add_span_attributes({"delivery.outcome": outcome.value})

            if outcome is None:
                await asyncio.sleep(1)
                continue

            if outcome == ExecutionOutcome.EMPTY_QUEUE:
                await asyncio.sleep(self.poll_interval_seconds)
            else:
                duration_ms = (time.perf_counter() - started) * 1000
                metrics.record_worker_task(TASK_NAME, "success", duration_ms)
