"""
Tests for the delivery worker draining the outbox.
"""
import asyncio
import time
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from newsletter.models.idempotency import IdempotencyRecord
from newsletter.models.issue_delivery import IssueDeliveryFailure, IssueDeliveryTask
from newsletter.services.delivery_worker import DeliveryWorker, ExecutionOutcome, dequeue_task
from newsletter.services.email_client import EmailClient, EmailDeliveryError
from newsletter.services.outbox import enqueue_delivery_tasks, insert_newsletter_issue
from newsletter.utils.clock import utcnow


@pytest.fixture
def email_client():
    return AsyncMock(spec=EmailClient)


@pytest.fixture
def worker(email_client, session_factory):
    return DeliveryWorker(
        email_client=email_client,
        session_factory=session_factory,
        poll_interval_seconds=0.01,
        max_attempts=3,
        retry_base_delay_seconds=60,
    )


@pytest.fixture
def published_issue(db_session, add_subscribers):
    """An issue fanned out to two confirmed subscribers."""
    def _publish(count=2, **subscriber_kwargs):
        add_subscribers(count, **subscriber_kwargs)
        issue_id = insert_newsletter_issue(db_session, "Issue #1", "plain text", "<p>html</p>")
        enqueue_delivery_tasks(db_session, issue_id)
        db_session.commit()
        return issue_id
    return _publish


class TestDequeueTask:

    def test_skips_rows_not_yet_due(self, db_session, published_issue):
        published_issue(1)
        for task in db_session.execute(select(IssueDeliveryTask)).scalars():
            task.execute_after = utcnow() + timedelta(minutes=5)
        db_session.commit()

        assert dequeue_task(db_session) is None
        assert dequeue_task(db_session, now=utcnow() + timedelta(minutes=10)) is not None


class TestTryExecuteTask:

    async def test_empty_queue(self, worker, email_client):
        assert await worker.try_execute_task() == ExecutionOutcome.EMPTY_QUEUE
        email_client.send_email.assert_not_awaited()

    async def test_successful_send_deletes_row(self, worker, email_client, published_issue, count_rows):
        published_issue(1)

        outcome = await worker.try_execute_task()

        assert outcome == ExecutionOutcome.TASK_COMPLETED
        email_client.send_email.assert_awaited_once()
        recipient, subject, html, text = email_client.send_email.await_args.args
        assert recipient.endswith("@example.com")
        assert subject == "Issue #1"
        assert html == "<p>html</p>"
        assert text == "plain text"
        assert count_rows(IssueDeliveryTask) == 0

    async def test_failed_send_schedules_retry(self, worker, email_client, published_issue, db_session):
        published_issue(1)
        email_client.send_email.side_effect = EmailDeliveryError("Email API returned 503", status_code=503)

        before = utcnow().replace(tzinfo=None)
        assert await worker.try_execute_task() == ExecutionOutcome.TASK_COMPLETED

        task = db_session.execute(select(IssueDeliveryTask)).scalar_one()
        assert task.attempts == 1
        assert "503" in task.last_error
        assert task.execute_after.replace(tzinfo=None) >= before + timedelta(seconds=59)

        # Not due again until the backoff elapses
        assert await worker.try_execute_task() == ExecutionOutcome.EMPTY_QUEUE

    async def test_exhausted_attempts_are_dead_lettered(self, email_client, session_factory, published_issue, count_rows, db_session):
        published_issue(1)
        email_client.send_email.side_effect = EmailDeliveryError("Email API returned 500", status_code=500)
        worker = DeliveryWorker(
            email_client=email_client,
            session_factory=session_factory,
            max_attempts=2,
            retry_base_delay_seconds=0,
        )

        assert await worker.try_execute_task() == ExecutionOutcome.TASK_COMPLETED
        assert count_rows(IssueDeliveryTask) == 1
        assert await worker.try_execute_task() == ExecutionOutcome.TASK_COMPLETED

        assert count_rows(IssueDeliveryTask) == 0
        failure = db_session.execute(select(IssueDeliveryFailure)).scalar_one()
        assert failure.attempts == 2
        assert "500" in failure.last_error

    async def test_invalid_recipient_is_dead_lettered_without_sending(self, worker, email_client, published_issue, count_rows):
        published_issue(1, email="not-an-email")

        assert await worker.try_execute_task() == ExecutionOutcome.TASK_COMPLETED

        email_client.send_email.assert_not_awaited()
        assert count_rows(IssueDeliveryTask) == 0
        assert count_rows(IssueDeliveryFailure) == 1

    async def test_unexpected_error_keeps_row(self, worker, email_client, published_issue, db_session):
        published_issue(1)
        email_client.send_email.side_effect = RuntimeError("bug")

        with pytest.raises(RuntimeError):
            await worker.try_execute_task()

        task = db_session.execute(select(IssueDeliveryTask)).scalar_one()
        assert task.attempts == 0

    async def test_database_lock_wait_does_not_block_event_loop(self, worker, email_client, published_issue, session_factory):
        published_issue(1)
        # A concurrent writer holds the SQLite write lock until released below
        lock_holder = session_factory()
        lock_holder.add(IdempotencyRecord(account_id="account-1", idempotency_key="held", created_at=utcnow()))
        lock_holder.flush()

        ticks = []

        async def tick_then_release():
            for _ in range(10):
                ticks.append(time.perf_counter())
                await asyncio.sleep(0.05)
            lock_holder.rollback()

        ticker = asyncio.create_task(tick_then_release())
        try:
            outcome = await worker.try_execute_task()
            await ticker
        finally:
            lock_holder.close()

        assert outcome == ExecutionOutcome.TASK_COMPLETED
        email_client.send_email.assert_awaited_once()
        gaps = [later - earlier for earlier, later in zip(ticks, ticks[1:])]
        assert max(gaps) < 0.4


class TestRetryPolicy:

    def test_exponential_backoff(self, worker):
        assert worker.retry_delay(1) == timedelta(seconds=60)
        assert worker.retry_delay(2) == timedelta(seconds=120)
        assert worker.retry_delay(3) == timedelta(seconds=240)

    def test_explicit_zero_settings_are_kept(self, email_client, session_factory):
        worker = DeliveryWorker(
            email_client=email_client,
            session_factory=session_factory,
            poll_interval_seconds=0,
            max_attempts=0,
            retry_base_delay_seconds=0,
        )

        assert worker.poll_interval_seconds == 0
        assert worker.max_attempts == 0
        assert worker.retry_delay(1) == timedelta(0)


class TestDrainAndLoop:

    async def test_drain_sends_every_due_row(self, worker, email_client, published_issue, count_rows):
        published_issue(3)

        handled = await worker.drain()

        assert handled == 3
        assert email_client.send_email.await_count == 3
        assert count_rows(IssueDeliveryTask) == 0

    async def test_loop_delivers_then_stops(self, worker, email_client, published_issue, count_rows):
        published_issue(2)

        await worker.start()
        for _ in range(100):
            if count_rows(IssueDeliveryTask) == 0:
                break
            await asyncio.sleep(0.01)
        await worker.stop()

        assert count_rows(IssueDeliveryTask) == 0
        assert worker.running is False
