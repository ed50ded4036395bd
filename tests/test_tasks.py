"""
Tests for the Celery maintenance and delivery tasks, run eagerly in-process.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from newsletter.celery_app import celery_app
from newsletter.models.idempotency import IdempotencyRecord
from newsletter.models.issue_delivery import IssueDeliveryTask
from newsletter.services.delivery_worker import DeliveryWorker
from newsletter.services.email_client import EmailClient
from newsletter.services.outbox import enqueue_delivery_tasks, insert_newsletter_issue
from newsletter.tasks.cleanup_tasks import expire_idempotency_keys
from newsletter.tasks.delivery_tasks import drain_delivery_queue
from newsletter.utils.clock import utcnow


class TestBeatSchedule:

    def test_schedules_sweep_and_delivery(self):
        schedule = celery_app.conf.beat_schedule
        assert schedule["expire-idempotency-keys"]["task"] == "newsletter.tasks.cleanup_tasks.expire_idempotency_keys"
        assert schedule["drain-delivery-queue"]["task"] == "newsletter.tasks.delivery_tasks.drain_delivery_queue"


class TestExpireIdempotencyKeys:

    def test_deletes_expired_records(self, session_factory, db_session, count_rows):
        db_session.add(IdempotencyRecord(
            account_id="account-1",
            idempotency_key="old",
            created_at=utcnow() - timedelta(days=2),
        ))
        db_session.commit()

        with patch("newsletter.tasks.cleanup_tasks.SessionLocal", session_factory):
            result = expire_idempotency_keys()

        assert result == {"success": True, "deleted_count": 1}
        assert count_rows(IdempotencyRecord) == 0

    def test_reports_failure(self, session_factory):
        with patch("newsletter.tasks.cleanup_tasks.SessionLocal", session_factory), \
             patch("newsletter.tasks.cleanup_tasks.sweep_expired_records", side_effect=RuntimeError("down")):
            result = expire_idempotency_keys()

        assert result["success"] is False


class TestDrainDeliveryQueue:

    def test_sends_queued_emails(self, session_factory, db_session, add_subscribers, count_rows):
        add_subscribers(2)
        issue_id = insert_newsletter_issue(db_session, "Issue #1", "text", "<p>html</p>")
        enqueue_delivery_tasks(db_session, issue_id)
        db_session.commit()

        email_client = AsyncMock(spec=EmailClient)
        worker = DeliveryWorker(email_client=email_client, session_factory=session_factory)

        with patch("newsletter.tasks.delivery_tasks.DeliveryWorker", return_value=worker):
            result = drain_delivery_queue()

        assert result == {"success": True, "handled": 2}
        assert email_client.send_email.await_count == 2
        assert count_rows(IssueDeliveryTask) == 0
