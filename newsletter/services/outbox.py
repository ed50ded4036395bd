"""
Transactional outbox for newsletter delivery.

Both helpers run inside the caller's session and never commit: the issue, its
delivery rows and the captured idempotent response land in one transaction.
"""
import uuid

from sqlalchemy import insert, literal, select
from sqlalchemy.orm import Session

from newsletter.models.issue_delivery import IssueDeliveryTask
from newsletter.models.newsletter_issue import NewsletterIssue
from newsletter.models.subscription import Subscription, SubscriptionStatus
from newsletter.obs.logging import get_logger
from newsletter.utils.clock import utcnow

logger = get_logger(__name__)


def insert_newsletter_issue(session: Session, title: str, text_content: str, html_content: str) -> str:
    """Create the issue row and return its id."""
    newsletter_issue_id = str(uuid.uuid4())
    session.add(
        NewsletterIssue(
            newsletter_issue_id=newsletter_issue_id,
            title=title,
            text_content=text_content,
            html_content=html_content,
            published_at=utcnow(),
        )
    )
    session.flush()
    return newsletter_issue_id


def enqueue_delivery_tasks(session: Session, newsletter_issue_id: str) -> int:
    """
    Fan an issue out to every subscription confirmed right now.

    A single INSERT ... SELECT so the recipient set is a snapshot taken inside
    the publishing transaction.

    Returns:
        Number of delivery rows written
    """
    now = utcnow()
    recipients = select(
        literal(newsletter_issue_id),
        Subscription.email,
        literal(0),
        literal(now, IssueDeliveryTask.__table__.c.execute_after.type),
    ).where(Subscription.status == SubscriptionStatus.CONFIRMED.value)

    table = IssueDeliveryTask.__table__
    result = session.execute(
        insert(table).from_select(
            [
                table.c.newsletter_issue_id,
                table.c.subscriber_email,
                table.c.attempts,
                table.c.execute_after,
            ],
            recipients,
        )
    )
    enqueued = result.rowcount if result.rowcount is not None and result.rowcount >= 0 else 0

    logger.info(
        f"Enqueued {enqueued} delivery tasks",
        extra={'newsletter_issue_id': newsletter_issue_id},
    )
    return enqueued
