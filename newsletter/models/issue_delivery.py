"""
Delivery queue (transactional outbox) and dead-letter models.
"""
from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text

from newsletter.database import Base


class IssueDeliveryTask(Base):
    """One pending delivery of an issue to one recipient.

    Rows are written in the publish transaction and removed by the delivery
    worker once the email has been accepted by the transport.
    """

    __tablename__ = "issue_delivery_queue"

    newsletter_issue_id = Column(
        String(36),
        ForeignKey("newsletter_issues.newsletter_issue_id"),
        primary_key=True,
    )
    subscriber_email = Column(String(320), primary_key=True)

    # Retry bookkeeping
    attempts = Column(Integer, nullable=False, default=0)
    execute_after = Column(DateTime(timezone=True), nullable=False)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_issue_delivery_queue_execute_after", "execute_after"),
    )

    def __repr__(self):
        return f"<IssueDeliveryTask(issue={self.newsletter_issue_id}, attempts={self.attempts})>"


class IssueDeliveryFailure(Base):
    """A delivery that exhausted its attempts or could never be sent."""

    __tablename__ = "issue_delivery_failures"

    id = Column(Integer, primary_key=True, autoincrement=True)
    newsletter_issue_id = Column(
        String(36),
        ForeignKey("newsletter_issues.newsletter_issue_id"),
        nullable=False,
        index=True,
    )
    subscriber_email = Column(String(320), nullable=False)
    attempts = Column(Integer, nullable=False)
    last_error = Column(Text, nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<IssueDeliveryFailure(issue={self.newsletter_issue_id}, attempts={self.attempts})>"
