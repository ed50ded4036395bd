"""
Subscription model. Confirmed subscriptions are the recipients of every issue.
"""
import enum

from sqlalchemy import Column, DateTime, Index, String

from newsletter.database import Base


class SubscriptionStatus(str, enum.Enum):
    """Lifecycle of a subscription"""
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True)
    email = Column(String(320), nullable=False, unique=True)
    name = Column(String(256), nullable=False)
    status = Column(String(32), nullable=False, default=SubscriptionStatus.PENDING_CONFIRMATION.value)
    subscription_token = Column(String(64), nullable=False, unique=True)
    subscribed_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_subscriptions_status", "status"),
    )

    def __repr__(self):
        return f"<Subscription(id={self.id}, status={self.status})>"
