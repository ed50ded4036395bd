"""
Subscriber lifecycle: subscribe (pending), mail the confirmation link, confirm by token.
"""
import secrets
import string
import uuid
from typing import Optional
from urllib.parse import urlencode

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from newsletter.config import settings
from newsletter.models.subscription import Subscription, SubscriptionStatus
from newsletter.obs.errors import UnexpectedError
from newsletter.obs.logging import get_logger, log_error
from newsletter.services.email_client import EmailClient, EmailDeliveryError
from newsletter.utils.clock import utcnow

logger = get_logger(__name__)

TOKEN_LENGTH = 25
_TOKEN_ALPHABET = string.ascii_letters + string.digits


def generate_subscription_token() -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


def subscribe(db: Session, name: str, email: str) -> Subscription:
    """
    Create a pending subscription, or return the existing one for this email.
    """
    existing = db.execute(
        select(Subscription).where(Subscription.email == email)
    ).scalar_one_or_none()
    if existing is not None:
        return existing

    subscription = Subscription(
        id=str(uuid.uuid4()),
        email=email,
        name=name,
        status=SubscriptionStatus.PENDING_CONFIRMATION.value,
        subscription_token=generate_subscription_token(),
        subscribed_at=utcnow(),
    )
    try:
        db.add(subscription)
        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent subscribe for the same email
        db.rollback()
        return db.execute(
            select(Subscription).where(Subscription.email == email)
        ).scalar_one()
    except SQLAlchemyError as e:
        db.rollback()
        raise UnexpectedError("Failed to store subscription") from e

    logger.info("New subscription pending confirmation", extra={'status': subscription.status})
    return subscription


def confirm(db: Session, subscription_token: str) -> Optional[Subscription]:
    """Mark the subscription owning ``subscription_token`` as confirmed."""
    subscription = db.execute(
        select(Subscription).where(Subscription.subscription_token == subscription_token)
    ).scalar_one_or_none()
    if subscription is None:
        return None

    if subscription.status != SubscriptionStatus.CONFIRMED.value:
        subscription.status = SubscriptionStatus.CONFIRMED.value
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise UnexpectedError("Failed to confirm subscription") from e
        logger.info("Subscription confirmed")

    return subscription


def confirmation_link(subscription_token: str, base_url: Optional[str] = None) -> str:
    query = urlencode({"subscription_token": subscription_token})
    return f"{base_url or settings.APP_BASE_URL}/subscriptions/confirm?{query}"


async def send_confirmation_email(
    email_client: EmailClient,
    name: str,
    email: str,
    subscription_token: str,
):
    """
    Mail the confirmation link to the address being subscribed.

    The token only ever leaves the service through the subscriber's inbox.
    Delivery failures are logged; the subscriber can resubmit the form to get
    a new email.
    """
    link = confirmation_link(subscription_token)
    try:
        await email_client.send_email(
            email,
            "Welcome!",
            f'Hi {name},<br />Click <a href="{link}">here</a> to confirm your subscription.',
            f"Hi {name},\nVisit {link} to confirm your subscription.",
        )
    except EmailDeliveryError as e:
        log_error(logger, e, service='api', task_name="send_confirmation_email")
