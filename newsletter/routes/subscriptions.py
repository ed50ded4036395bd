"""
Public subscription endpoints.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Form, Query, status
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from newsletter.database import get_db
from newsletter.models.subscription import SubscriptionStatus
from newsletter.obs.errors import AuthenticationError, ValidationError
from newsletter.schemas.newsletters import (
    SubscriptionAcceptedResponse,
    SubscriptionConfirmedResponse,
    SubscriptionForm,
)
from newsletter.services import subscription_service
from newsletter.services.email_client import EmailClient, get_email_client

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])

ACCEPTED_MESSAGE = "Check your inbox to confirm your subscription."


@router.post("", response_model=SubscriptionAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
def subscribe(
    background_tasks: BackgroundTasks,
    name: str = Form(""),
    email: str = Form(""),
    db: Session = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client),
):
    """
    Register a subscriber pending confirmation.

    The response never says whether the address was already known; the
    confirmation link is only sent to the address itself.
    """
    try:
        form = SubscriptionForm(name=name.strip(), email=email.strip())
    except PydanticValidationError as e:
        fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
        raise ValidationError(f"Invalid subscription form: {fields}") from e

    subscription = subscription_service.subscribe(db, form.name, str(form.email))
    if subscription.status == SubscriptionStatus.PENDING_CONFIRMATION.value:
        background_tasks.add_task(
            subscription_service.send_confirmation_email,
            email_client,
            form.name,
            subscription.email,
            subscription.subscription_token,
        )

    return SubscriptionAcceptedResponse(status="accepted", message=ACCEPTED_MESSAGE)


@router.get("/confirm", response_model=SubscriptionConfirmedResponse)
def confirm_subscription(
    subscription_token: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
):
    """Confirm a subscription from the link sent to the subscriber."""
    subscription = subscription_service.confirm(db, subscription_token)
    if subscription is None:
        raise AuthenticationError("Unknown subscription token")
    return SubscriptionConfirmedResponse(status=subscription.status)
