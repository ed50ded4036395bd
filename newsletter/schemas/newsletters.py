"""
Response and form schemas for newsletter and subscription endpoints.
"""
from pydantic import BaseModel, EmailStr, Field


class PublishFormResponse(BaseModel):
    """Data the admin publish form needs."""
    idempotency_key: str = Field(..., description="Fresh key to submit with the form")


class PublishAcceptedResponse(BaseModel):
    status: str
    newsletter_issue_id: str
    delivery_tasks_enqueued: int
    message: str


class SubscriptionForm(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    email: EmailStr


class SubscriptionAcceptedResponse(BaseModel):
    """Identical for new and already known addresses."""
    status: str
    message: str


class SubscriptionConfirmedResponse(BaseModel):
    status: str
