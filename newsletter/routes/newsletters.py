"""
Admin endpoints for publishing newsletter issues.
"""
from fastapi import APIRouter, Depends, Form, Response
from sqlalchemy.orm import sessionmaker

from newsletter.core.idempotency import IdempotencyKey, generate_idempotency_key
from newsletter.database import get_session_factory
from newsletter.deps.account import AccountContext, get_current_account
from newsletter.schemas.newsletters import PublishAcceptedResponse, PublishFormResponse
from newsletter.services.idempotency import IdempotencyStore
from newsletter.services.newsletter_service import publish_issue

router = APIRouter(prefix="/admin/newsletters", tags=["newsletters"])


def get_idempotency_store(session_factory: sessionmaker = Depends(get_session_factory)) -> IdempotencyStore:
    return IdempotencyStore(session_factory)


@router.get("", response_model=PublishFormResponse)
def get_publish_form(account: AccountContext = Depends(get_current_account)):
    """Hand out a fresh idempotency key for the next publish form submission."""
    return PublishFormResponse(idempotency_key=generate_idempotency_key())


@router.post(
    "",
    status_code=202,
    responses={202: {"model": PublishAcceptedResponse}},
)
def publish_newsletter(
    title: str = Form(...),
    html: str = Form(...),
    text: str = Form(...),
    # Defaults to empty so a missing key is rejected as a bad request, not 422
    idempotency_key: str = Form(""),
    account: AccountContext = Depends(get_current_account),
    store: IdempotencyStore = Depends(get_idempotency_store),
) -> Response:
    """
    Publish a newsletter issue to every confirmed subscriber.

    Submitting the same form twice (same idempotency key) publishes once and
    returns the identical response both times.
    """
    key = IdempotencyKey.parse(idempotency_key)
    captured = publish_issue(
        store,
        account.account_id,
        key,
        title=title,
        text_content=text,
        html_content=html,
    )
    return captured.to_response()
