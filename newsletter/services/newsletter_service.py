"""
Publishing newsletter issues behind the idempotency store.
"""
from fastapi.responses import JSONResponse

from newsletter.core.idempotency import IdempotencyKey
from newsletter.obs.logging import get_logger
from newsletter.obs.metrics import metrics
from newsletter.services.idempotency import (
    CapturedResponse,
    IdempotencyStore,
    ReturnSavedResponse,
)
from newsletter.services.outbox import enqueue_delivery_tasks, insert_newsletter_issue

logger = get_logger(__name__)

ACCEPTED_MESSAGE = "The newsletter issue has been accepted - emails will go out shortly."


def build_accepted_response(newsletter_issue_id: str, delivery_tasks_enqueued: int) -> CapturedResponse:
    """The 202 every caller with the same key will receive."""
    response = JSONResponse(
        status_code=202,
        content={
            "status": "accepted",
            "newsletter_issue_id": newsletter_issue_id,
            "delivery_tasks_enqueued": delivery_tasks_enqueued,
            "message": ACCEPTED_MESSAGE,
        },
    )
    return CapturedResponse.from_response(response)


def publish_issue(
    store: IdempotencyStore,
    account_id: str,
    key: IdempotencyKey,
    title: str,
    text_content: str,
    html_content: str,
) -> CapturedResponse:
    """
    Publish an issue exactly once per (account_id, key).

    The first writer inserts the issue, fans it out to confirmed subscribers
    and saves the response in a single transaction. Replays get the saved
    response back without touching anything else.

    Raises:
        UnexpectedError: storage failed or a pending row was observed on replay
    """
    outcome = store.try_processing(account_id, key)
    if isinstance(outcome, ReturnSavedResponse):
        return outcome.response

    with outcome.transaction as transaction:
        newsletter_issue_id = insert_newsletter_issue(
            transaction.session, title, text_content, html_content
        )
        delivery_tasks = enqueue_delivery_tasks(transaction.session, newsletter_issue_id)
        saved = store.save_response(
            transaction, build_accepted_response(newsletter_issue_id, delivery_tasks)
        )

    metrics.record_publish(delivery_tasks)
    logger.info(
        "Newsletter issue published",
        extra={
            'account_id': account_id,
            'newsletter_issue_id': newsletter_issue_id,
            'idempotency': 'processed',
        },
    )
    return saved
