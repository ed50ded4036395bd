"""
Account context for admin endpoints.

Login and sessions live in front of this service; by the time a request gets
here the authenticated account is forwarded in the X-Account-Id header.
"""
from typing import Optional

from fastapi import Header, Request
from pydantic import BaseModel

from newsletter.obs.errors import AuthenticationError


class AccountContext(BaseModel):
    """Context for authenticated admin requests."""
    account_id: str


async def get_current_account(
    request: Request,
    x_account_id: Optional[str] = Header(None, alias="X-Account-Id"),
) -> AccountContext:
    """
    Resolve the account publishing on behalf of the request.

    Expected header format:
        X-Account-Id: <account_id>
    """
    account_id = (x_account_id or "").strip()
    if not account_id:
        raise AuthenticationError("Missing X-Account-Id header")

    request.state.account_id = account_id
    return AccountContext(account_id=account_id)
