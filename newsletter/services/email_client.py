"""
Email transport client (Postmark-compatible HTTP API).
"""
from typing import Optional

import httpx

from newsletter.config import settings
from newsletter.obs.errors import ExternalServiceError
from newsletter.obs.logging import get_logger

logger = get_logger(__name__)


class EmailDeliveryError(ExternalServiceError):
    """The email API rejected the message or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EmailClient:
    """Sends a single email through the configured HTTP API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        sender: Optional[str] = None,
        authorization_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.EMAIL_BASE_URL).rstrip("/")
        self.sender = sender or settings.EMAIL_SENDER
        self.authorization_token = (
            settings.EMAIL_AUTHORIZATION_TOKEN if authorization_token is None else authorization_token
        )
        self.timeout = timeout or settings.email_timeout_seconds
        self.transport = transport

    def _get_headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Postmark-Server-Token": self.authorization_token,
        }

    async def send_email(self, recipient: str, subject: str, html_content: str, text_content: str):
        """
        Send one email.

        Raises:
            EmailDeliveryError: on transport failures and non-2xx responses
        """
        payload = {
            "From": self.sender,
            "To": recipient,
            "Subject": subject,
            "HtmlBody": html_content,
            "TextBody": text_content,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/email",
                    json=payload,
                    headers=self._get_headers(),
                )
        except httpx.TimeoutException as e:
            raise EmailDeliveryError(f"Email API timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise EmailDeliveryError(f"Email API request failed: {e}") from e

        if not response.is_success:
            logger.warning(
                "Email API rejected message",
                extra={'status': response.status_code},
            )
            raise EmailDeliveryError(
                f"Email API returned {response.status_code}",
                status_code=response.status_code,
            )


def get_email_client() -> EmailClient:
    """Dependency returning a client built from settings."""
    return EmailClient()
