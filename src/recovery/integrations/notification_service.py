"""Notification service integration for dunning emails."""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import uuid4

import httpx
import structlog

from recovery.config import settings
from recovery.exceptions import NotifierFailure

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class NotificationResult:
    """Outcome of one send."""

    success: bool
    message_id: str | None = None
    error: str | None = None


class Notifier(ABC):
    """Transport for payer-facing messages."""

    @abstractmethod
    async def send(self, to: str, subject: str, html_body: str, text_body: str) -> NotificationResult:
        """Deliver one message; must not raise for delivery failures."""


class NotificationService(Notifier):
    """
    Email delivery through a transactional email HTTP API.

    When no provider URL is configured (local development), messages are
    logged and reported as sent.
    """

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        sender: str | None = None,
        timeout_seconds: float | None = None,
    ):
        """
        Initialize notification service.

        Args:
            api_url: Provider send endpoint
            api_key: API key for notification provider
            sender: From address
            timeout_seconds: Delivery timeout
        """
        self.api_url = settings.email_api_url if api_url is None else api_url
        self.api_key = settings.email_api_key if api_key is None else api_key
        self.sender = sender or settings.email_from
        self.timeout_seconds = timeout_seconds or settings.notifier_timeout_seconds

    async def send(self, to: str, subject: str, html_body: str, text_body: str) -> NotificationResult:
        """
        Send email notification.

        Args:
            to: Recipient email address
            subject: Email subject
            html_body: HTML body
            text_body: Plain text body

        Returns:
            NotificationResult with send status
        """
        if not to or not subject or not (html_body or text_body):
            return NotificationResult(success=False, error="Missing required email fields")

        if not self.api_url:
            message_id = f"dev-{uuid4().hex[:12]}"
            logger.info(
                "email_notification_logged",
                to=to,
                sender=self.sender,
                subject=subject,
                message_id=message_id,
            )
            return NotificationResult(success=True, message_id=message_id)

        try:
            message_id = await self._post(to, subject, html_body, text_body)
        except NotifierFailure as e:
            logger.warning("email_notification_failed", to=to, subject=subject, error=str(e))
            return NotificationResult(success=False, error=str(e))

        logger.info("email_notification_sent", to=to, subject=subject, message_id=message_id)
        return NotificationResult(success=True, message_id=message_id)

    async def _post(self, to: str, subject: str, html_body: str, text_body: str) -> str | None:
        """
        Deliver through the provider API.

        Raises:
            NotifierFailure: On timeout, transport error or non-2xx response
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    self.api_url,
                    json={
                        "from": self.sender,
                        "to": [to],
                        "subject": subject,
                        "html": html_body,
                        "text": text_body,
                    },
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.TimeoutException as e:
            raise NotifierFailure(f"Request timeout after {self.timeout_seconds}s") from e
        except httpx.HTTPError as e:
            raise NotifierFailure(f"HTTP error: {e}") from e

        if response.status_code not in (200, 201, 202):
            raise NotifierFailure(f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            return response.json().get("id")
        except ValueError:
            return None
