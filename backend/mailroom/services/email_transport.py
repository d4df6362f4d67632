"""
Email transport abstraction for campaign and test sends.

Providers:
- Brevo transactional API over httpx, retried with tenacity on rate limiting,
  server errors and connection errors
- Console provider for development/testing (logs instead of sending)

``send`` never raises for delivery problems; it returns a ``SendResult`` with
``success=False`` and the error text so callers can record it per recipient.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import uuid4

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mailroom.lib.logging import get_logger
from mailroom.lib.settings import settings


logger = get_logger(__name__)


@dataclass
class EmailMessage:
    """Fully resolved message for one recipient."""
    to_email: str
    subject: str
    to_name: Optional[str] = None
    html_content: Optional[str] = None
    template_id: Optional[int] = None
    params: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class RetryableSendError(Exception):
    """Provider answer worth retrying."""


class RateLimitedError(RetryableSendError):
    """Provider answered 429."""


class ProviderUnavailableError(RetryableSendError):
    """Provider answered 5xx."""


class EmailTransport(ABC):
    """
    Abstract base class for email delivery providers.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name used in logs."""

    @abstractmethod
    async def send(self, message: EmailMessage) -> SendResult:
        """
        Deliver one message.

        Returns:
            SendResult with the provider message id on success, or the error
        """


class BrevoEmailTransport(EmailTransport):
    """
    Brevo (Sendinblue) transactional email provider.

    A template send uses ``templateId``; otherwise ``htmlContent`` is sent and
    Brevo substitutes ``{{ params.x }}`` placeholders itself.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.brevo.com/v3",
        sender_email: Optional[str] = None,
        sender_name: Optional[str] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_base_delay: float = 2.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.sender_email = sender_email or settings.email_from_address
        self.sender_name = sender_name or settings.email_from_name
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self._http_transport = http_transport

    @property
    def name(self) -> str:
        return "brevo"

    def _build_payload(self, message: EmailMessage) -> dict[str, Any]:
        recipient: dict[str, Any] = {"email": message.to_email}
        if message.to_name:
            recipient["name"] = message.to_name

        payload: dict[str, Any] = {
            "sender": {"email": self.sender_email, "name": self.sender_name},
            "to": [recipient],
            "subject": message.subject,
        }
        if message.template_id is not None:
            payload["templateId"] = message.template_id
        else:
            payload["htmlContent"] = message.html_content or ""
        if message.params:
            payload["params"] = message.params
        if message.tags:
            payload["tags"] = message.tags
        return payload

    async def _post(self, payload: dict[str, Any]) -> SendResult:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._http_transport,
        ) as client:
            response = await client.post(
                "/smtp/email",
                json=payload,
                headers={"api-key": self.api_key, "accept": "application/json"},
            )

        if response.status_code == 429:
            raise RateLimitedError("Brevo rate limit exceeded (429)")
        if response.status_code >= 500:
            raise ProviderUnavailableError(f"Brevo API error {response.status_code}: {response.text[:500]}")
        if response.is_success:
            body = response.json() if response.content else {}
            return SendResult(success=True, message_id=body.get("messageId"))
        return SendResult(
            success=False,
            error=f"Brevo API error {response.status_code}: {response.text[:500]}",
        )

    async def send(self, message: EmailMessage) -> SendResult:
        payload = self._build_payload(message)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries + 1),
                wait=wait_exponential(multiplier=self.retry_base_delay, max=30),
                retry=retry_if_exception_type((RetryableSendError, httpx.TransportError)),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            f"Retrying Brevo send (attempt {attempt.retry_state.attempt_number})",
                            extra={"to": message.to_email},
                        )
                    return await self._post(payload)
        except RetryableSendError as e:
            logger.error(f"Brevo send gave up after retries: {e}", extra={"to": message.to_email})
            return SendResult(success=False, error=f"{e}; exhausted {self.max_retries} retries")
        except httpx.HTTPError as e:
            logger.error(f"Brevo request failed: {e}", extra={"to": message.to_email})
            return SendResult(success=False, error=f"Brevo request failed: {e.__class__.__name__}: {e}")


class ConsoleEmailTransport(EmailTransport):
    """
    Console provider for development/testing.
    Logs messages instead of sending.
    """

    @property
    def name(self) -> str:
        return "console"

    async def send(self, message: EmailMessage) -> SendResult:
        message_id = f"console-{uuid4().hex}"
        logger.info(
            f"[CONSOLE EMAIL] To: {message.to_email} | Subject: {message.subject}",
            extra={
                "to": message.to_email,
                "template_id": message.template_id,
                "message_id": message_id,
                "tags": message.tags,
            },
        )
        return SendResult(success=True, message_id=message_id)


def get_email_transport() -> EmailTransport:
    """
    Build the configured transport: Brevo when an API key is set, console otherwise.
    """
    if settings.brevo_api_key:
        return BrevoEmailTransport(
            api_key=settings.brevo_api_key,
            base_url=settings.brevo_api_url,
            timeout=settings.email_transport_timeout_seconds,
            max_retries=settings.send_max_retries,
            retry_base_delay=settings.send_retry_base_delay_seconds,
        )
    logger.warning("BREVO_API_KEY not set, using console email transport")
    return ConsoleEmailTransport()
