"""Brevo (Sendinblue) transactional email client for license notifications.

Sends the license summary email. Any non-2xx answer or transport failure is
raised as ``ExternalServiceError`` carrying the provider's raw text; there is
no automatic retry.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID, uuid5

import httpx

from agents.dunning.clients import EmailResult
from agents.dunning.errors import ConfigurationError, ExternalServiceError
from backend.core.config import Settings, settings as default_settings

PROVIDER = "brevo"

# DNS namespace UUID for deterministic UUID5 generation
DNS_NAMESPACE = UUID("6ba7b810-9dad-11d1-80b4-00c04fd430c8")


def generate_message_id(recipient: str, subject: str, ts: datetime | None = None) -> str:
    """Deterministic outbound message id (UUID5 over recipient, subject and time)."""
    if ts is None:
        ts = datetime.now(UTC)
    return str(uuid5(DNS_NAMESPACE, "|".join([recipient.lower(), subject, ts.isoformat()])))


@dataclass
class BrevoEmail:
    """Email data structure for Brevo API."""

    to: str
    subject: str
    html: str
    text: str
    to_name: str | None = None

    def to_payload(self, sender_email: str, sender_name: str, message_id: str) -> dict:
        recipient = {"email": self.to}
        if self.to_name:
            recipient["name"] = self.to_name
        return {
            "sender": {"name": sender_name, "email": sender_email},
            "to": [recipient],
            "subject": self.subject,
            "htmlContent": self.html,
            "textContent": self.text,
            "headers": {"X-Message-ID": message_id},
        }


class BrevoClient:
    """Brevo API client for transactional emails."""

    def __init__(
        self,
        api_key: str,
        sender_email: str = "no-reply@nexius.lat",
        sender_name: str = "Nexius Team",
        base_url: str = "https://api.brevo.com/v3",
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize Brevo client.

        Args:
            api_key: Brevo API key
            sender_email: From address
            sender_name: From display name
            base_url: API base URL
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests inject a mock transport)
        """
        self.logger = logging.getLogger(__name__)
        if not api_key:
            raise ConfigurationError("BREVO_API_KEY not set", missing=["BREVO_API_KEY"])

        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "api-key": api_key,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, transport: httpx.BaseTransport | None = None
    ) -> "BrevoClient":
        s = settings or default_settings
        return cls(
            transport=transport,
            api_key=s.BREVO_API_KEY,
            sender_email=s.BREVO_SENDER_EMAIL,
            sender_name=s.BREVO_SENDER_NAME,
            base_url=s.BREVO_BASE_URL,
            timeout=s.HTTP_TIMEOUT_SECONDS,
        )

    def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        to_name: str | None = None,
    ) -> EmailResult:
        """Send transactional email via Brevo API.

        Returns:
            EmailResult with the provider message id

        Raises:
            ExternalServiceError: Non-2xx response or network failure
        """
        email = BrevoEmail(to=to, subject=subject, html=html, text=text, to_name=to_name)
        message_id = generate_message_id(to, subject)
        payload = email.to_payload(self.sender_email, self.sender_name, message_id)

        try:
            response = self._client.post("/smtp/email", json=payload)
        except httpx.RequestError as e:
            self.logger.error(
                "Network error sending email via Brevo", extra={"to": to, "error": str(e)}
            )
            raise ExternalServiceError(
                "Failed to send email", provider=PROVIDER, detail=str(e)
            ) from e

        if not response.is_success:
            self.logger.error(
                "Failed to send email via Brevo",
                extra={"to": to, "status_code": response.status_code},
            )
            raise ExternalServiceError(
                "Failed to send email",
                provider=PROVIDER,
                status_code=response.status_code,
                detail=response.text,
            )

        provider_id = None
        if response.content:
            try:
                provider_id = response.json().get("messageId")
            except ValueError:
                provider_id = None

        self.logger.info(
            "Email sent successfully via Brevo",
            extra={
                "to": to,
                "message_id": provider_id or message_id,
                "subject": subject[:50] + "..." if len(subject) > 50 else subject,
            },
        )
        return EmailResult(success=True, message_id=provider_id or message_id)

    def close(self):
        """Close HTTP client connection."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
