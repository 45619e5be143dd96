"""Configuration management for the dunning engine.

Holds branding, copy and channel settings used when rendering and sending
reminders. Values come from the application settings so that a single
environment drives both the API and the operate tools.
"""

from dataclasses import dataclass, field

from backend.core.config import Settings, settings as default_settings


@dataclass
class DunningConfig:
    """Configuration for reminder rendering and dispatch."""

    # Branding
    company_name: str = "Nexius"
    support_email: str = "contacto@nexius.lat"
    payment_guide_url: str = "https://www.nexius.lat/blog/como-pagar-licencias-nexius"

    # Money
    default_currency: str = "PEN"

    # Chat channel
    chat_base_url: str = ""
    chat_api_token: str = ""
    chat_account_id: str = ""
    chat_inbox_id: str = ""
    default_country_code: str = "+51"

    # Email channel
    email_api_key: str = ""
    sender_email: str = "no-reply@nexius.lat"
    sender_name: str = "Nexius Team"

    # Reminder window (days before due that still produce a stage)
    pre_due_days: int = 3

    # Lifetime of a payment intent code
    payment_code_ttl_minutes: int = 30

    # Scanner / job store defaults
    overdue_default_limit: int = 100
    jobs_default_limit: int = 25

    # Severity score per stage family
    severity_scores: dict[str, int] = field(
        default_factory=lambda: {"info": 10, "warning": 50, "critical": 90}
    )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "DunningConfig":
        """Build configuration from application settings.

        Args:
            settings: Settings instance, defaults to the global one

        Returns:
            Configured instance
        """
        s = settings or default_settings
        return cls(
            company_name=s.COMPANY_NAME,
            support_email=s.SUPPORT_EMAIL,
            payment_guide_url=s.PAYMENT_GUIDE_URL,
            default_currency=s.DEFAULT_CURRENCY,
            chat_base_url=s.CHATWOOT_BASE_URL,
            chat_api_token=s.CHATWOOT_API_TOKEN,
            chat_account_id=s.CHATWOOT_ACCOUNT_ID,
            chat_inbox_id=s.CHATWOOT_INBOX_ID,
            default_country_code=s.CHATWOOT_DEFAULT_COUNTRY_CODE,
            email_api_key=s.BREVO_API_KEY,
            sender_email=s.BREVO_SENDER_EMAIL,
            sender_name=s.BREVO_SENDER_NAME,
            overdue_default_limit=s.OVERDUE_DEFAULT_LIMIT,
            jobs_default_limit=s.JOBS_DEFAULT_LIMIT,
            payment_code_ttl_minutes=s.PAYMENT_CODE_TTL_MINUTES,
        )

    def missing_chat_settings(self) -> list[str]:
        """Return the names of chat settings that are not configured."""
        required = {
            "CHATWOOT_BASE_URL": self.chat_base_url,
            "CHATWOOT_API_TOKEN": self.chat_api_token,
            "CHATWOOT_ACCOUNT_ID": self.chat_account_id,
            "CHATWOOT_INBOX_ID": self.chat_inbox_id,
        }
        return [name for name, value in required.items() if not value]

    def missing_email_settings(self) -> list[str]:
        """Return the names of email settings that are not configured."""
        return [] if self.email_api_key else ["BREVO_API_KEY"]

    @property
    def inbox_id(self) -> int | None:
        """Chat inbox id as integer (the platform compares numerically)."""
        try:
            return int(self.chat_inbox_id)
        except (TypeError, ValueError):
            return None
