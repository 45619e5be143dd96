"""Core configuration with Pydantic v2 Settings."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    app_env: str = "development"
    database_url: str = "sqlite:///./license_billing.db"
    log_level: str = "INFO"
    enable_metrics: bool = True

    # Shared secret for machine-to-machine endpoints (X-API-Key or Bearer)
    LICENSING_API_KEY: str = ""

    # Transactional email (Brevo)
    BREVO_API_KEY: str = ""
    BREVO_SENDER_EMAIL: str = "no-reply@nexius.lat"
    BREVO_SENDER_NAME: str = "Nexius Team"
    BREVO_BASE_URL: str = "https://api.brevo.com/v3"

    # Chat messaging platform (Chatwoot)
    CHATWOOT_BASE_URL: str = ""
    CHATWOOT_API_TOKEN: str = ""
    CHATWOOT_ACCOUNT_ID: str = ""
    CHATWOOT_INBOX_ID: str = ""
    CHATWOOT_DEFAULT_COUNTRY_CODE: str = "+51"

    # Outbound HTTP timeout applied to every provider call
    HTTP_TIMEOUT_SECONDS: float = 15.0

    # Reminder copy / branding
    COMPANY_NAME: str = "Nexius"
    SUPPORT_EMAIL: str = "contacto@nexius.lat"
    PAYMENT_GUIDE_URL: str = "https://www.nexius.lat/blog/como-pagar-licencias-nexius"
    DEFAULT_CURRENCY: str = "PEN"

    # Query defaults
    JOBS_DEFAULT_LIMIT: int = 25
    OVERDUE_DEFAULT_LIMIT: int = 100

    # Payment intent codes
    PAYMENT_CODE_TTL_MINUTES: int = 30


# Global settings instance
settings = Settings()
