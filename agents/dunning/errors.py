"""Domain errors for the license billing and dunning engine.

Each error carries a machine-readable ``code`` and maps to one HTTP status at
the API boundary (see ``backend/app.py``). Duplicates (job upsert) and
skipped reminders are results, not errors.
"""

from typing import Any


class DunningError(Exception):
    """Base class for all engine errors."""

    code = "dunning_error"
    status_code = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Convert to the error body used by the API."""
        body: dict[str, Any] = {"error": self.code, "detail": self.message}
        body.update({k: v for k, v in self.context.items() if v is not None})
        return body


class ValidationError(DunningError):
    """Missing or malformed required field."""

    code = "validation_error"
    status_code = 400

    def __init__(self, message: str, fields: list[str] | None = None, **context: Any):
        super().__init__(message, fields=fields, **context)
        self.fields = fields or []


class NotFoundError(DunningError):
    """Unknown license or job id."""

    code = "not_found"
    status_code = 404


class AuthError(DunningError):
    """Missing or invalid shared secret."""

    code = "unauthorized"
    status_code = 401

    def __init__(self, message: str, status_code: int = 401, code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        if code:
            self.code = code


class ConfigurationError(DunningError):
    """A required external credential or setting is missing."""

    code = "configuration_error"
    status_code = 500

    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message, missing=missing)
        self.missing = missing or []


class ExternalServiceError(DunningError):
    """Non-2xx (or transport failure) from the email or messaging provider."""

    code = "external_service_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        detail: str | None = None,
    ):
        super().__init__(
            message, provider=provider, statusCode=status_code, providerDetail=detail
        )
        self.provider = provider
        self.provider_status = status_code
        self.provider_detail = detail


class StorageError(DunningError):
    """Database write failed for a reason other than a known conflict."""

    code = "storage_error"
    status_code = 500
