"""Dunning agent - license billing and reminder engine.

This package holds the domain side of license billing: financial state of
licenses, overdue detection, idempotent notification jobs and the dispatch
of reminders over email and chat.

Key Components:
- Ledger: proration, late fees, grace windows, validity and renewal
- Scanner: licenses past their due boundary
- Job store: fingerprinted notification jobs and the notification log
- Dispatcher: email summaries and chat reminders with conversation reuse
- Policies: reminder stage and severity for a license on a given day
- Templates: Jinja2 reminder and email templates

Persistence and provider HTTP clients are injected; see ``backend``.
"""

__version__ = "1.0.0"

from .errors import (
    AuthError,
    ConfigurationError,
    DunningError,
    ExternalServiceError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .config import DunningConfig
from .dto import (
    BillingFrequency,
    JobPatch,
    JobStatus,
    License,
    LicenseStatus,
    NotificationJob,
    NotificationLog,
)
from .ledger import LicenseLedger, check_validity
from .scanner import OverdueScanner
from .job_store import NotificationJobStore
from .dispatcher import ChatRequest, DunningDispatcher

__all__ = [
    "DunningError",
    "ValidationError",
    "NotFoundError",
    "AuthError",
    "ConfigurationError",
    "ExternalServiceError",
    "StorageError",
    "DunningConfig",
    "License",
    "LicenseStatus",
    "BillingFrequency",
    "NotificationJob",
    "NotificationLog",
    "JobPatch",
    "JobStatus",
    "LicenseLedger",
    "check_validity",
    "OverdueScanner",
    "NotificationJobStore",
    "ChatRequest",
    "DunningDispatcher",
]
