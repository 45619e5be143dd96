"""Service container wiring repositories, clients and domain services.

``create_app`` builds one container per application and stores it on
``app.state.services``; routers reach it through the ``get_*`` dependencies.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from fastapi import Request
from sqlalchemy.engine import Engine

from agents.dunning.clients import ChatClient, EmailSender
from agents.dunning.config import DunningConfig
from agents.dunning.dispatcher import DunningDispatcher
from agents.dunning.job_store import NotificationJobStore
from agents.dunning.ledger import LicenseLedger
from agents.dunning.payments import PaymentProcessor
from agents.dunning.rendering import TemplateEngine
from agents.dunning.scanner import OverdueScanner
from backend.apps.licenses.repository import SqlLicenseRepository
from backend.apps.notifications.repository import SqlJobRepository, SqlLogRepository
from backend.core.config import Settings
from backend.integrations.brevo_client import BrevoClient
from backend.integrations.chatwoot_client import ChatwootClient

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: DunningConfig
    ledger: LicenseLedger
    scanner: OverdueScanner
    job_store: NotificationJobStore
    dispatcher: DunningDispatcher


def build_services(
    settings: Settings,
    engine: Engine,
    *,
    email_sender: EmailSender | None = None,
    chat_client: ChatClient | None = None,
    payment_processor: PaymentProcessor | None = None,
    clock: Callable[[], datetime] | None = None,
) -> Services:
    """Wire the engine against SQL repositories and the provider clients.

    Provider clients are only built when their credentials are configured;
    otherwise the dispatcher reports a ``ConfigurationError`` on use.
    """
    config = DunningConfig.from_settings(settings)

    if email_sender is None and not config.missing_email_settings():
        email_sender = BrevoClient.from_settings(settings)
    if chat_client is None and not config.missing_chat_settings():
        chat_client = ChatwootClient.from_settings(settings)

    ledger = LicenseLedger(
        SqlLicenseRepository(engine), config, payment_processor=payment_processor, clock=clock
    )
    job_store = NotificationJobStore(
        SqlJobRepository(engine), SqlLogRepository(engine), config, clock=clock
    )
    dispatcher = DunningDispatcher(
        ledger,
        config,
        chat_client=chat_client,
        email_sender=email_sender,
        job_store=job_store,
        templates=TemplateEngine(config),
        clock=clock,
    )
    scanner = OverdueScanner(
        ledger.repository, default_limit=config.overdue_default_limit, clock=clock
    )
    logger.info(
        "services_ready",
        extra={
            "email_configured": email_sender is not None,
            "chat_configured": chat_client is not None,
        },
    )
    return Services(
        config=config,
        ledger=ledger,
        scanner=scanner,
        job_store=job_store,
        dispatcher=dispatcher,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_ledger(request: Request) -> LicenseLedger:
    return get_services(request).ledger


def get_scanner(request: Request) -> OverdueScanner:
    return get_services(request).scanner


def get_job_store(request: Request) -> NotificationJobStore:
    return get_services(request).job_store


def get_dispatcher(request: Request) -> DunningDispatcher:
    return get_services(request).dispatcher
