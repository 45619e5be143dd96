"""Dunning dispatcher: renders and sends reminders over email and chat.

The chat path reuses the client's open conversation on the configured inbox
and suppresses a second reminder for the same stage on the same day. Side
updates after a successful send (conversation attributes, notification log)
are best effort and only logged when they fail.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Mapping, Sequence

from backend.core.observability import metrics

from . import errors
from .clients import ChatClient, Contact, Conversation, EmailSender
from .config import DunningConfig
from .dto import License, to_bool, to_iso
from .job_store import NotificationJobStore
from .ledger import LicenseLedger
from .rendering import TemplateEngine, reminder_date_today

logger = logging.getLogger(__name__)

DUPLICATE_STAGE = "duplicate_stage"
GENERIC_IDENTIFIER = "cliente"
GENERIC_DOC_HINT = "DNI/RUC"


def normalize_phone(raw: str | None, default_country_code: str = "+51") -> str:
    """Basic E.164 normalisation: keep digits and ``+``; prefix the default code when absent."""
    cleaned = re.sub(r"[^0-9+]", "", raw or "")
    if cleaned.startswith("+"):
        return cleaned
    return f"{default_country_code}{cleaned.lstrip('0')}"


def pick_client_identifier(licenses: Sequence[License], explicit: str | None = None) -> str:
    if explicit:
        return explicit
    for lic in licenses:
        if lic.ruc_or_dni:
            return lic.ruc_or_dni
    for lic in licenses:
        if lic.company_name:
            return lic.company_name
    return (licenses[0].license_key if licenses else None) or GENERIC_IDENTIFIER


def pick_client_label(licenses: Sequence[License], explicit: str | None = None) -> str:
    if explicit:
        return explicit
    for lic in licenses:
        if lic.company_name:
            return lic.company_name
    for lic in licenses:
        if lic.domain:
            return lic.domain
    return (licenses[0].license_key if licenses else None) or "Cliente"


def doc_hint_for(client_identifier: str | None) -> str:
    """Identifier shown in the payment acknowledgment instruction."""
    if not client_identifier or client_identifier.lower() == GENERIC_IDENTIFIER:
        return GENERIC_DOC_HINT
    return client_identifier


def _clean_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass
class ChatRequest:
    """Options for a chat reminder."""

    stage: str | None = None
    reminder_date: str | None = None
    skip_if_duplicate: bool = True
    custom_intro: str | None = None
    custom_outro: str | None = None
    manual_message: str | None = None
    job_id: str | None = None
    license_ids: list[str] = field(default_factory=list)
    client_identifier: str | None = None
    client_label: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "ChatRequest":
        """Create from a request body; non-string options are ignored."""
        data = data or {}
        if not isinstance(data, Mapping):
            raise errors.ValidationError("Request body must be an object")
        raw_ids = data.get("licenseIds")
        license_ids: list[str] = []
        if isinstance(raw_ids, list):
            license_ids = [i.strip() for i in raw_ids if isinstance(i, str) and i.strip()]
        skip = data.get("skipIfDuplicate")
        return cls(
            stage=_clean_text(data.get("stage")),
            reminder_date=_clean_text(data.get("reminderDate")),
            skip_if_duplicate=skip is None or to_bool(skip),
            custom_intro=_clean_text(data.get("customIntro")),
            custom_outro=_clean_text(data.get("customOutro")),
            manual_message=_clean_text(data.get("manualMessage")),
            job_id=_clean_text(data.get("jobId")),
            license_ids=license_ids,
            client_identifier=_clean_text(data.get("clientIdentifier")),
            client_label=_clean_text(data.get("clientLabel")),
        )


@dataclass
class DispatchResult:
    """Outcome of a chat reminder."""

    success: bool
    conversation_id: int | str | None
    license_ids: list[str] = field(default_factory=list)
    skipped: bool = False
    reason: str | None = None
    conversation_reused: bool = False
    stage: str | None = None
    reminder_date: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.skipped:
            return {
                "success": False,
                "skipped": True,
                "reason": self.reason,
                "conversationId": self.conversation_id,
            }
        return {
            "success": self.success,
            "conversationId": self.conversation_id,
            "licenseIds": list(self.license_ids),
            "conversationReused": self.conversation_reused,
            "stage": self.stage,
            "reminderDate": self.reminder_date,
        }


def _is_tagged(
    attributes: Mapping[str, Any], license_ids: Sequence[str], client_identifier: str | None
) -> bool:
    if client_identifier and attributes.get("clientIdentifier") == client_identifier:
        return True
    tagged_ids = attributes.get("licenseIds")
    if isinstance(tagged_ids, list) and any(i in license_ids for i in tagged_ids):
        return True
    return bool(attributes.get("licenseId")) and attributes.get("licenseId") in license_ids


def select_conversation(
    conversations: Sequence[Conversation],
    inbox_id: int | None,
    license_ids: Sequence[str],
    client_identifier: str | None,
) -> Conversation | None:
    """Prefer an open conversation on the inbox tagged for these licenses or client."""
    open_on_inbox = [c for c in conversations if c.is_open and c.inbox_id == inbox_id]
    for conversation in open_on_inbox:
        if _is_tagged(conversation.attributes, license_ids, client_identifier):
            return conversation
    return open_on_inbox[0] if open_on_inbox else None


def is_duplicate_stage(conversation: Conversation, stage: str | None, reminder_date: str) -> bool:
    """True when the conversation already carries this stage for this date."""
    if not stage:
        return False
    attrs = conversation.attributes
    last_stage = attrs.get("lastReminderStage") or attrs.get("reminderStage")
    last_date = attrs.get("lastReminderDate") or attrs.get("reminderDate")
    return last_stage == stage and last_date == reminder_date


class DunningDispatcher:
    """Sends license reminders through the email and chat channels."""

    def __init__(
        self,
        ledger: LicenseLedger,
        config: DunningConfig | None = None,
        chat_client: ChatClient | None = None,
        email_sender: EmailSender | None = None,
        job_store: NotificationJobStore | None = None,
        templates: TemplateEngine | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.ledger = ledger
        self.config = config or DunningConfig()
        self.chat_client = chat_client
        self.email_sender = email_sender
        self.job_store = job_store
        self.templates = templates or TemplateEngine(self.config)
        self._clock = clock or (lambda: datetime.now(UTC))

    # Email

    def send_email(self, license_id: str) -> dict[str, Any]:
        """Email the license summary to the license's address.

        Raises:
            errors.ConfigurationError: Email credential missing
            errors.NotFoundError: Unknown license
            errors.ValidationError: License has no email
            errors.ExternalServiceError: Provider rejected the send
        """
        missing = self.config.missing_email_settings()
        if missing or self.email_sender is None:
            raise errors.ConfigurationError(
                f"Missing email settings: {', '.join(missing or ['email sender'])}",
                missing=missing,
            )
        license = self.ledger.get(license_id)
        if not license.email:
            raise errors.ValidationError("License has no email address", fields=["email"])

        rendered = self.templates.render_email_summary(license)
        start = time.time()
        try:
            result = self.email_sender.send_email(
                to=license.email,
                subject=rendered.subject,
                html=rendered.html,
                text=rendered.text,
                to_name=license.company_name,
            )
        except errors.ExternalServiceError:
            metrics.increment_provider_failures("email")
            raise
        finally:
            metrics.observe_duration(start, "dispatch_duration_ms", {"channel": "email"})

        metrics.increment_reminders_sent("email")
        logger.info(
            "license_email_sent",
            extra={"license_id": license.id, "message_id": result.message_id},
        )
        return {"success": True, "messageId": result.message_id}

    # Chat

    def _require_chat(self) -> ChatClient:
        missing = self.config.missing_chat_settings()
        if missing or self.chat_client is None:
            raise errors.ConfigurationError(
                f"Missing chat settings: {', '.join(missing or ['chat client'])}",
                missing=missing,
            )
        return self.chat_client

    def send_chat(self, license_id: str, request: ChatRequest) -> DispatchResult:
        """Send a reminder for one license."""
        self._require_chat()
        license = self.ledger.get(license_id)
        if not (license.phone_number or "").strip():
            raise errors.ValidationError("License has no phone number", fields=["phoneNumber"])

        return self._dispatch_chat(
            [license],
            primary=license,
            request=request,
            tag_attributes={"licenseId": license.id, "licenseKey": license.license_key},
        )

    def send_chat_group(self, request: ChatRequest) -> DispatchResult:
        """Send one aggregated reminder covering several licenses of a client."""
        self._require_chat()
        if not request.license_ids:
            raise errors.ValidationError("licenseIds required", fields=["licenseIds"])

        licenses = self.ledger.get_many(request.license_ids)
        if not licenses:
            raise errors.NotFoundError("No valid licenses found", licenseIds=request.license_ids)

        primary = next((lic for lic in licenses if (lic.phone_number or "").strip()), None)
        if primary is None:
            raise errors.ValidationError(
                "No license in the group has a phone number", fields=["phoneNumber"]
            )

        return self._dispatch_chat(
            licenses,
            primary=primary,
            request=request,
            tag_attributes={"aggregated": True},
        )

    def _dispatch_chat(
        self,
        licenses: Sequence[License],
        *,
        primary: License,
        request: ChatRequest,
        tag_attributes: dict[str, Any],
    ) -> DispatchResult:
        client = self._require_chat()
        start = time.time()
        now = self._clock()

        license_ids = request.license_ids or [lic.id for lic in licenses]
        client_identifier = pick_client_identifier(licenses, request.client_identifier)
        client_label = pick_client_label(licenses, request.client_label)
        reminder_date = request.reminder_date or reminder_date_today(now)
        phone = normalize_phone(primary.phone_number, self.config.default_country_code)

        content, total_outstanding = self.templates.render_chat_reminder(
            licenses,
            client_label=client_label,
            doc_hint=doc_hint_for(client_identifier),
            stage=request.stage,
            custom_intro=request.custom_intro,
            custom_outro=request.custom_outro,
            manual_message=request.manual_message,
            currency_fallback=primary.currency,
        )

        contact = self._resolve_contact(client, phone, client_label)
        inbox_id = self.config.inbox_id

        conversation = self._find_conversation(client, contact, inbox_id, license_ids, client_identifier)
        reused = conversation is not None
        if conversation is not None and request.skip_if_duplicate and is_duplicate_stage(
            conversation, request.stage, reminder_date
        ):
            metrics.increment_reminders_skipped(DUPLICATE_STAGE)
            logger.info(
                "chat_reminder_skipped",
                extra={
                    "conversation_id": conversation.id,
                    "stage": request.stage,
                    "reminder_date": reminder_date,
                },
            )
            return DispatchResult(
                success=False,
                conversation_id=conversation.id,
                license_ids=license_ids,
                skipped=True,
                reason=DUPLICATE_STAGE,
                stage=request.stage,
                reminder_date=reminder_date,
            )

        attributes = {
            **tag_attributes,
            "licenseIds": license_ids,
            "clientIdentifier": client_identifier,
            "clientLabel": client_label,
            "reminderStage": request.stage,
            "reminderDate": reminder_date,
        }
        attributes = {k: v for k, v in attributes.items() if v is not None}

        if conversation is None:
            try:
                conversation = client.create_conversation(contact.id, inbox_id, attributes)
            except errors.ExternalServiceError:
                metrics.increment_provider_failures("chat")
                raise

        try:
            client.send_message(conversation.id, content)
        except errors.ExternalServiceError:
            metrics.increment_provider_failures("chat")
            raise
        finally:
            metrics.observe_duration(start, "dispatch_duration_ms", {"channel": "chat"})

        metrics.increment_reminders_sent("chat")
        logger.info(
            "chat_reminder_sent",
            extra={
                "conversation_id": conversation.id,
                "license_count": len(licenses),
                "stage": request.stage,
                "conversation_reused": reused,
            },
        )

        self._tag_conversation(
            client,
            conversation.id,
            {
                **attributes,
                "lastReminderStage": request.stage,
                "lastReminderDate": reminder_date,
                "conversationReused": reused,
            },
        )
        self._log_sent(
            request=request,
            client_identifier=primary.ruc_or_dni or client_identifier,
            license_ids=license_ids,
            total_due=float(total_outstanding),
            message=content,
            conversation_id=conversation.id,
            sent_at=now,
        )

        return DispatchResult(
            success=True,
            conversation_id=conversation.id,
            license_ids=license_ids,
            conversation_reused=reused,
            stage=request.stage,
            reminder_date=reminder_date,
        )

    def _resolve_contact(self, client: ChatClient, phone: str, name: str) -> Contact:
        try:
            contact = client.search_contact(phone)
        except errors.ExternalServiceError as exc:
            logger.warning(
                "chat_contact_search_failed",
                extra={"error": exc.message, "provider_status": exc.provider_status},
            )
            contact = None
        if contact is not None:
            return contact
        try:
            return client.create_contact(name=name, phone_number=phone)
        except errors.ExternalServiceError:
            metrics.increment_provider_failures("chat")
            raise

    def _find_conversation(
        self,
        client: ChatClient,
        contact: Contact,
        inbox_id: int | None,
        license_ids: Sequence[str],
        client_identifier: str,
    ) -> Conversation | None:
        try:
            conversations = client.list_conversations(contact.id)
        except errors.ExternalServiceError as exc:
            logger.warning(
                "chat_conversation_list_failed",
                extra={"contact_id": contact.id, "error": exc.message},
            )
            conversations = []
        return select_conversation(conversations, inbox_id, license_ids, client_identifier)

    def _tag_conversation(
        self, client: ChatClient, conversation_id: int | str, attributes: dict[str, Any]
    ) -> None:
        try:
            client.update_conversation_attributes(conversation_id, attributes)
        except errors.ExternalServiceError as exc:
            logger.warning(
                "chat_conversation_tag_failed",
                extra={"conversation_id": conversation_id, "error": exc.message},
            )

    def _log_sent(
        self,
        *,
        request: ChatRequest,
        client_identifier: str,
        license_ids: list[str],
        total_due: float,
        message: str,
        conversation_id: int | str,
        sent_at: datetime,
    ) -> None:
        if self.job_store is None or self.job_store.logs is None:
            return
        entry = {
            "jobId": request.job_id,
            "rucOrDni": client_identifier,
            "licenseIds": license_ids,
            "severity": request.stage or "info",
            "totalDue": total_due,
            "message": message,
            "conversationId": conversation_id,
            "sentAt": to_iso(sent_at),
        }
        try:
            self.job_store.append_log(entry)
        except errors.DunningError as exc:
            logger.warning(
                "notification_log_failed",
                extra={"conversation_id": conversation_id, "error": exc.message},
            )
