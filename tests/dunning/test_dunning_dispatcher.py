"""Tests for the dunning dispatcher (chat and email paths) with in-memory providers."""

import pytest

from agents.dunning.config import DunningConfig
from agents.dunning.dispatcher import (
    ChatRequest,
    DunningDispatcher,
    doc_hint_for,
    normalize_phone,
)
from agents.dunning.errors import (
    ConfigurationError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from agents.dunning.job_store import NotificationJobStore
from agents.dunning.ledger import LicenseLedger
from backend.apps.licenses.repository import SqlLicenseRepository
from backend.apps.notifications.repository import (
    SqlJobRepository,
    SqlLogRepository,
    license_notification_logs,
)
from backend.core.observability import metrics

PHONE = "+51987654321"


@pytest.fixture
def config():
    return DunningConfig(
        chat_base_url="https://chat.example.test",
        chat_api_token="token",
        chat_account_id="7",
        chat_inbox_id="3",
        email_api_key="brevo-key",
    )


@pytest.fixture
def ledger(engine, config, clock):
    return LicenseLedger(SqlLicenseRepository(engine), config, clock=clock)


@pytest.fixture
def log_repository(engine):
    return SqlLogRepository(engine)


@pytest.fixture
def dispatcher(ledger, config, chat_client, email_sender, engine, log_repository, clock):
    job_store = NotificationJobStore(SqlJobRepository(engine), log_repository, config, clock=clock)
    return DunningDispatcher(
        ledger,
        config,
        chat_client=chat_client,
        email_sender=email_sender,
        job_store=job_store,
        clock=clock,
    )


@pytest.fixture
def license(ledger, license_payload):
    return ledger.create(license_payload())


class TestHelpers:
    def test_normalize_phone(self):
        assert normalize_phone("987 654 321") == PHONE
        assert normalize_phone("0987-654-321") == PHONE
        assert normalize_phone("+1 (555) 010-9999") == "+15550109999"
        assert normalize_phone("999", default_country_code="+34") == "+34999"

    def test_doc_hint(self):
        assert doc_hint_for("20123456789") == "20123456789"
        assert doc_hint_for("cliente") == "DNI/RUC"
        assert doc_hint_for(None) == "DNI/RUC"

    def test_chat_request_defaults(self):
        request = ChatRequest.from_dict(None)
        assert request.skip_if_duplicate is True
        assert request.stage is None
        assert ChatRequest.from_dict({"skipIfDuplicate": False}).skip_if_duplicate is False

    @pytest.mark.parametrize(
        "value, expected",
        [("false", False), ("0", False), ("no", False), ("true", True), (1, True), (None, True)],
    )
    def test_chat_request_parses_skip_flag(self, value, expected):
        request = ChatRequest.from_dict({"skipIfDuplicate": value})
        assert request.skip_if_duplicate is expected


class TestChatPath:
    """Test contact/conversation resolution, duplicate suppression and sending."""

    def test_first_reminder_creates_contact_and_conversation(
        self, dispatcher, chat_client, license, log_repository
    ):
        result = dispatcher.send_chat(license.id, ChatRequest(stage="due_today", job_id="job-1"))

        assert result.success is True
        assert result.conversation_reused is False
        assert result.reminder_date == "2026-03-15"
        assert PHONE in chat_client.contacts

        conversation = chat_client.conversations[result.conversation_id]
        assert conversation.inbox_id == 3
        assert conversation.attributes["licenseId"] == license.id
        assert conversation.attributes["licenseKey"] == license.license_key
        assert conversation.attributes["lastReminderStage"] == "due_today"
        assert conversation.attributes["lastReminderDate"] == "2026-03-15"

        message = chat_client.messages[0]["content"]
        assert message.startswith("Hola Acme SAC 👋")
        assert "Hoy vence tu licencia" in message
        assert "Total estimado pendiente: S/ 200.00" in message
        assert "pago 20123456789 S/ <monto>" in message

        logs = log_repository.list_for("20123456789")
        assert len(logs) == 1
        assert logs[0].job_id == "job-1"
        assert logs[0].severity == "due_today"
        assert logs[0].total_due == 200.0
        assert logs[0].message_length == len(message)
        assert metrics.get_metrics()["reminders_sent_total{channel=chat}"]["count"] == 1

    def test_same_stage_same_day_is_skipped(self, dispatcher, chat_client, license):
        contact = chat_client.add_contact(PHONE)
        existing = chat_client.add_conversation(
            contact,
            licenseId=license.id,
            lastReminderStage="due_today",
            lastReminderDate="2026-03-15",
        )

        result = dispatcher.send_chat(license.id, ChatRequest(stage="due_today"))

        assert result.to_dict() == {
            "success": False,
            "skipped": True,
            "reason": "duplicate_stage",
            "conversationId": existing.id,
        }
        assert chat_client.messages == []
        assert metrics.get_metrics()["reminders_skipped_total{reason=duplicate_stage}"]["count"] == 1

    def test_legacy_stage_attributes_are_honoured(self, dispatcher, chat_client, license):
        contact = chat_client.add_contact(PHONE)
        chat_client.add_conversation(
            contact, reminderStage="pre_due_1d", reminderDate="2026-03-15"
        )

        result = dispatcher.send_chat(license.id, ChatRequest(stage="pre_due_1d"))

        assert result.skipped is True

    def test_duplicate_check_can_be_disabled(self, dispatcher, chat_client, license):
        contact = chat_client.add_contact(PHONE)
        existing = chat_client.add_conversation(
            contact, lastReminderStage="due_today", lastReminderDate="2026-03-15"
        )

        result = dispatcher.send_chat(
            license.id, ChatRequest(stage="due_today", skip_if_duplicate=False)
        )

        assert result.success is True
        assert result.conversation_id == existing.id
        assert result.conversation_reused is True
        assert chat_client.attribute_updates[-1]["conversationReused"] is True

    def test_new_day_reuses_open_conversation(self, dispatcher, chat_client, license):
        contact = chat_client.add_contact(PHONE)
        existing = chat_client.add_conversation(
            contact, lastReminderStage="due_today", lastReminderDate="2026-03-14"
        )

        result = dispatcher.send_chat(license.id, ChatRequest(stage="due_today"))

        assert result.conversation_id == existing.id
        assert len(chat_client.messages) == 1

    def test_tagged_conversation_is_preferred(self, dispatcher, chat_client, license):
        contact = chat_client.add_contact(PHONE)
        chat_client.add_conversation(contact)
        tagged = chat_client.add_conversation(contact, licenseId=license.id)

        result = dispatcher.send_chat(license.id, ChatRequest())

        assert result.conversation_id == tagged.id

    def test_resolved_or_foreign_inbox_conversations_are_not_reused(
        self, dispatcher, chat_client, license
    ):
        contact = chat_client.add_contact(PHONE)
        resolved = chat_client.add_conversation(contact, status="resolved", licenseId=license.id)
        foreign = chat_client.add_conversation(contact, inbox_id=99)

        result = dispatcher.send_chat(license.id, ChatRequest(stage="overdue"))

        assert result.conversation_id not in (resolved.id, foreign.id)
        assert result.conversation_reused is False

    def test_search_and_listing_failures_are_not_fatal(self, dispatcher, chat_client, license):
        chat_client.fail_on = {"search_contact", "list_conversations"}

        result = dispatcher.send_chat(license.id, ChatRequest())

        assert result.success is True
        assert len(chat_client.messages) == 1

    def test_tagging_failure_is_best_effort(self, dispatcher, chat_client, license):
        chat_client.fail_on = {"update_conversation_attributes"}

        result = dispatcher.send_chat(license.id, ChatRequest(stage="overdue"))

        assert result.success is True
        assert chat_client.attribute_updates == []

    def test_log_storage_failure_does_not_fail_the_send(
        self, dispatcher, chat_client, license, engine, caplog
    ):
        license_notification_logs.drop(engine)

        with caplog.at_level("WARNING", logger="agents.dunning.dispatcher"):
            result = dispatcher.send_chat(license.id, ChatRequest(stage="overdue"))

        assert result.success is True
        assert len(chat_client.messages) == 1
        assert any(r.getMessage() == "notification_log_failed" for r in caplog.records)

    @pytest.mark.parametrize("action", ["create_contact", "create_conversation", "send_message"])
    def test_provider_failures_propagate(self, dispatcher, chat_client, license, action):
        chat_client.fail_on = {action}

        with pytest.raises(ExternalServiceError) as exc:
            dispatcher.send_chat(license.id, ChatRequest())

        assert exc.value.provider == "chatwoot"
        assert metrics.get_metrics()["provider_failures_total{channel=chat}"]["count"] == 1

    def test_manual_message_keeps_payment_instruction(self, dispatcher, chat_client, license):
        dispatcher.send_chat(license.id, ChatRequest(manual_message="Recordatorio especial"))

        content = chat_client.messages[0]["content"]
        assert content.startswith("Recordatorio especial\n\nCuando completes el pago")
        assert "Resumen de tus servicios" not in content

    def test_custom_intro_and_outro(self, dispatcher, chat_client, license):
        dispatcher.send_chat(
            license.id, ChatRequest(custom_intro="Hola de nuevo", custom_outro="Saludos")
        )

        content = chat_client.messages[0]["content"]
        assert "Hola de nuevo" in content
        assert "Saludos" in content

    def test_license_without_phone(self, dispatcher, ledger, license_payload):
        lic = ledger.create(license_payload(phoneNumber=None))
        with pytest.raises(ValidationError):
            dispatcher.send_chat(lic.id, ChatRequest())

    def test_unknown_license(self, dispatcher):
        with pytest.raises(NotFoundError):
            dispatcher.send_chat("missing", ChatRequest())

    def test_missing_chat_configuration(self, ledger, license, chat_client):
        dispatcher = DunningDispatcher(ledger, DunningConfig(), chat_client=chat_client)
        with pytest.raises(ConfigurationError) as exc:
            dispatcher.send_chat(license.id, ChatRequest())
        assert "CHATWOOT_BASE_URL" in exc.value.missing


class TestGroupChat:
    """Test the aggregated reminder for several licenses of one client."""

    def test_group_reminder_lists_every_license(self, dispatcher, chat_client, ledger, license_payload):
        a = ledger.create(license_payload(phoneNumber=None, domain="a.pe"))
        b = ledger.create(license_payload(domain="b.pe", amount=100))

        result = dispatcher.send_chat_group(
            ChatRequest(license_ids=[a.id, b.id], stage="overdue", client_label="Grupo Acme")
        )

        assert result.success is True
        assert result.license_ids == [a.id, b.id]
        content = chat_client.messages[0]["content"]
        assert content.startswith("Hola Grupo Acme 👋")
        assert "1. Hosting • a.pe" in content
        assert "2. Hosting • b.pe" in content
        assert "Total estimado pendiente: S/ 300.00" in content
        conversation = chat_client.conversations[result.conversation_id]
        assert conversation.attributes["aggregated"] is True
        assert conversation.attributes["licenseIds"] == [a.id, b.id]

    def test_group_requires_license_ids(self, dispatcher):
        with pytest.raises(ValidationError):
            dispatcher.send_chat_group(ChatRequest())

    def test_group_with_unknown_ids(self, dispatcher):
        with pytest.raises(NotFoundError):
            dispatcher.send_chat_group(ChatRequest(license_ids=["x", "y"]))

    def test_group_without_any_phone(self, dispatcher, ledger, license_payload):
        a = ledger.create(license_payload(phoneNumber=None))
        with pytest.raises(ValidationError):
            dispatcher.send_chat_group(ChatRequest(license_ids=[a.id]))


class TestEmailPath:
    """Test the license summary email."""

    def test_send_email(self, dispatcher, email_sender, license):
        result = dispatcher.send_email(license.id)

        assert result == {"success": True, "messageId": "msg-1"}
        sent = email_sender.sent[0]
        assert sent["to"] == "billing@acme.pe"
        assert sent["to_name"] == "Acme SAC"
        assert sent["subject"] == f"Detalles de tu licencia {license.license_key}"
        assert "Licencia: " + license.license_key in sent["text"]
        assert "Monto: S/ 200.00" in sent["text"]
        assert "<td" in sent["html"]

    def test_license_without_email(self, dispatcher, ledger, license_payload):
        lic = ledger.create(license_payload(email=None))
        with pytest.raises(ValidationError):
            dispatcher.send_email(lic.id)

    def test_missing_email_configuration(self, ledger, license, email_sender):
        dispatcher = DunningDispatcher(ledger, DunningConfig(), email_sender=email_sender)
        with pytest.raises(ConfigurationError) as exc:
            dispatcher.send_email(license.id)
        assert exc.value.missing == ["BREVO_API_KEY"]

    def test_provider_failure_propagates(self, dispatcher, email_sender, license):
        email_sender.fail_with = ExternalServiceError(
            "Email provider rejected request", provider="brevo", status_code=400, detail="bad sender"
        )

        with pytest.raises(ExternalServiceError) as exc:
            dispatcher.send_email(license.id)

        assert exc.value.to_dict()["providerDetail"] == "bad sender"
        assert metrics.get_metrics()["provider_failures_total{channel=email}"]["count"] == 1
        assert "reminders_sent_total{channel=email}" not in metrics.get_metrics()
