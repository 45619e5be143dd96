import json
import socket
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from agents.dunning.clients import Contact, Conversation, EmailResult
from agents.dunning.errors import ExternalServiceError
from backend.core.config import Settings
from backend.core.database import create_db_engine, metadata
from backend.core.observability import metrics

# Registers the tables on the shared metadata
import backend.apps.licenses.repository  # noqa: F401
import backend.apps.notifications.repository  # noqa: F401

VIOLATIONS = []
ARTIFACTS_DIR = Path("artifacts")
REPORT = ARTIFACTS_DIR / "egress-violations.json"

API_KEY = "test-licensing-key"
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    """Block real network egress; provider clients must use a mock transport."""
    real_create_connection = socket.create_connection
    real_handle_request = httpx.HTTPTransport.handle_request

    def guard_create_connection(address, *args, **kwargs):
        VIOLATIONS.append({"fn": "create_connection", "address": str(address)})
        raise RuntimeError("Egress blocked: create_connection disallowed")

    def guard_handle_request(self, request):
        VIOLATIONS.append({"fn": "httpx.HTTPTransport", "url": str(request.url)})
        raise RuntimeError("Egress blocked: real HTTP transport not allowed in tests")

    socket.create_connection = guard_create_connection  # type: ignore[assignment]
    httpx.HTTPTransport.handle_request = guard_handle_request  # type: ignore[assignment]

    yield

    # Restore
    socket.create_connection = real_create_connection  # type: ignore[assignment]
    httpx.HTTPTransport.handle_request = real_handle_request  # type: ignore[assignment]

    if VIOLATIONS:
        ARTIFACTS_DIR.mkdir(parents=True, exist_ok=True)
        REPORT.write_text(json.dumps(VIOLATIONS, indent=2))


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset_metrics()
    yield
    metrics.reset_metrics()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock(now):
    return lambda: now


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database with all tables."""
    eng = create_db_engine("sqlite://")
    metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        LICENSING_API_KEY=API_KEY,
        BREVO_API_KEY="brevo-test-key",
        CHATWOOT_BASE_URL="https://chat.example.test",
        CHATWOOT_API_TOKEN="chat-token",
        CHATWOOT_ACCOUNT_ID="7",
        CHATWOOT_INBOX_ID="3",
        COMPANY_NAME="Nexius",
    )


class FakeEmailSender:
    """In-memory EmailSender recording every send."""

    def __init__(self, fail_with: ExternalServiceError | None = None):
        self.sent: list[dict[str, Any]] = []
        self.fail_with = fail_with

    def send_email(self, to, subject, html, text, to_name=None) -> EmailResult:
        if self.fail_with:
            raise self.fail_with
        self.sent.append(
            {"to": to, "subject": subject, "html": html, "text": text, "to_name": to_name}
        )
        return EmailResult(success=True, message_id=f"msg-{len(self.sent)}")


class FakeChatClient:
    """In-memory chat platform implementing the contact/conversation/message protocols."""

    def __init__(self):
        self.contacts: dict[str, Contact] = {}
        self.conversations: dict[int, Conversation] = {}
        self.contact_conversations: dict[int, list[int]] = {}
        self.messages: list[dict[str, Any]] = []
        self.attribute_updates: list[dict[str, Any]] = []
        self.fail_on: set[str] = set()
        self._next_id = 100

    def _maybe_fail(self, action: str):
        if action in self.fail_on:
            raise ExternalServiceError(
                f"Chat platform rejected request: {action}",
                provider="chatwoot",
                status_code=500,
                detail="boom",
            )

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def add_contact(self, phone_number: str, name: str = "Cliente") -> Contact:
        contact = Contact(id=self._new_id(), name=name, phone_number=phone_number)
        self.contacts[phone_number] = contact
        return contact

    def add_conversation(
        self, contact: Contact, inbox_id: int = 3, status: str = "open", **attributes
    ) -> Conversation:
        conversation = Conversation(
            id=self._new_id(), inbox_id=inbox_id, status=status, attributes=dict(attributes)
        )
        self.conversations[conversation.id] = conversation
        self.contact_conversations.setdefault(contact.id, []).append(conversation.id)
        return conversation

    def search_contact(self, phone_number):
        self._maybe_fail("search_contact")
        return self.contacts.get(phone_number)

    def create_contact(self, name, phone_number):
        self._maybe_fail("create_contact")
        return self.add_contact(phone_number, name)

    def list_conversations(self, contact_id):
        self._maybe_fail("list_conversations")
        ids = self.contact_conversations.get(contact_id, [])
        return [self.conversations[i] for i in ids]

    def create_conversation(self, contact_id, inbox_id, attributes):
        self._maybe_fail("create_conversation")
        conversation = Conversation(
            id=self._new_id(), inbox_id=inbox_id, status="open", attributes=dict(attributes)
        )
        self.conversations[conversation.id] = conversation
        self.contact_conversations.setdefault(contact_id, []).append(conversation.id)
        return conversation

    def update_conversation_attributes(self, conversation_id, attributes):
        self._maybe_fail("update_conversation_attributes")
        self.attribute_updates.append({"conversation_id": conversation_id, **attributes})
        self.conversations[conversation_id].attributes.update(attributes)

    def send_message(self, conversation_id, content):
        self._maybe_fail("send_message")
        self.messages.append({"conversation_id": conversation_id, "content": content})
        return {"id": len(self.messages)}


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def chat_client() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture
def app(test_settings, engine, email_sender, chat_client, clock):
    from backend.app import create_app

    return create_app(
        test_settings,
        engine,
        email_sender=email_sender,
        chat_client=chat_client,
        clock=clock,
    )


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"X-API-Key": API_KEY}


@pytest.fixture
def services(app):
    return app.state.services


def _license_payload(**overrides) -> dict[str, Any]:
    payload = {
        "companyName": "Acme SAC",
        "rucOrDni": "20123456789",
        "amount": 200,
        "frequency": "monthly",
        "currency": "PEN",
        "domain": "acme.pe",
        "serviceType": "Hosting",
        "phoneNumber": "987 654 321",
        "email": "billing@acme.pe",
        "gracePeriodDays": 3,
    }
    payload.update(overrides)
    return payload


def _job_payload(**overrides) -> dict[str, Any]:
    payload = {
        "rucOrDni": "20123456789",
        "companyName": "Acme SAC",
        "licenseIds": ["lic-1", "lic-2"],
        "licenses": [
            {"licenseId": "lic-1", "service": "Hosting", "notifyType": "overdue", "amount": 100},
            {"licenseId": "lic-2", "service": "Correo", "notifyType": "overdue", "amount": 50},
        ],
        "severity": "critical",
        "severityScore": 90,
        "totalBase": 150,
        "totalLate": 15,
        "totalDue": 165,
        "message": "Hola Acme, tienes pagos pendientes.",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def license_payload():
    """Factory for a valid camelCase license body."""
    return _license_payload


@pytest.fixture
def job_payload():
    """Factory for a fully populated job body accepted by the strict path."""
    return _job_payload
