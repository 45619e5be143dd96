"""Tests for the Brevo email client."""

import json

import httpx
import pytest

from agents.dunning.errors import ConfigurationError, ExternalServiceError
from backend.integrations.brevo_client import BrevoClient, generate_message_id


def _client(handler) -> BrevoClient:
    return BrevoClient(
        api_key="test-key",
        sender_email="test@example.com",
        sender_name="Test Sender",
        transport=httpx.MockTransport(handler),
    )


class TestBrevoClient:
    """Test Brevo email client."""

    def test_missing_api_key(self):
        """Test client construction without API key."""
        with pytest.raises(ConfigurationError) as exc:
            BrevoClient(api_key="")
        assert exc.value.missing == ["BREVO_API_KEY"]

    def test_from_settings(self, test_settings):
        """Test construction from application settings."""
        client = BrevoClient.from_settings(test_settings)
        assert client.api_key == "brevo-test-key"
        client.close()

    def test_send_email_success(self):
        """Test a successful send and the request shape."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"messageId": "<brevo-1@smtp>"})

        with _client(handler) as client:
            result = client.send_email(
                to="billing@acme.pe",
                subject="Detalles de tu licencia LIC-1",
                html="<p>Hola</p>",
                text="Hola",
                to_name="Acme SAC",
            )

        assert result.success is True
        assert result.message_id == "<brevo-1@smtp>"
        assert seen["url"] == "https://api.brevo.com/v3/smtp/email"
        assert seen["headers"]["api-key"] == "test-key"
        body = seen["body"]
        assert body["sender"] == {"name": "Test Sender", "email": "test@example.com"}
        assert body["to"] == [{"email": "billing@acme.pe", "name": "Acme SAC"}]
        assert body["htmlContent"] == "<p>Hola</p>"
        assert body["textContent"] == "Hola"
        assert body["headers"]["X-Message-ID"]

    def test_send_email_without_provider_id(self):
        """Test fallback to the local message id when the provider returns none."""
        with _client(lambda request: httpx.Response(201)) as client:
            result = client.send_email("a@b.pe", "Asunto", "<p>x</p>", "x")

        assert result.success is True
        assert result.message_id

    def test_send_email_provider_error(self):
        """Test non-2xx answers carry the provider's raw text."""
        handler = lambda request: httpx.Response(400, text='{"code":"invalid_parameter"}')  # noqa: E731

        with _client(handler) as client:
            with pytest.raises(ExternalServiceError) as exc:
                client.send_email("a@b.pe", "Asunto", "<p>x</p>", "x")

        assert exc.value.provider == "brevo"
        assert exc.value.provider_status == 400
        assert exc.value.provider_detail == '{"code":"invalid_parameter"}'

    def test_send_email_network_error(self):
        """Test transport failures are raised as provider errors."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with _client(handler) as client:
            with pytest.raises(ExternalServiceError) as exc:
                client.send_email("a@b.pe", "Asunto", "<p>x</p>", "x")

        assert exc.value.provider_status is None
        assert "connection refused" in exc.value.provider_detail

    def test_message_id_is_deterministic(self, now):
        """Test message ids are stable for the same input."""
        first = generate_message_id("A@B.pe", "Asunto", now)
        assert first == generate_message_id("a@b.pe", "Asunto", now)
        assert first != generate_message_id("a@b.pe", "Otro", now)
