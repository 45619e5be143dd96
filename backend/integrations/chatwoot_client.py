"""Chatwoot REST client for chat (WhatsApp inbox) reminders.

Implements the contact, conversation and message capabilities the dunning
dispatcher needs. Every non-2xx answer or transport failure is raised as
``ExternalServiceError``; callers decide which failures are best effort.
"""

import logging
from typing import Any

import httpx

from agents.dunning.clients import Contact, Conversation
from agents.dunning.errors import ConfigurationError, ExternalServiceError
from backend.core.config import Settings, settings as default_settings

PROVIDER = "chatwoot"


class ChatwootClient:
    """Account-scoped Chatwoot API client."""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        account_id: str,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ):
        missing = [
            name
            for name, value in (
                ("CHATWOOT_BASE_URL", base_url),
                ("CHATWOOT_API_TOKEN", api_token),
                ("CHATWOOT_ACCOUNT_ID", account_id),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Missing chat settings: {', '.join(missing)}", missing=missing
            )

        self.logger = logging.getLogger(__name__)
        self.account_id = account_id
        self._client = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/api/v1/accounts/{account_id}",
            headers={"api_access_token": api_token, "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, transport: httpx.BaseTransport | None = None
    ) -> "ChatwootClient":
        s = settings or default_settings
        return cls(
            base_url=s.CHATWOOT_BASE_URL,
            api_token=s.CHATWOOT_API_TOKEN,
            account_id=s.CHATWOOT_ACCOUNT_ID,
            timeout=s.HTTP_TIMEOUT_SECONDS,
            transport=transport,
        )

    def _request(self, method: str, path: str, action: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise ExternalServiceError(
                f"Chat platform unreachable: {action}", provider=PROVIDER, detail=str(e)
            ) from e
        if not response.is_success:
            self.logger.error(
                "Chatwoot request failed",
                extra={"action": action, "status_code": response.status_code},
            )
            raise ExternalServiceError(
                f"Chat platform rejected request: {action}",
                provider=PROVIDER,
                status_code=response.status_code,
                detail=response.text,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ExternalServiceError(
                f"Chat platform returned invalid JSON: {action}",
                provider=PROVIDER,
                status_code=response.status_code,
                detail=response.text,
            ) from e

    @staticmethod
    def _payload_list(data: Any) -> list[dict[str, Any]]:
        """Extract the record list from ``{payload: [...]}`` / ``{data: ...}`` envelopes."""
        if isinstance(data, list):
            return data
        if not isinstance(data, dict):
            return []
        for key in ("payload", "data"):
            value = data.get(key)
            if isinstance(value, list):
                return value
            if isinstance(value, dict) and isinstance(value.get("payload"), list):
                return value["payload"]
        return []

    def search_contact(self, phone_number: str) -> Contact | None:
        data = self._request(
            "GET", "/contacts/search", "search contact", params={"q": phone_number}
        )
        for item in self._payload_list(data):
            if item.get("phone_number") == phone_number:
                return Contact.from_dict(item)
        return None

    def create_contact(self, name: str, phone_number: str) -> Contact:
        data = self._request(
            "POST",
            "/contacts",
            "create contact",
            json={"name": name, "phone_number": phone_number},
        )
        # Newer versions wrap the contact: {"payload": {"contact": {...}}}
        payload = data.get("payload") if isinstance(data, dict) else None
        if isinstance(payload, dict):
            data = payload.get("contact") or payload
        if not isinstance(data, dict) or "id" not in data:
            raise ExternalServiceError(
                "Chat platform returned no contact id", provider=PROVIDER, detail=str(data)
            )
        self.logger.info("Chatwoot contact created", extra={"contact_id": data["id"]})
        return Contact.from_dict(data)

    def list_conversations(self, contact_id: int | str) -> list[Conversation]:
        data = self._request(
            "GET", f"/contacts/{contact_id}/conversations", "list conversations"
        )
        return [Conversation.from_dict(item) for item in self._payload_list(data) if "id" in item]

    def create_conversation(
        self, contact_id: int | str, inbox_id: int, attributes: dict[str, Any]
    ) -> Conversation:
        data = self._request(
            "POST",
            "/conversations",
            "create conversation",
            json={
                "inbox_id": inbox_id,
                "contact_id": contact_id,
                "additional_attributes": attributes,
            },
        )
        if not isinstance(data, dict) or "id" not in data:
            raise ExternalServiceError(
                "Chat platform returned no conversation id", provider=PROVIDER, detail=str(data)
            )
        conversation = Conversation.from_dict(data)
        if conversation.inbox_id is None:
            conversation.inbox_id = inbox_id
        if not conversation.attributes:
            conversation.attributes = dict(attributes)
        self.logger.info(
            "Chatwoot conversation created", extra={"conversation_id": conversation.id}
        )
        return conversation

    def update_conversation_attributes(
        self, conversation_id: int | str, attributes: dict[str, Any]
    ) -> None:
        self._request(
            "PATCH",
            f"/conversations/{conversation_id}",
            "update conversation",
            json={"additional_attributes": attributes},
        )

    def send_message(self, conversation_id: int | str, content: str) -> dict[str, Any]:
        data = self._request(
            "POST",
            f"/conversations/{conversation_id}/messages",
            "send message",
            json={"content": content, "message_type": "outgoing"},
        )
        self.logger.info(
            "Chatwoot message sent",
            extra={"conversation_id": conversation_id, "length": len(content)},
        )
        return data if isinstance(data, dict) else {}

    def close(self):
        """Close HTTP client connection."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
