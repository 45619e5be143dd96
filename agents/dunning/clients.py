"""Client interfaces used by the dispatcher.

The dispatcher only depends on these protocols; the Chatwoot and Brevo
implementations live in ``backend/integrations``.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class Contact:
    """A contact on the messaging platform."""

    id: int | str
    name: str | None = None
    phone_number: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Contact":
        """Create from API response."""
        return cls(id=data["id"], name=data.get("name"), phone_number=data.get("phone_number"))


@dataclass
class Conversation:
    """A conversation on the messaging platform."""

    id: int | str
    inbox_id: int | None = None
    status: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status != "resolved"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Conversation":
        """Create from API response.

        Reminder attributes may sit in ``additional_attributes`` or
        ``custom_attributes`` depending on how the conversation was created.
        """
        attributes = data.get("additional_attributes") or data.get("custom_attributes") or {}
        inbox_id = data.get("inbox_id")
        try:
            inbox_id = int(inbox_id) if inbox_id is not None else None
        except (TypeError, ValueError):
            inbox_id = None
        return cls(
            id=data["id"],
            inbox_id=inbox_id,
            status=data.get("status"),
            attributes=dict(attributes),
        )


@dataclass
class EmailResult:
    success: bool
    message_id: str | None = None


class ContactResolver(Protocol):
    def search_contact(self, phone_number: str) -> Contact | None: ...

    def create_contact(self, name: str, phone_number: str) -> Contact: ...


class ConversationResolver(Protocol):
    def list_conversations(self, contact_id: int | str) -> list[Conversation]: ...

    def create_conversation(
        self, contact_id: int | str, inbox_id: int, attributes: dict[str, Any]
    ) -> Conversation: ...

    def update_conversation_attributes(
        self, conversation_id: int | str, attributes: dict[str, Any]
    ) -> None: ...


class MessageSender(Protocol):
    def send_message(self, conversation_id: int | str, content: str) -> dict[str, Any]: ...


class ChatClient(ContactResolver, ConversationResolver, MessageSender, Protocol):
    """A messaging platform client providing every chat capability."""


class EmailSender(Protocol):
    def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        to_name: str | None = None,
    ) -> EmailResult: ...
