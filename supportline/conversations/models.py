"""Domain models shared by the normalizer, resolver and dispatcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class Channel(str, Enum):
    """Inbound channels handled by the core."""

    EMAIL = "email"
    CHAT = "chat"
    WEB_FORM = "web_form"


class IdentifierType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    ANON_TOKEN = "anon_token"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class Role(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    SYSTEM = "system"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.DELIVERED, DeliveryStatus.FAILED)


@dataclass(frozen=True)
class ContactEvidence:
    """Channel-supplied contact details for the sender of a message.

    Values are expected to be normalized already (lower-cased e-mail,
    ``+<digits>`` phone numbers); see :mod:`supportline.channels.normalizer`.
    """

    email: str | None = None
    phone: str | None = None
    anon_token: str | None = None
    email_verified: bool = False
    phone_verified: bool = False
    display_name: str | None = None

    def candidates(self) -> list[tuple[IdentifierType, str, bool]]:
        """Return ``(type, value, verified)`` triples, strongest first."""

        found: list[tuple[IdentifierType, str, bool]] = []
        if self.email:
            found.append((IdentifierType.EMAIL, self.email, self.email_verified))
        if self.phone:
            found.append((IdentifierType.PHONE, self.phone, self.phone_verified))
        if self.anon_token:
            found.append((IdentifierType.ANON_TOKEN, self.anon_token, False))
        return found

    def is_empty(self) -> bool:
        return not self.candidates()

    def lock_keys(self) -> list[str]:
        return sorted(f"{kind.value}:{value}" for kind, value, _ in self.candidates())

    def partition_key(self) -> str | None:
        candidates = self.candidates()
        if not candidates:
            return None
        kind, value, _ = candidates[0]
        return f"{kind.value}:{value}"


@dataclass
class InboundMessage:
    """Canonical representation of one inbound customer message."""

    channel: Channel
    channel_message_id: str
    contact: ContactEvidence
    body: str
    received_at: datetime
    subject: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def reply_destination(self) -> str | None:
        """Address a reply on the same channel should go to."""

        if self.channel is Channel.CHAT:
            return self.contact.phone
        if self.channel is Channel.EMAIL:
            return self.contact.email
        return self.contact.email or self.contact.anon_token

    def to_event(self) -> dict[str, Any]:
        """Serialise back into the canonical inbound event shape."""

        contact = {
            key: value
            for key, value in (
                ("email", self.contact.email),
                ("phone", self.contact.phone),
                ("anon_token", self.contact.anon_token),
                ("name", self.contact.display_name),
            )
            if value
        }
        event: dict[str, Any] = {
            "channel": self.channel.value,
            "channel_message_id": self.channel_message_id,
            "contact": contact,
            "body": self.body,
            "received_at": self.received_at.isoformat(),
            "metadata": dict(self.metadata),
        }
        if self.subject is not None:
            event["subject"] = self.subject
        return event


@dataclass
class ConversationAttachment:
    conversation_id: UUID
    created: bool
    initiating_channel: Channel


@dataclass
class EscalationDecision:
    should_escalate: bool
    reason: str | None = None
    urgency: str = "normal"
