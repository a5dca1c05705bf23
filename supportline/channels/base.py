"""Base abstractions for channel adapters.

An adapter owns everything channel specific: turning a provider webhook into
canonical inbound events, validating and normalizing a canonical event into an
:class:`~supportline.conversations.models.InboundMessage`, checking webhook
signatures and shaping outbound text into sendable parts.
"""

from __future__ import annotations

import hmac
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from ..conversations.models import Channel, ContactEvidence, InboundMessage
from ..errors import NormalizationError

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def normalize_email(value: object) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip().lower()
    if not cleaned:
        return None
    if not _EMAIL_RE.match(cleaned):
        raise NormalizationError(f"invalid email address {cleaned!r}", field="email")
    return cleaned


def normalize_phone(value: object) -> str | None:
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    if not digits:
        return None
    if len(digits) < 6:
        raise NormalizationError(f"invalid phone number {value!r}", field="phone")
    return f"+{digits}"


def normalize_token(value: object) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def parse_timestamp(value: object) -> datetime:
    """Parse ISO-8601 strings, epoch seconds or datetimes into aware UTC."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise NormalizationError(
                f"invalid received_at {value!r}", field="received_at"
            ) from exc
    else:
        raise NormalizationError("received_at is required", field="received_at")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def split_text(text: str, limit: int) -> list[str]:
    """Split ``text`` into parts of at most ``limit`` characters.

    Sentence boundaries are preferred, then word boundaries; a single word
    longer than ``limit`` is hard-cut.
    """

    text = text.strip()
    if not text:
        return []
    if len(text) <= limit:
        return [text]
    parts: list[str] = []
    current = ""
    for sentence in _SENTENCE_END.split(text):
        sentence = sentence.strip()
        if not sentence:
            continue
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= limit:
            current = candidate
            continue
        if current:
            parts.append(current)
            current = ""
        while len(sentence) > limit:
            cut = sentence.rfind(" ", 0, limit + 1)
            if cut <= 0:
                cut = limit
            parts.append(sentence[:cut].strip())
            sentence = sentence[cut:].strip()
        current = sentence
    if current:
        parts.append(current)
    return parts


class ChannelAdapter(ABC):
    """Abstract base class encapsulating channel-specific behaviour."""

    #: Channel handled by the adapter; also the registry key.
    channel: Channel
    #: Largest outbound part the provider accepts.
    max_part_length: int = 10_000

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    def normalize(self, raw_event: Mapping[str, Any]) -> InboundMessage:
        """Validate a canonical inbound event and build an InboundMessage."""

        if not isinstance(raw_event, Mapping):
            raise NormalizationError("inbound event must be an object")
        channel_message_id = str(raw_event.get("channel_message_id") or "").strip()
        if not channel_message_id:
            raise NormalizationError(
                "channel_message_id is required", field="channel_message_id"
            )
        contact_raw = raw_event.get("contact") or {}
        if not isinstance(contact_raw, Mapping):
            raise NormalizationError("contact must be an object", field="contact")
        contact = self.contact_evidence(contact_raw)
        if contact.is_empty():
            raise NormalizationError("no contact evidence supplied", field="contact")
        body = self.clean_body(str(raw_event.get("body") or ""))
        if not body:
            raise NormalizationError("message body is empty", field="body")
        metadata = raw_event.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise NormalizationError("metadata must be an object", field="metadata")
        return InboundMessage(
            channel=self.channel,
            channel_message_id=channel_message_id,
            contact=contact,
            body=body,
            received_at=parse_timestamp(raw_event.get("received_at")),
            subject=self.clean_subject(raw_event.get("subject")),
            metadata=dict(metadata),
        )

    @abstractmethod
    def contact_evidence(self, contact: Mapping[str, Any]) -> ContactEvidence:
        """Build normalized contact evidence from the event's contact block."""

    def clean_body(self, body: str) -> str:
        return body.strip()

    def clean_subject(self, subject: object) -> str | None:
        return None

    @abstractmethod
    def parse_incoming(
        self, payload: Mapping[str, Any], headers: Mapping[str, str]
    ) -> Iterable[dict[str, Any]]:
        """Convert a provider webhook payload into canonical inbound events."""

    def verify_signature(
        self, body: bytes, headers: Mapping[str, str], secret: str | None
    ) -> bool:
        """Validate authenticity of the webhook payload.

        The default implementation compares a shared token sent in the
        ``X-Webhook-Token`` header. Without a configured secret every request
        is accepted.
        """

        if not secret:
            return True
        received = headers.get("X-Webhook-Token")
        if not received:
            return False
        return hmac.compare_digest(received, secret)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    def format_outgoing(self, text: str, *, display_name: str | None = None) -> list[str]:
        """Shape reply text into the ordered parts to hand to the sender."""

        return split_text(text, self.max_part_length)
