"""Chat channel adapter for WhatsApp-style business messaging webhooks."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from ..conversations.models import Channel, ContactEvidence
from .base import ChannelAdapter, normalize_phone


class ChatAdapter(ChannelAdapter):
    channel = Channel.CHAT
    max_part_length = 4096

    def contact_evidence(self, contact: Mapping[str, Any]) -> ContactEvidence:
        # Provider-verified sender number.
        return ContactEvidence(
            phone=normalize_phone(contact.get("phone")),
            phone_verified=True,
            display_name=(str(contact.get("name") or "").strip() or None),
        )

    def verify_signature(
        self, body: bytes, headers: Mapping[str, str], secret: str | None
    ) -> bool:
        if not secret:
            return True
        received = headers.get("X-Hub-Signature-256")
        if not received:
            return False
        digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        expected = f"sha256={digest}"
        return hmac.compare_digest(received, expected)

    def parse_incoming(
        self, payload: Mapping[str, Any], headers: Mapping[str, str]
    ) -> Iterable[dict[str, Any]]:
        for entry in payload.get("entry", []):
            for change in entry.get("changes", []):
                value = change.get("value", {})
                contacts = {c.get("wa_id"): c for c in value.get("contacts", [])}
                for message in value.get("messages", []):
                    sender_id = message.get("from") or ""
                    contact = contacts.get(sender_id, {})
                    name = contact.get("profile", {}).get("name")
                    text = ""
                    attachments = []
                    message_type = message.get("type")
                    if message_type == "text":
                        text = (message.get("text") or {}).get("body", "")
                    elif message_type in {"image", "audio", "video", "document"}:
                        media = message.get(message_type, {})
                        attachments.append({"type": message_type, **media})
                        text = media.get("caption", "")
                    elif message_type == "interactive":
                        interactive = message.get("interactive", {})
                        text = interactive.get("text") or interactive.get("title") or ""
                    timestamp = message.get("timestamp")
                    if timestamp:
                        try:
                            sent_at = datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
                        except (ValueError, TypeError):
                            sent_at = datetime.now(timezone.utc)
                    else:
                        sent_at = datetime.now(timezone.utc)
                    yield {
                        "channel": self.channel.value,
                        "channel_message_id": message.get("id") or "",
                        "contact": {"phone": sender_id or None, "name": name},
                        "body": text,
                        "received_at": sent_at.isoformat(),
                        "metadata": {
                            "message_type": message_type,
                            "attachments": attachments,
                            "business_account": value.get("metadata", {}),
                        },
                    }
