"""E-mail channel adapter."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from email.utils import parseaddr, parsedate_to_datetime
from typing import Any

from ..conversations.models import Channel, ContactEvidence
from .base import ChannelAdapter, normalize_email, normalize_phone

_QUOTE_HEADER = re.compile(r"^\s*On .+wrote:\s*$", re.M)
_SIGNATURE = "Best regards,\nCustomer Support"


class EmailAdapter(ChannelAdapter):
    channel = Channel.EMAIL
    max_part_length = 100_000

    def contact_evidence(self, contact: Mapping[str, Any]) -> ContactEvidence:
        # The address comes from the receiving mailbox, so it is vouched for.
        return ContactEvidence(
            email=normalize_email(contact.get("email")),
            phone=normalize_phone(contact.get("phone")),
            email_verified=True,
            display_name=(str(contact.get("name") or "").strip() or None),
        )

    def clean_body(self, body: str) -> str:
        match = _QUOTE_HEADER.search(body)
        if match:
            body = body[: match.start()]
        lines = [line for line in body.splitlines() if not line.lstrip().startswith(">")]
        return "\n".join(lines).strip()

    def clean_subject(self, subject: object) -> str | None:
        if subject is None:
            return None
        cleaned = " ".join(str(subject).split())
        return cleaned or None

    def parse_incoming(
        self, payload: Mapping[str, Any], headers: Mapping[str, str]
    ) -> Iterable[dict[str, Any]]:
        items = payload.get("items")
        messages = items if isinstance(items, list) else [payload]
        for message in messages:
            name, address = parseaddr(str(message.get("from") or ""))
            message_id = message.get("message_id") or message.get("Message-Id")
            yield {
                "channel": self.channel.value,
                "channel_message_id": str(message_id or "").strip("<> "),
                "contact": {"email": address or None, "name": name or None},
                "subject": message.get("subject"),
                "body": message.get("text") or message.get("body") or "",
                "received_at": _received_at(message),
                "metadata": {
                    "in_reply_to": message.get("in_reply_to"),
                    "to": message.get("to"),
                },
            }

    def format_outgoing(self, text: str, *, display_name: str | None = None) -> list[str]:
        first = (display_name or "").split()
        greeting = f"Hi {first[0]}," if first else "Hello,"
        body = f"{greeting}\n\n{text.strip()}\n\n{_SIGNATURE}"
        return super().format_outgoing(body)


def _received_at(message: Mapping[str, Any]) -> str:
    timestamp = message.get("timestamp")
    if timestamp:
        try:
            return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).isoformat()
        except (TypeError, ValueError, OverflowError):
            pass
    date_header = message.get("date")
    if date_header:
        try:
            return parsedate_to_datetime(str(date_header)).isoformat()
        except (TypeError, ValueError):
            return str(date_header)
    return datetime.now(timezone.utc).isoformat()
