"""Web form channel adapter."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from ..conversations.models import Channel, ContactEvidence
from .base import ChannelAdapter, normalize_email, normalize_phone, normalize_token


class WebFormAdapter(ChannelAdapter):
    channel = Channel.WEB_FORM
    max_part_length = 20_000

    def contact_evidence(self, contact: Mapping[str, Any]) -> ContactEvidence:
        # Typed into a form: nothing here is verified.
        return ContactEvidence(
            email=normalize_email(contact.get("email")),
            phone=normalize_phone(contact.get("phone")),
            anon_token=normalize_token(contact.get("anon_token")),
            display_name=(str(contact.get("name") or "").strip() or None),
        )

    def clean_subject(self, subject: object) -> str | None:
        if subject is None:
            return None
        cleaned = str(subject).strip()
        return cleaned or None

    def parse_incoming(
        self, payload: Mapping[str, Any], headers: Mapping[str, str]
    ) -> Iterable[dict[str, Any]]:
        submission_id = (
            payload.get("submission_id") or payload.get("id") or _submission_digest(payload, headers)
        )
        yield {
            "channel": self.channel.value,
            "channel_message_id": str(submission_id),
            "contact": {
                "email": payload.get("email"),
                "phone": payload.get("phone"),
                "anon_token": payload.get("anon_token") or headers.get("X-Anon-Token"),
                "name": payload.get("name"),
            },
            "subject": payload.get("subject"),
            "body": payload.get("message") or payload.get("body") or "",
            "received_at": payload.get("submitted_at")
            or datetime.now(timezone.utc).isoformat(),
            "metadata": {
                "page": payload.get("page"),
                "category": payload.get("category"),
            },
        }


def _submission_digest(payload: Mapping[str, Any], headers: Mapping[str, str]) -> str:
    """Stable id for forms that post without one, so a resubmitted payload dedupes."""

    material = json.dumps(
        [
            payload.get("email"),
            payload.get("phone"),
            payload.get("anon_token") or headers.get("X-Anon-Token"),
            payload.get("message") or payload.get("body") or "",
            payload.get("submitted_at"),
        ],
        default=str,
    )
    return "wf-" + hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]
