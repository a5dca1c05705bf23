"""Read-side queries for operators and collaborators."""

from __future__ import annotations

import base64
import binascii
from datetime import datetime, timedelta, timezone
from uuid import UUID

from ..channels.base import normalize_email, normalize_phone, normalize_token
from ..errors import NotFoundError
from . import schemas
from .models import IdentifierType
from .repository import SupportRepository

MAX_PAGE_SIZE = 200
DEFAULT_PAGE_SIZE = 50
DEFAULT_METRICS_WINDOW = timedelta(hours=24)

_NORMALIZERS = {
    IdentifierType.EMAIL: normalize_email,
    IdentifierType.PHONE: normalize_phone,
    IdentifierType.ANON_TOKEN: normalize_token,
}


def encode_cursor(message: schemas.MessageRecord) -> str:
    raw = f"{message.created_at.isoformat()}|{message.id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> tuple[datetime, int]:
    """Return the ``(created_at, id)`` position encoded in ``cursor``.

    Raises:
        ValueError: the cursor is not one produced by :func:`encode_cursor`.
    """

    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        stamp, _, message_id = raw.rpartition("|")
        created_at = datetime.fromisoformat(stamp)
        position = int(message_id)
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValueError("invalid cursor") from exc
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at, position


class ConversationQueryService:
    """Customer lookup, paginated message history and channel metrics."""

    def __init__(self, repository: SupportRepository):
        self._repo = repository

    def lookup_customer(
        self, identifier_type: str, value: str
    ) -> schemas.CustomerLookupResponse:
        try:
            kind = IdentifierType(identifier_type)
        except ValueError as exc:
            raise ValueError(f"unknown identifier type {identifier_type!r}") from exc
        normalized = _NORMALIZERS[kind](value)
        if not normalized:
            raise ValueError("identifier value is required")
        matches = self._repo.find_identifiers([(kind.value, normalized)])
        if not matches:
            raise NotFoundError("customer not found", identifier_type=kind.value)
        customer = self._repo.get_customer(matches[0].customer_id)
        if customer is None:  # pragma: no cover - guarded by the foreign key
            raise NotFoundError("customer not found", identifier_type=kind.value)
        return schemas.CustomerLookupResponse(
            customer=customer,
            identifiers=self._repo.list_identifiers(customer.id),
            conversations=self._repo.list_conversations(customer.id),
        )

    def message_page(
        self,
        conversation_id: UUID,
        *,
        after: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> schemas.MessagePage:
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        position = decode_cursor(after) if after else None
        conversation = self._repo.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation not found", conversation_id=str(conversation_id))
        rows = self._repo.list_messages(conversation_id, after=position, limit=limit + 1)
        has_more = len(rows) > limit
        rows = rows[:limit]
        return schemas.MessagePage(
            conversation=conversation,
            ticket=self._repo.get_ticket_for_conversation(conversation_id),
            messages=rows,
            has_more=has_more,
            next_cursor=encode_cursor(rows[-1]) if has_more and rows else None,
        )

    def channel_metrics(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        *,
        now: datetime | None = None,
    ) -> schemas.ChannelMetricsResponse:
        until = _aware(until) or now or datetime.now(timezone.utc)
        since = _aware(since) or until - DEFAULT_METRICS_WINDOW
        if since >= until:
            raise ValueError("since must be earlier than until")
        return schemas.ChannelMetricsResponse(
            since=since, until=until, channels=self._repo.channel_metrics(since, until)
        )


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


__all__ = [
    "ConversationQueryService",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "decode_cursor",
    "encode_cursor",
]
