"""Contracts for reply generation."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol
from uuid import UUID


@dataclass
class HistoryEntry:
    role: str
    channel: str
    content: str
    created_at: datetime


@dataclass
class CustomerContext:
    """What the responder may know about the customer and the conversation."""

    customer_id: UUID
    conversation_id: UUID
    channel: str
    display_name: str | None = None
    email: str | None = None
    phone: str | None = None
    ticket_category: str | None = None
    sentiment: float | None = None
    channels_seen: list[str] = field(default_factory=list)


@dataclass
class ResponderReply:
    text: str
    escalate: bool = False
    reason: str | None = None
    tool_calls_count: int = 0


class Responder(Protocol):
    def respond(
        self, history: Sequence[HistoryEntry], customer_context: CustomerContext
    ) -> ResponderReply: ...


class KnowledgeLookup(Protocol):
    def search(self, query: str, limit: int = 3) -> list[str]: ...


__all__ = [
    "CustomerContext",
    "HistoryEntry",
    "KnowledgeLookup",
    "Responder",
    "ResponderReply",
]
