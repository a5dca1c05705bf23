"""Pydantic schemas returned by the repository and the operator API."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class CustomerRecord(BaseModel):
    id: UUID
    email: str | None = None
    phone: str | None = None
    display_name: str | None = None
    created_at: datetime


class IdentifierRecord(BaseModel):
    id: UUID
    customer_id: UUID
    identifier_type: str
    value: str
    verified: bool = False
    created_at: datetime
    last_seen_at: datetime


class ConversationRecord(BaseModel):
    id: UUID
    customer_id: UUID
    initiating_channel: str
    status: str
    start_time: datetime
    end_time: datetime | None = None
    last_message_at: datetime
    sentiment_score: float | None = None
    resolution_type: str | None = None


class MessageRecord(BaseModel):
    id: int
    conversation_id: UUID
    channel: str
    direction: str
    role: str
    content: str
    subject: str | None = None
    created_at: datetime
    channel_message_id: str | None = None
    external_id: str | None = None
    destination: str | None = None
    delivery_status: str | None = None
    processing_attempts: int = 0
    processed_at: datetime | None = None
    sentiment_score: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class TicketRecord(BaseModel):
    id: UUID
    conversation_id: UUID
    customer_id: UUID
    source_channel: str
    category: str
    priority: str
    status: str
    escalation_reason: str | None = None
    resolution_notes: str | None = None
    created_at: datetime
    updated_at: datetime


class TicketTransitionRecord(BaseModel):
    id: int
    ticket_id: UUID
    from_status: str
    to_status: str
    reason: str | None = None
    created_at: datetime


class DeliveryAttemptRecord(BaseModel):
    id: int
    message_id: int
    attempt_number: int
    status: str
    error: str | None = None
    external_id: str | None = None
    created_at: datetime


class DeadLetterRecord(BaseModel):
    id: int
    channel: str | None = None
    channel_message_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    error_type: str
    error: str
    attempts: int
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    replayed_at: datetime | None = None


class CustomerLookupResponse(BaseModel):
    customer: CustomerRecord
    identifiers: list[IdentifierRecord]
    conversations: list[ConversationRecord]


class MessagePage(BaseModel):
    conversation: ConversationRecord
    ticket: TicketRecord | None = None
    messages: list[MessageRecord]
    has_more: bool
    next_cursor: str | None = None


class ChannelMetricsRow(BaseModel):
    channel: str
    inbound_messages: int
    escalations: int
    avg_latency_ms: float | None = None
    tool_calls: int


class ChannelMetricsResponse(BaseModel):
    since: datetime
    until: datetime
    channels: list[ChannelMetricsRow]


class WebhookAccepted(BaseModel):
    channel: str
    published: int


class DeliveryReceiptRequest(BaseModel):
    external_id: str
    status: str


class DeliveryReceiptResponse(BaseModel):
    external_id: str
    message_id: int | None = None
    status: str | None = None
    applied: bool
