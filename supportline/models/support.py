"""Support-domain SQLAlchemy models.

The models mirror the DDL in
``supportline/migrations/001_create_support_tables.py``. Identifiers carry the
uniqueness contract that makes identity resolution race safe, messages carry
the ``(channel, channel_message_id)`` constraint used for redelivery dedup and
tickets are unique per conversation.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
_BIGINT_PK = BigInteger().with_variant(Integer(), "sqlite")
_JSON = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


def _uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )


class Customer(Base):
    """A resolved customer identity.

    Attributes:
        id: Immutable customer identifier.
        email: Primary e-mail address captured at creation, if any.
        phone: Primary phone number captured at creation, if any.
        display_name: Name supplied by the channel, if any.
        identifiers: Channel addresses bound to this customer.
    """

    __tablename__ = "customers"

    id: Mapped[uuid.UUID] = _uuid_pk()
    email: Mapped[Optional[str]] = mapped_column(String(length=320), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(length=32), nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    identifiers: Mapped[List["CustomerIdentifier"]] = relationship(
        back_populates="customer",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class CustomerIdentifier(Base):
    """A channel address (email, phone, anonymous token) owned by one customer.

    ``verified`` is informational: it records whether the channel vouched for
    the address but never gates resolution.
    """

    __tablename__ = "customer_identifiers"
    __table_args__ = (
        UniqueConstraint(
            "identifier_type", "value", name="uq_customer_identifiers_type_value"
        ),
        Index("ix_customer_identifiers_customer_id", "customer_id"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
    )
    identifier_type: Mapped[str] = mapped_column(String(length=32), nullable=False)
    value: Mapped[str] = mapped_column(String(length=320), nullable=False)
    verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    last_seen_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    customer: Mapped[Customer] = relationship(back_populates="identifiers")


class Conversation(Base):
    """A run of messages with one customer, possibly spanning channels."""

    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_customer_status", "customer_id", "status"),
        Index("ix_conversations_status_last_message", "status", "last_message_at"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
    )
    initiating_channel: Mapped[str] = mapped_column(String(length=32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(length=16), nullable=False, default="active", server_default=text("'active'")
    )
    start_time: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[Optional[dt.datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_message_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    sentiment_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    sentiment_samples: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    resolution_type: Mapped[Optional[str]] = mapped_column(String(length=64), nullable=True)


class Message(Base):
    """An inbound or outbound message.

    The integer primary key doubles as the insertion sequence, so
    ``(created_at, id)`` is a total order within a conversation.
    """

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint(
            "channel", "channel_message_id", name="uq_messages_channel_message_id"
        ),
        Index("ix_messages_conversation_created", "conversation_id", "created_at", "id"),
        Index("ix_messages_channel_external_id", "channel", "external_id"),
    )

    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    channel: Mapped[str] = mapped_column(String(length=32), nullable=False)
    direction: Mapped[str] = mapped_column(String(length=16), nullable=False)
    role: Mapped[str] = mapped_column(String(length=16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(length=998), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    channel_message_id: Mapped[Optional[str]] = mapped_column(
        String(length=255), nullable=True
    )
    external_id: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    destination: Mapped[Optional[str]] = mapped_column(String(length=320), nullable=True)
    delivery_status: Mapped[Optional[str]] = mapped_column(String(length=16), nullable=True)
    processing_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    processed_at: Mapped[Optional[dt.datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sentiment_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", _JSON, nullable=False, default=dict
    )


class Ticket(Base):
    """Work item tracking one conversation from open to resolution."""

    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint("conversation_id", name="uq_tickets_conversation_id"),
        Index("ix_tickets_customer_id", "customer_id"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_channel: Mapped[str] = mapped_column(String(length=32), nullable=False)
    category: Mapped[str] = mapped_column(
        String(length=64), nullable=False, default="general"
    )
    priority: Mapped[str] = mapped_column(
        String(length=16), nullable=False, default="normal"
    )
    status: Mapped[str] = mapped_column(
        String(length=16), nullable=False, default="open", server_default=text("'open'")
    )
    escalation_reason: Mapped[Optional[str]] = mapped_column(
        String(length=255), nullable=True
    )
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    transitions: Mapped[List["TicketTransition"]] = relationship(
        back_populates="ticket",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="TicketTransition.id",
    )


class TicketTransition(Base):
    """Audit record of one applied ticket status change."""

    __tablename__ = "ticket_transitions"
    __table_args__ = (Index("ix_ticket_transitions_ticket_id", "ticket_id"),)

    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    ticket_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
    )
    from_status: Mapped[str] = mapped_column(String(length=16), nullable=False)
    to_status: Mapped[str] = mapped_column(String(length=16), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    ticket: Mapped[Ticket] = relationship(back_populates="transitions")


class DeliveryAttempt(Base):
    """One try at handing an outbound message to a channel sender."""

    __tablename__ = "delivery_attempts"
    __table_args__ = (
        UniqueConstraint(
            "message_id", "attempt_number", name="uq_delivery_attempts_message_attempt"
        ),
    )

    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(
        _BIGINT_PK,
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(length=16), nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class DeadLetter(Base):
    """A raw inbound event that could not be processed."""

    __tablename__ = "dead_letters"

    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    channel: Mapped[Optional[str]] = mapped_column(String(length=32), nullable=True)
    channel_message_id: Mapped[Optional[str]] = mapped_column(
        String(length=255), nullable=True
    )
    payload: Mapped[dict[str, Any]] = mapped_column(_JSON, nullable=False, default=dict)
    error_type: Mapped[str] = mapped_column(String(length=128), nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    context: Mapped[dict[str, Any]] = mapped_column(_JSON, nullable=False, default=dict)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    replayed_at: Mapped[Optional[dt.datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class ChannelMetric(Base):
    """Per-event processing metrics used by the channel metrics query."""

    __tablename__ = "channel_metrics"
    __table_args__ = (Index("ix_channel_metrics_created_at", "created_at"),)

    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    channel: Mapped[str] = mapped_column(String(length=32), nullable=False)
    message_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    latency_ms: Mapped[float] = mapped_column(Float, nullable=False)
    escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tool_calls_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


__all__ = [
    "ChannelMetric",
    "Conversation",
    "Customer",
    "CustomerIdentifier",
    "DeadLetter",
    "DeliveryAttempt",
    "Message",
    "Ticket",
    "TicketTransition",
]
