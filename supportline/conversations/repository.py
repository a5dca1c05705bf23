"""Persistence layer for customers, conversations, messages and tickets.

Every method runs in its own short transaction so no lock or connection is
held across a responder or sender call. Uniqueness constraints do the
arbitration between concurrent workers: callers get ``None`` or a
:class:`~supportline.errors.DuplicateMessageError` back and re-read.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Iterable, Sequence
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import DuplicateMessageError
from ..models import (
    ChannelMetric,
    Conversation,
    Customer,
    CustomerIdentifier,
    DeadLetter,
    DeliveryAttempt,
    Message,
    Ticket,
    TicketTransition,
)
from . import schemas
from .models import ConversationStatus, Direction, TicketStatus


class SupportRepository(Protocol):
    # identity
    def find_identifiers(
        self, candidates: Sequence[tuple[str, str]]
    ) -> list[schemas.IdentifierRecord]: ...

    def create_customer(
        self,
        *,
        identifier_type: str,
        value: str,
        verified: bool,
        email: str | None,
        phone: str | None,
        display_name: str | None,
        seen_at: dt.datetime,
    ) -> schemas.CustomerRecord | None: ...

    def bind_identifier(
        self,
        customer_id: UUID,
        identifier_type: str,
        value: str,
        *,
        verified: bool,
        seen_at: dt.datetime,
    ) -> schemas.IdentifierRecord: ...

    def touch_identifier(
        self, identifier_id: UUID, *, seen_at: dt.datetime, verified: bool
    ) -> None: ...

    def get_customer(self, customer_id: UUID) -> schemas.CustomerRecord | None: ...

    def list_identifiers(self, customer_id: UUID) -> list[schemas.IdentifierRecord]: ...

    # conversations
    def list_active_conversations(
        self, customer_id: UUID
    ) -> list[schemas.ConversationRecord]: ...

    def create_conversation(
        self, customer_id: UUID, channel: str, start_time: dt.datetime
    ) -> schemas.ConversationRecord: ...

    def close_conversation(
        self, conversation_id: UUID, *, ended_at: dt.datetime, resolution_type: str
    ) -> bool: ...

    def record_conversation_activity(
        self, conversation_id: UUID, *, at: dt.datetime, sentiment: float | None
    ) -> None: ...

    def list_idle_conversations(
        self, cutoff: dt.datetime, limit: int = 500
    ) -> list[schemas.ConversationRecord]: ...

    def get_conversation(self, conversation_id: UUID) -> schemas.ConversationRecord | None: ...

    def list_conversations(self, customer_id: UUID) -> list[schemas.ConversationRecord]: ...

    # messages
    def find_message(
        self, channel: str, channel_message_id: str
    ) -> schemas.MessageRecord | None: ...

    def find_inbound_message(
        self, channel: str, channel_message_id: str
    ) -> schemas.MessageRecord | None: ...

    def add_message(self, **fields: Any) -> schemas.MessageRecord: ...

    def get_message(self, message_id: int) -> schemas.MessageRecord | None: ...

    def list_messages(
        self,
        conversation_id: UUID,
        *,
        after: tuple[dt.datetime, int] | None = None,
        limit: int = 50,
    ) -> list[schemas.MessageRecord]: ...

    def recent_messages(
        self, conversation_id: UUID, limit: int
    ) -> list[schemas.MessageRecord]: ...

    def increment_processing_attempts(self, message_id: int) -> int: ...

    def mark_processed(self, message_id: int, at: dt.datetime) -> None: ...

    def update_delivery_status(
        self,
        message_id: int,
        status: str,
        *,
        external_id: str | None = None,
        only_from: Iterable[str | None] | None = None,
    ) -> bool: ...

    def find_outbound_by_external_id(
        self, channel: str, external_id: str
    ) -> schemas.MessageRecord | None: ...

    # tickets
    def get_or_create_ticket(
        self,
        *,
        conversation_id: UUID,
        customer_id: UUID,
        source_channel: str,
        category: str,
        priority: str,
        now: dt.datetime,
    ) -> tuple[schemas.TicketRecord, bool]: ...

    def get_ticket(self, ticket_id: UUID) -> schemas.TicketRecord | None: ...

    def get_ticket_for_conversation(
        self, conversation_id: UUID
    ) -> schemas.TicketRecord | None: ...

    def transition_ticket(
        self,
        ticket_id: UUID,
        *,
        allowed_from: Iterable[str],
        to_status: str,
        reason: str | None = None,
        notes: str | None = None,
        now: dt.datetime,
    ) -> schemas.TicketRecord | None: ...

    def list_transitions(self, ticket_id: UUID) -> list[schemas.TicketTransitionRecord]: ...

    # delivery
    def record_delivery_attempt(
        self,
        message_id: int,
        attempt_number: int,
        status: str,
        *,
        error: str | None = None,
        external_id: str | None = None,
        at: dt.datetime,
    ) -> schemas.DeliveryAttemptRecord: ...

    def list_delivery_attempts(self, message_id: int) -> list[schemas.DeliveryAttemptRecord]: ...

    # dead letters and metrics
    def add_dead_letter(
        self,
        *,
        payload: dict[str, Any],
        error_type: str,
        error: str,
        attempts: int,
        context: dict[str, Any],
        channel: str | None = None,
        channel_message_id: str | None = None,
        at: dt.datetime,
    ) -> schemas.DeadLetterRecord: ...

    def list_dead_letters(
        self, *, include_replayed: bool = False, limit: int = 100
    ) -> list[schemas.DeadLetterRecord]: ...

    def mark_dead_letter_replayed(self, dead_letter_id: int, at: dt.datetime) -> None: ...

    def record_metric(
        self,
        *,
        channel: str,
        message_id: int | None,
        latency_ms: float,
        escalated: bool,
        tool_calls_count: int,
        at: dt.datetime,
    ) -> None: ...

    def channel_metrics(
        self, since: dt.datetime, until: dt.datetime
    ) -> list[schemas.ChannelMetricsRow]: ...


def _as_utc(value: dt.datetime | None) -> dt.datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def is_unique_violation(exc: IntegrityError) -> bool:
    """Return ``True`` when ``exc`` came from a UNIQUE constraint."""

    orig = getattr(exc, "orig", None)
    if getattr(orig, "sqlstate", None) == "23505":
        return True
    return "unique constraint" in str(orig).lower()


def _customer(row: Customer) -> schemas.CustomerRecord:
    return schemas.CustomerRecord(
        id=row.id,
        email=row.email,
        phone=row.phone,
        display_name=row.display_name,
        created_at=_as_utc(row.created_at),
    )


def _identifier(row: CustomerIdentifier) -> schemas.IdentifierRecord:
    return schemas.IdentifierRecord(
        id=row.id,
        customer_id=row.customer_id,
        identifier_type=row.identifier_type,
        value=row.value,
        verified=bool(row.verified),
        created_at=_as_utc(row.created_at),
        last_seen_at=_as_utc(row.last_seen_at),
    )


def _conversation(row: Conversation) -> schemas.ConversationRecord:
    return schemas.ConversationRecord(
        id=row.id,
        customer_id=row.customer_id,
        initiating_channel=row.initiating_channel,
        status=row.status,
        start_time=_as_utc(row.start_time),
        end_time=_as_utc(row.end_time),
        last_message_at=_as_utc(row.last_message_at),
        sentiment_score=row.sentiment_score,
        resolution_type=row.resolution_type,
    )


def _message(row: Message) -> schemas.MessageRecord:
    return schemas.MessageRecord(
        id=row.id,
        conversation_id=row.conversation_id,
        channel=row.channel,
        direction=row.direction,
        role=row.role,
        content=row.content,
        subject=row.subject,
        created_at=_as_utc(row.created_at),
        channel_message_id=row.channel_message_id,
        external_id=row.external_id,
        destination=row.destination,
        delivery_status=row.delivery_status,
        processing_attempts=row.processing_attempts or 0,
        processed_at=_as_utc(row.processed_at),
        sentiment_score=row.sentiment_score,
        metadata=row.metadata_json or {},
    )


def _ticket(row: Ticket) -> schemas.TicketRecord:
    return schemas.TicketRecord(
        id=row.id,
        conversation_id=row.conversation_id,
        customer_id=row.customer_id,
        source_channel=row.source_channel,
        category=row.category,
        priority=row.priority,
        status=row.status,
        escalation_reason=row.escalation_reason,
        resolution_notes=row.resolution_notes,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _attempt(row: DeliveryAttempt) -> schemas.DeliveryAttemptRecord:
    return schemas.DeliveryAttemptRecord(
        id=row.id,
        message_id=row.message_id,
        attempt_number=row.attempt_number,
        status=row.status,
        error=row.error,
        external_id=row.external_id,
        created_at=_as_utc(row.created_at),
    )


def _dead_letter(row: DeadLetter) -> schemas.DeadLetterRecord:
    return schemas.DeadLetterRecord(
        id=row.id,
        channel=row.channel,
        channel_message_id=row.channel_message_id,
        payload=row.payload or {},
        error_type=row.error_type,
        error=row.error,
        attempts=row.attempts,
        context=row.context or {},
        created_at=_as_utc(row.created_at),
        replayed_at=_as_utc(row.replayed_at),
    )


class SqlAlchemySupportRepository:
    """:class:`SupportRepository` backed by a SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    def find_identifiers(
        self, candidates: Sequence[tuple[str, str]]
    ) -> list[schemas.IdentifierRecord]:
        if not candidates:
            return []
        clauses = [
            and_(
                CustomerIdentifier.identifier_type == kind,
                CustomerIdentifier.value == value,
            )
            for kind, value in candidates
        ]
        with self._session_factory() as session:
            rows = session.scalars(select(CustomerIdentifier).where(or_(*clauses))).all()
            return [_identifier(row) for row in rows]

    def create_customer(
        self,
        *,
        identifier_type: str,
        value: str,
        verified: bool,
        email: str | None,
        phone: str | None,
        display_name: str | None,
        seen_at: dt.datetime,
    ) -> schemas.CustomerRecord | None:
        """Create a customer and its first identifier atomically.

        Returns ``None`` when another writer bound the identifier first; the
        transaction is rolled back so no orphan customer is left behind.
        """

        try:
            with self._session_factory.begin() as session:
                customer = Customer(email=email, phone=phone, display_name=display_name)
                session.add(customer)
                session.flush()
                session.add(
                    CustomerIdentifier(
                        customer_id=customer.id,
                        identifier_type=identifier_type,
                        value=value,
                        verified=verified,
                        created_at=seen_at,
                        last_seen_at=seen_at,
                    )
                )
                session.flush()
                record = _customer(customer)
        except IntegrityError as exc:
            if is_unique_violation(exc):
                return None
            raise
        return record

    def bind_identifier(
        self,
        customer_id: UUID,
        identifier_type: str,
        value: str,
        *,
        verified: bool,
        seen_at: dt.datetime,
    ) -> schemas.IdentifierRecord:
        """Insert-or-fetch an identifier; the returned row may belong elsewhere."""

        try:
            with self._session_factory.begin() as session:
                row = CustomerIdentifier(
                    customer_id=customer_id,
                    identifier_type=identifier_type,
                    value=value,
                    verified=verified,
                    created_at=seen_at,
                    last_seen_at=seen_at,
                )
                session.add(row)
                session.flush()
                return _identifier(row)
        except IntegrityError as exc:
            if not is_unique_violation(exc):
                raise
        existing = self.find_identifiers([(identifier_type, value)])
        if not existing:  # pragma: no cover - the conflicting row vanished
            raise RuntimeError(f"identifier {identifier_type}:{value} conflicted but is missing")
        return existing[0]

    def touch_identifier(
        self, identifier_id: UUID, *, seen_at: dt.datetime, verified: bool
    ) -> None:
        values: dict[str, Any] = {"last_seen_at": seen_at}
        if verified:
            values["verified"] = True
        with self._session_factory.begin() as session:
            session.execute(
                update(CustomerIdentifier)
                .where(CustomerIdentifier.id == identifier_id)
                .values(**values)
            )

    def get_customer(self, customer_id: UUID) -> schemas.CustomerRecord | None:
        with self._session_factory() as session:
            row = session.get(Customer, customer_id)
            return _customer(row) if row else None

    def list_identifiers(self, customer_id: UUID) -> list[schemas.IdentifierRecord]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(CustomerIdentifier)
                .where(CustomerIdentifier.customer_id == customer_id)
                .order_by(CustomerIdentifier.created_at, CustomerIdentifier.identifier_type)
            ).all()
            return [_identifier(row) for row in rows]

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------
    def list_active_conversations(
        self, customer_id: UUID
    ) -> list[schemas.ConversationRecord]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(Conversation)
                .where(
                    Conversation.customer_id == customer_id,
                    Conversation.status == ConversationStatus.ACTIVE.value,
                )
                .order_by(Conversation.start_time.desc())
            ).all()
            return [_conversation(row) for row in rows]

    def create_conversation(
        self, customer_id: UUID, channel: str, start_time: dt.datetime
    ) -> schemas.ConversationRecord:
        with self._session_factory.begin() as session:
            row = Conversation(
                customer_id=customer_id,
                initiating_channel=channel,
                status=ConversationStatus.ACTIVE.value,
                start_time=start_time,
                last_message_at=start_time,
            )
            session.add(row)
            session.flush()
            return _conversation(row)

    def close_conversation(
        self, conversation_id: UUID, *, ended_at: dt.datetime, resolution_type: str
    ) -> bool:
        with self._session_factory.begin() as session:
            result = session.execute(
                update(Conversation)
                .where(
                    Conversation.id == conversation_id,
                    Conversation.status == ConversationStatus.ACTIVE.value,
                )
                .values(
                    status=ConversationStatus.CLOSED.value,
                    end_time=ended_at,
                    resolution_type=resolution_type,
                )
            )
            return result.rowcount == 1

    def record_conversation_activity(
        self, conversation_id: UUID, *, at: dt.datetime, sentiment: float | None
    ) -> None:
        with self._session_factory.begin() as session:
            row = session.scalars(
                select(Conversation)
                .where(Conversation.id == conversation_id)
                .with_for_update()
            ).one()
            last = _as_utc(row.last_message_at)
            if last is None or at > last:
                row.last_message_at = at
            if sentiment is not None:
                samples = row.sentiment_samples or 0
                current = row.sentiment_score if row.sentiment_score is not None else 0.0
                row.sentiment_score = round((current * samples + sentiment) / (samples + 1), 4)
                row.sentiment_samples = samples + 1

    def list_idle_conversations(
        self, cutoff: dt.datetime, limit: int = 500
    ) -> list[schemas.ConversationRecord]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(Conversation)
                .where(
                    Conversation.status == ConversationStatus.ACTIVE.value,
                    Conversation.last_message_at < cutoff,
                )
                .order_by(Conversation.last_message_at)
                .limit(limit)
            ).all()
            return [_conversation(row) for row in rows]

    def get_conversation(self, conversation_id: UUID) -> schemas.ConversationRecord | None:
        with self._session_factory() as session:
            row = session.get(Conversation, conversation_id)
            return _conversation(row) if row else None

    def list_conversations(self, customer_id: UUID) -> list[schemas.ConversationRecord]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(Conversation)
                .where(Conversation.customer_id == customer_id)
                .order_by(Conversation.start_time.desc())
            ).all()
            return [_conversation(row) for row in rows]

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def find_message(
        self, channel: str, channel_message_id: str
    ) -> schemas.MessageRecord | None:
        with self._session_factory() as session:
            row = session.scalars(
                select(Message).where(
                    Message.channel == channel,
                    Message.channel_message_id == channel_message_id,
                )
            ).first()
            return _message(row) if row else None

    def find_inbound_message(
        self, channel: str, channel_message_id: str
    ) -> schemas.MessageRecord | None:
        message = self.find_message(channel, channel_message_id)
        if message is None or message.direction != Direction.INBOUND.value:
            return None
        return message

    def add_message(
        self,
        *,
        conversation_id: UUID,
        channel: str,
        direction: str,
        role: str,
        content: str,
        created_at: dt.datetime,
        subject: str | None = None,
        channel_message_id: str | None = None,
        destination: str | None = None,
        delivery_status: str | None = None,
        sentiment_score: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> schemas.MessageRecord:
        try:
            with self._session_factory.begin() as session:
                row = Message(
                    conversation_id=conversation_id,
                    channel=channel,
                    direction=direction,
                    role=role,
                    content=content,
                    subject=subject,
                    created_at=created_at,
                    channel_message_id=channel_message_id,
                    destination=destination,
                    delivery_status=delivery_status,
                    sentiment_score=sentiment_score,
                    metadata_json=metadata or {},
                )
                session.add(row)
                session.flush()
                return _message(row)
        except IntegrityError as exc:
            if is_unique_violation(exc):
                raise DuplicateMessageError(
                    f"message {channel}:{channel_message_id} already stored",
                    channel=channel,
                    channel_message_id=channel_message_id,
                ) from exc
            raise

    def get_message(self, message_id: int) -> schemas.MessageRecord | None:
        with self._session_factory() as session:
            row = session.get(Message, message_id)
            return _message(row) if row else None

    def list_messages(
        self,
        conversation_id: UUID,
        *,
        after: tuple[dt.datetime, int] | None = None,
        limit: int = 50,
    ) -> list[schemas.MessageRecord]:
        stmt = select(Message).where(Message.conversation_id == conversation_id)
        if after is not None:
            created_at, message_id = after
            stmt = stmt.where(
                or_(
                    Message.created_at > created_at,
                    and_(Message.created_at == created_at, Message.id > message_id),
                )
            )
        stmt = stmt.order_by(Message.created_at, Message.id).limit(limit)
        with self._session_factory() as session:
            return [_message(row) for row in session.scalars(stmt).all()]

    def recent_messages(
        self, conversation_id: UUID, limit: int
    ) -> list[schemas.MessageRecord]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(limit)
            ).all()
            return [_message(row) for row in reversed(rows)]

    def increment_processing_attempts(self, message_id: int) -> int:
        with self._session_factory.begin() as session:
            session.execute(
                update(Message)
                .where(Message.id == message_id)
                .values(processing_attempts=Message.processing_attempts + 1)
            )
            return session.scalar(
                select(Message.processing_attempts).where(Message.id == message_id)
            ) or 0

    def mark_processed(self, message_id: int, at: dt.datetime) -> None:
        with self._session_factory.begin() as session:
            session.execute(
                update(Message)
                .where(Message.id == message_id, Message.processed_at.is_(None))
                .values(processed_at=at)
            )

    def update_delivery_status(
        self,
        message_id: int,
        status: str,
        *,
        external_id: str | None = None,
        only_from: Iterable[str | None] | None = None,
    ) -> bool:
        """Set the delivery status, optionally only from the given statuses.

        ``only_from`` makes the update a compare-and-set, which is how a
        message reaches a terminal status at most once.
        """

        stmt = update(Message).where(Message.id == message_id)
        if only_from is not None:
            allowed = list(only_from)
            named = [value for value in allowed if value is not None]
            conditions = []
            if named:
                conditions.append(Message.delivery_status.in_(named))
            if None in allowed:
                conditions.append(Message.delivery_status.is_(None))
            stmt = stmt.where(or_(*conditions))
        values: dict[str, Any] = {"delivery_status": status}
        if external_id is not None:
            values["external_id"] = external_id
        with self._session_factory.begin() as session:
            result = session.execute(stmt.values(**values))
            return result.rowcount == 1

    def find_outbound_by_external_id(
        self, channel: str, external_id: str
    ) -> schemas.MessageRecord | None:
        with self._session_factory() as session:
            row = session.scalars(
                select(Message)
                .where(Message.channel == channel, Message.external_id == external_id)
                .order_by(Message.id.desc())
            ).first()
            return _message(row) if row else None

    # ------------------------------------------------------------------
    # Tickets
    # ------------------------------------------------------------------
    def get_or_create_ticket(
        self,
        *,
        conversation_id: UUID,
        customer_id: UUID,
        source_channel: str,
        category: str,
        priority: str,
        now: dt.datetime,
    ) -> tuple[schemas.TicketRecord, bool]:
        existing = self.get_ticket_for_conversation(conversation_id)
        if existing is not None:
            return existing, False
        try:
            with self._session_factory.begin() as session:
                row = Ticket(
                    conversation_id=conversation_id,
                    customer_id=customer_id,
                    source_channel=source_channel,
                    category=category,
                    priority=priority,
                    status=TicketStatus.OPEN.value,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                return _ticket(row), True
        except IntegrityError as exc:
            if not is_unique_violation(exc):
                raise
        ticket = self.get_ticket_for_conversation(conversation_id)
        if ticket is None:  # pragma: no cover - conflicting row vanished
            raise RuntimeError(f"ticket for conversation {conversation_id} is missing")
        return ticket, False

    def get_ticket(self, ticket_id: UUID) -> schemas.TicketRecord | None:
        with self._session_factory() as session:
            row = session.get(Ticket, ticket_id)
            return _ticket(row) if row else None

    def get_ticket_for_conversation(
        self, conversation_id: UUID
    ) -> schemas.TicketRecord | None:
        with self._session_factory() as session:
            row = session.scalars(
                select(Ticket).where(Ticket.conversation_id == conversation_id)
            ).first()
            return _ticket(row) if row else None

    def transition_ticket(
        self,
        ticket_id: UUID,
        *,
        allowed_from: Iterable[str],
        to_status: str,
        reason: str | None = None,
        notes: str | None = None,
        now: dt.datetime,
    ) -> schemas.TicketRecord | None:
        allowed = list(allowed_from)
        with self._session_factory.begin() as session:
            current = session.scalar(select(Ticket.status).where(Ticket.id == ticket_id))
            if current is None or current not in allowed:
                return None
            values: dict[str, Any] = {"status": to_status, "updated_at": now}
            if to_status == TicketStatus.ESCALATED.value:
                values["escalation_reason"] = reason
            if notes is not None:
                values["resolution_notes"] = notes
            result = session.execute(
                update(Ticket)
                .where(Ticket.id == ticket_id, Ticket.status == current)
                .values(**values)
            )
            if result.rowcount != 1:
                return None
            session.add(
                TicketTransition(
                    ticket_id=ticket_id,
                    from_status=current,
                    to_status=to_status,
                    reason=reason,
                    created_at=now,
                )
            )
            session.flush()
            row = session.get(Ticket, ticket_id, populate_existing=True)
            return _ticket(row)

    def list_transitions(self, ticket_id: UUID) -> list[schemas.TicketTransitionRecord]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(TicketTransition)
                .where(TicketTransition.ticket_id == ticket_id)
                .order_by(TicketTransition.id)
            ).all()
            return [
                schemas.TicketTransitionRecord(
                    id=row.id,
                    ticket_id=row.ticket_id,
                    from_status=row.from_status,
                    to_status=row.to_status,
                    reason=row.reason,
                    created_at=_as_utc(row.created_at),
                )
                for row in rows
            ]

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    def record_delivery_attempt(
        self,
        message_id: int,
        attempt_number: int,
        status: str,
        *,
        error: str | None = None,
        external_id: str | None = None,
        at: dt.datetime,
    ) -> schemas.DeliveryAttemptRecord:
        with self._session_factory.begin() as session:
            row = DeliveryAttempt(
                message_id=message_id,
                attempt_number=attempt_number,
                status=status,
                error=error,
                external_id=external_id,
                created_at=at,
            )
            session.add(row)
            session.flush()
            return _attempt(row)

    def list_delivery_attempts(self, message_id: int) -> list[schemas.DeliveryAttemptRecord]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(DeliveryAttempt)
                .where(DeliveryAttempt.message_id == message_id)
                .order_by(DeliveryAttempt.attempt_number)
            ).all()
            return [_attempt(row) for row in rows]

    # ------------------------------------------------------------------
    # Dead letters and metrics
    # ------------------------------------------------------------------
    def add_dead_letter(
        self,
        *,
        payload: dict[str, Any],
        error_type: str,
        error: str,
        attempts: int,
        context: dict[str, Any],
        channel: str | None = None,
        channel_message_id: str | None = None,
        at: dt.datetime,
    ) -> schemas.DeadLetterRecord:
        with self._session_factory.begin() as session:
            row = DeadLetter(
                channel=channel,
                channel_message_id=channel_message_id,
                payload=payload,
                error_type=error_type,
                error=error,
                attempts=attempts,
                context=context,
                created_at=at,
            )
            session.add(row)
            session.flush()
            return _dead_letter(row)

    def list_dead_letters(
        self, *, include_replayed: bool = False, limit: int = 100
    ) -> list[schemas.DeadLetterRecord]:
        stmt = select(DeadLetter).order_by(DeadLetter.id).limit(limit)
        if not include_replayed:
            stmt = stmt.where(DeadLetter.replayed_at.is_(None))
        with self._session_factory() as session:
            return [_dead_letter(row) for row in session.scalars(stmt).all()]

    def mark_dead_letter_replayed(self, dead_letter_id: int, at: dt.datetime) -> None:
        with self._session_factory.begin() as session:
            session.execute(
                update(DeadLetter)
                .where(DeadLetter.id == dead_letter_id)
                .values(replayed_at=at)
            )

    def record_metric(
        self,
        *,
        channel: str,
        message_id: int | None,
        latency_ms: float,
        escalated: bool,
        tool_calls_count: int,
        at: dt.datetime,
    ) -> None:
        with self._session_factory.begin() as session:
            session.add(
                ChannelMetric(
                    channel=channel,
                    message_id=message_id,
                    latency_ms=latency_ms,
                    escalated=escalated,
                    tool_calls_count=tool_calls_count,
                    created_at=at,
                )
            )

    def channel_metrics(
        self, since: dt.datetime, until: dt.datetime
    ) -> list[schemas.ChannelMetricsRow]:
        stmt = (
            select(
                ChannelMetric.channel,
                func.count(ChannelMetric.id),
                func.sum(case((ChannelMetric.escalated.is_(True), 1), else_=0)),
                func.avg(ChannelMetric.latency_ms),
                func.sum(ChannelMetric.tool_calls_count),
            )
            .where(ChannelMetric.created_at >= since, ChannelMetric.created_at < until)
            .group_by(ChannelMetric.channel)
            .order_by(ChannelMetric.channel)
        )
        with self._session_factory() as session:
            return [
                schemas.ChannelMetricsRow(
                    channel=channel,
                    inbound_messages=int(count or 0),
                    escalations=int(escalations or 0),
                    avg_latency_ms=round(float(avg), 2) if avg is not None else None,
                    tool_calls=int(tool_calls or 0),
                )
                for channel, count, escalations, avg, tool_calls in session.execute(stmt)
            ]


__all__ = ["SqlAlchemySupportRepository", "SupportRepository", "is_unique_violation"]
