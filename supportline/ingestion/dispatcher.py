"""Orchestrate one inbound event from normalization to delivery.

The dispatcher is idempotent under the bus's at-least-once delivery: an
inbound message is keyed by ``(channel, channel_message_id)`` and replies are
keyed by the inbound id plus a suffix, so a redelivered or retried event never
stores a second copy and never re-sends a settled reply.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from ..channels.normalizer import normalize_event
from ..conversations import schemas
from ..conversations.identity import IdentityResolver
from ..conversations.models import (
    Channel,
    Direction,
    IdentifierType,
    InboundMessage,
    Role,
    TicketStatus,
)
from ..conversations.repository import SupportRepository
from ..conversations.sessions import ConversationSessionManager
from ..delivery.tracker import DeliveryTracker
from ..errors import (
    DuplicateMessageError,
    InvalidTransitionError,
    NormalizationError,
    ResponderError,
    ResponderFailureError,
    ResponderTimeoutError,
)
from ..nlp import NEUTRAL_SENTIMENT, NlpPipeline
from ..responders.base import CustomerContext, HistoryEntry, Responder, ResponderReply
from ..tickets.state_machine import (
    DELIVERY_FAILURE,
    PROCESSING_FAILURE,
    RESPONDER_ESCALATION,
    EscalationPolicy,
    TicketStateMachine,
    urgency_for,
)
from .bus import BusRecord
from .events import EventPublisher
from .locks import KeyedLock

logger = logging.getLogger(__name__)

PROCESSED = "processed"
ESCALATED = "escalated"
DUPLICATE = "duplicate"
HANDED_OFF = "handed_off"
DEAD_LETTERED = "dead_lettered"

HANDOFF_MESSAGE = (
    "Thanks for reaching out. We have passed your message to a member of our "
    "support team, who will follow up with you shortly."
)
APOLOGY_MESSAGE = (
    "We're sorry, we could not complete a reply to your message right now. "
    "A member of our support team will follow up with you shortly."
)

SNAPSHOT_MESSAGES = 10


@dataclass
class DispatchResult:
    outcome: str
    message_id: int | None = None
    conversation_id: UUID | None = None
    ticket_id: UUID | None = None
    attempts: int = 1
    escalation_reason: str | None = None
    delivery_status: str | None = None
    error: str | None = None


@dataclass
class _Persisted:
    message: schemas.MessageRecord
    conversation_id: UUID
    customer_id: UUID
    ticket: schemas.TicketRecord


class IngestionDispatcher:
    """Run the ingestion pipeline for inbound events.

    :meth:`process` never raises for a bad or failing event: after
    ``max_attempts`` tries the event lands in the dead-letter table and on the
    dead-letter topic. It only raises when the dead letter itself cannot be
    stored, in which case the worker leaves the record unacknowledged.
    """

    def __init__(
        self,
        *,
        repository: SupportRepository,
        resolver: IdentityResolver,
        sessions: ConversationSessionManager,
        tickets: TicketStateMachine,
        policy: EscalationPolicy,
        responder: Responder,
        tracker: DeliveryTracker,
        events: EventPublisher,
        lock: KeyedLock,
        nlp: NlpPipeline | None = None,
        responder_timeout: float = 30.0,
        responder_max_attempts: int = 3,
        max_attempts: int = 3,
        retry_backoff: float = 0.5,
        history_limit: int = 20,
        responder_workers: int = 4,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repo = repository
        self._resolver = resolver
        self._sessions = sessions
        self._tickets = tickets
        self._policy = policy
        self._responder = responder
        self._tracker = tracker
        self._events = events
        self._lock = lock
        self._nlp = nlp or NlpPipeline()
        self.responder_timeout = responder_timeout
        self.responder_max_attempts = responder_max_attempts
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.history_limit = history_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._monotonic = monotonic
        self._executor = ThreadPoolExecutor(
            max_workers=responder_workers, thread_name_prefix="responder"
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def backoff(self, attempt: int) -> float:
        return self.retry_backoff * (2 ** (attempt - 1))

    def handle_record(self, record: BusRecord) -> DispatchResult:
        """Process a bus record and acknowledge it."""

        result = self.process(record.value)
        record.ack()
        return result

    def process(self, raw_event: Mapping[str, Any]) -> DispatchResult:
        started = self._monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                result = self._process_once(
                    raw_event, started, final_attempt=attempt >= self.max_attempts
                )
            except NormalizationError as exc:
                return self._dead_letter(raw_event, exc, attempt)
            except Exception as exc:
                if attempt >= self.max_attempts:
                    return self._dead_letter(raw_event, exc, attempt)
                logger.warning(
                    "Attempt %d of %d failed: %s",
                    attempt,
                    self.max_attempts,
                    exc,
                    extra={
                        "event": "dispatch_retry",
                        "attempt": attempt,
                        "error_type": type(exc).__name__,
                    },
                )
                self._sleep(self.backoff(attempt))
                continue
            result.attempts = attempt
            return result

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def _process_once(
        self, raw_event: Mapping[str, Any], started: float, *, final_attempt: bool
    ) -> DispatchResult:
        inbound = normalize_event(raw_event)
        existing = self._repo.find_inbound_message(
            inbound.channel.value, inbound.channel_message_id
        )
        if existing is not None and existing.processed_at is not None:
            return self._duplicate(inbound, existing)

        if existing is None:
            persisted = self._persist(inbound)
            if isinstance(persisted, DispatchResult):
                return persisted
        else:
            persisted = self._resume(existing)

        message, ticket = persisted.message, persisted.ticket
        base = DispatchResult(
            outcome=PROCESSED,
            message_id=message.id,
            conversation_id=persisted.conversation_id,
            ticket_id=ticket.id,
        )

        if ticket.status == TicketStatus.ESCALATED.value:
            logger.info(
                "Ticket %s is with a human agent; stored message %s without reply",
                ticket.id,
                message.id,
                extra={"event": "handed_off", "ticket_id": str(ticket.id)},
            )
            base.outcome = HANDED_OFF
            return self._finish(inbound, base, started, escalated=False, tool_calls=0)

        decision = self._policy.evaluate(inbound.body, sentiment=message.sentiment_score)
        if decision.should_escalate:
            return self._hand_off(inbound, persisted, base, decision.reason, started)

        try:
            reply = self._respond(persisted, inbound)
        except ResponderError as exc:
            attempts = self._repo.increment_processing_attempts(message.id)
            if attempts < self.responder_max_attempts and not final_attempt:
                raise
            logger.error(
                "Responder failed %d times for message %s; escalating",
                attempts,
                message.id,
                extra={"event": "responder_exhausted", "message_id": message.id},
            )
            self._escalate(persisted, PROCESSING_FAILURE)
            outcome = self._apologize(inbound, persisted, alternate=False)
            base.outcome = ESCALATED
            base.escalation_reason = PROCESSING_FAILURE
            base.delivery_status = outcome.status.value if outcome else None
            base.error = f"{type(exc).__name__}: {exc}"
            return self._finish(inbound, base, started, escalated=True, tool_calls=0)

        if reply.escalate and not (reply.text or "").strip():
            # Nothing to say; the handoff notice stands in for the reply.
            return self._hand_off(
                inbound,
                persisted,
                base,
                reply.reason or RESPONDER_ESCALATION,
                started,
                tool_calls=reply.tool_calls_count,
            )

        outbound = self._store_outbound(inbound, persisted, reply.text, kind="reply", role=Role.AGENT)
        self._advance(self._tickets.start_progress, ticket.id)
        outcome = self._tracker.send(
            outbound, inbound.channel, display_name=inbound.contact.display_name
        )
        base.delivery_status = outcome.status.value

        escalated = False
        if outcome.failed:
            self._escalate(persisted, DELIVERY_FAILURE)
            self._apologize(inbound, persisted, alternate=True)
            base.escalation_reason = DELIVERY_FAILURE
            base.error = outcome.error
            escalated = True
        elif reply.escalate:
            reason = reply.reason or RESPONDER_ESCALATION
            self._escalate(persisted, reason)
            base.escalation_reason = reason
            escalated = True
        else:
            self._advance(self._tickets.resolve, ticket.id)
        if escalated:
            base.outcome = ESCALATED
        return self._finish(
            inbound, base, started, escalated=escalated, tool_calls=reply.tool_calls_count
        )

    def _persist(self, inbound: InboundMessage) -> _Persisted | DispatchResult:
        """Resolve, attach and store the inbound message under the keyed locks.

        The identifier locks cover identity resolution; once the customer is
        known a ``customer:<id>`` lock, always taken last, serializes
        conversation creation across channels.
        """

        score = self._nlp.sentiment_score(inbound.body)
        topics = self._nlp.extract_topics(inbound.body)
        with self._lock.hold(inbound.contact.lock_keys()):
            customer_id = self._resolver.resolve(inbound.contact)
            with self._lock.hold([f"customer:{customer_id}"]):
                attachment = self._sessions.attach(
                    customer_id, inbound.channel, inbound.received_at
                )
                try:
                    message = self._repo.add_message(
                        conversation_id=attachment.conversation_id,
                        channel=inbound.channel.value,
                        direction=Direction.INBOUND.value,
                        role=Role.CUSTOMER.value,
                        content=inbound.body,
                        subject=inbound.subject,
                        created_at=inbound.received_at,
                        channel_message_id=inbound.channel_message_id,
                        sentiment_score=score,
                        metadata=inbound.metadata,
                    )
                except DuplicateMessageError:
                    stored = self._repo.find_inbound_message(
                        inbound.channel.value, inbound.channel_message_id
                    )
                    return self._duplicate(inbound, stored)
                ticket, _ = self._tickets.ensure_ticket(
                    conversation_id=attachment.conversation_id,
                    customer_id=customer_id,
                    source_channel=inbound.channel.value,
                    category=topics[0],
                    priority="high" if score < NEUTRAL_SENTIMENT else "normal",
                )
                self._sessions.record_activity(
                    attachment.conversation_id, inbound.received_at, score
                )
        return _Persisted(message, attachment.conversation_id, customer_id, ticket)

    def _resume(self, message: schemas.MessageRecord) -> _Persisted:
        """Pick up an inbound message stored by an earlier, unfinished attempt."""

        conversation = self._repo.get_conversation(message.conversation_id)
        if conversation is None:  # pragma: no cover - guarded by the foreign key
            raise LookupError(f"conversation {message.conversation_id} is missing")
        ticket, _ = self._tickets.ensure_ticket(
            conversation_id=conversation.id,
            customer_id=conversation.customer_id,
            source_channel=message.channel,
        )
        logger.info(
            "Resuming inbound message %s after %d failed attempts",
            message.id,
            message.processing_attempts,
            extra={"event": "dispatch_resume", "message_id": message.id},
        )
        return _Persisted(message, conversation.id, conversation.customer_id, ticket)

    def _respond(self, persisted: _Persisted, inbound: InboundMessage) -> ResponderReply:
        history = [
            HistoryEntry(
                role=item.role, channel=item.channel, content=item.content, created_at=item.created_at
            )
            for item in self._repo.recent_messages(persisted.conversation_id, self.history_limit)
        ]
        customer = self._repo.get_customer(persisted.customer_id)
        conversation = self._repo.get_conversation(persisted.conversation_id)
        context = CustomerContext(
            customer_id=persisted.customer_id,
            conversation_id=persisted.conversation_id,
            channel=inbound.channel.value,
            display_name=(customer.display_name if customer else None)
            or inbound.contact.display_name,
            email=customer.email if customer else inbound.contact.email,
            phone=customer.phone if customer else inbound.contact.phone,
            ticket_category=persisted.ticket.category,
            sentiment=conversation.sentiment_score if conversation else None,
            channels_seen=sorted({entry.channel for entry in history}),
        )

        future = self._executor.submit(self._responder.respond, history, context)
        try:
            reply = future.result(timeout=self.responder_timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise ResponderTimeoutError(
                f"responder did not answer within {self.responder_timeout}s",
                conversation_id=str(persisted.conversation_id),
            ) from exc
        except ResponderError:
            raise
        except Exception as exc:
            raise ResponderFailureError(
                f"responder raised {type(exc).__name__}: {exc}",
                conversation_id=str(persisted.conversation_id),
            ) from exc
        if reply is None or not (reply.escalate or (reply.text or "").strip()):
            raise ResponderFailureError(
                "responder returned an empty reply",
                conversation_id=str(persisted.conversation_id),
            )
        return reply

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _store_outbound(
        self,
        inbound: InboundMessage,
        persisted: _Persisted,
        text: str,
        *,
        kind: str,
        role: Role,
        channel: Channel | None = None,
        destination: str | None = None,
    ) -> schemas.MessageRecord:
        """Store an outbound message once per inbound message and ``kind``."""

        channel = channel or inbound.channel
        key = f"{inbound.channel_message_id}:{kind}"
        existing = self._repo.find_message(channel.value, key)
        if existing is not None:
            return existing
        subject = inbound.subject if channel is Channel.EMAIL else None
        try:
            return self._repo.add_message(
                conversation_id=persisted.conversation_id,
                channel=channel.value,
                direction=Direction.OUTBOUND.value,
                role=role.value,
                content=text,
                subject=subject,
                created_at=max(self._clock(), inbound.received_at),
                channel_message_id=key,
                destination=destination or inbound.reply_destination,
                metadata={"in_reply_to": persisted.message.id, "kind": kind},
            )
        except DuplicateMessageError:
            stored = self._repo.find_message(channel.value, key)
            if stored is None:  # pragma: no cover - conflicting row vanished
                raise
            return stored

    def _advance(self, transition: Callable[[UUID], Any], ticket_id: UUID) -> None:
        """Move the ticket forward unless a concurrent worker already moved it past."""

        try:
            transition(ticket_id)
        except InvalidTransitionError as exc:
            logger.info(
                "Ticket %s not advanced: %s",
                ticket_id,
                exc,
                extra={"event": "ticket_not_advanced", "ticket_id": str(ticket_id)},
            )

    def _hand_off(
        self,
        inbound: InboundMessage,
        persisted: _Persisted,
        base: DispatchResult,
        reason: str,
        started: float,
        *,
        tool_calls: int = 0,
    ) -> DispatchResult:
        self._escalate(persisted, reason)
        ack = self._store_outbound(
            inbound, persisted, HANDOFF_MESSAGE, kind="handoff", role=Role.SYSTEM
        )
        outcome = self._tracker.send_best_effort(
            ack, inbound.channel, display_name=inbound.contact.display_name
        )
        base.outcome = ESCALATED
        base.escalation_reason = reason
        base.delivery_status = outcome.status.value
        return self._finish(inbound, base, started, escalated=True, tool_calls=tool_calls)

    def _apologize(self, inbound: InboundMessage, persisted: _Persisted, *, alternate: bool):
        channel, destination = inbound.channel, inbound.reply_destination
        if alternate:
            route = self._alternate_route(persisted.customer_id, inbound.channel)
            if route is not None:
                channel, destination = route
        if not destination:
            return None
        apology = self._store_outbound(
            inbound,
            persisted,
            APOLOGY_MESSAGE,
            kind="apology",
            role=Role.SYSTEM,
            channel=channel,
            destination=destination,
        )
        return self._tracker.send_best_effort(
            apology, channel, display_name=inbound.contact.display_name
        )

    def _alternate_route(
        self, customer_id: UUID, failed: Channel
    ) -> tuple[Channel, str] | None:
        identifiers = self._repo.list_identifiers(customer_id)
        emails = [i.value for i in identifiers if i.identifier_type == IdentifierType.EMAIL.value]
        phones = [i.value for i in identifiers if i.identifier_type == IdentifierType.PHONE.value]
        if failed is not Channel.EMAIL and emails:
            return Channel.EMAIL, emails[0]
        if failed is not Channel.CHAT and phones:
            return Channel.CHAT, phones[0]
        return None

    def _escalate(self, persisted: _Persisted, reason: str | None) -> None:
        reason = reason or RESPONDER_ESCALATION
        ticket = self._tickets.escalate(persisted.ticket.id, reason)
        if ticket is None:
            return
        self._events.escalation(
            ticket_id=str(ticket.id),
            reason=reason,
            urgency=urgency_for(reason),
            conversation_snapshot=self._snapshot(persisted),
        )

    def _snapshot(self, persisted: _Persisted) -> dict[str, Any]:
        conversation = self._repo.get_conversation(persisted.conversation_id)
        messages = self._repo.recent_messages(persisted.conversation_id, SNAPSHOT_MESSAGES)
        return {
            "conversation_id": str(persisted.conversation_id),
            "customer_id": str(persisted.customer_id),
            "initiating_channel": conversation.initiating_channel if conversation else None,
            "status": conversation.status if conversation else None,
            "sentiment_score": conversation.sentiment_score if conversation else None,
            "messages": [
                {
                    "id": item.id,
                    "channel": item.channel,
                    "direction": item.direction,
                    "role": item.role,
                    "content": item.content,
                    "created_at": item.created_at.isoformat(),
                }
                for item in messages
            ],
        }

    def _duplicate(
        self, inbound: InboundMessage, stored: schemas.MessageRecord | None
    ) -> DispatchResult:
        logger.info(
            "Skipping already stored %s message",
            inbound.channel.value,
            extra={"event": "duplicate_event", "channel": inbound.channel.value},
        )
        return DispatchResult(
            outcome=DUPLICATE,
            message_id=stored.id if stored else None,
            conversation_id=stored.conversation_id if stored else None,
        )

    def _finish(
        self,
        inbound: InboundMessage,
        result: DispatchResult,
        started: float,
        *,
        escalated: bool,
        tool_calls: int,
    ) -> DispatchResult:
        now = self._clock()
        self._repo.mark_processed(result.message_id, now)
        latency_ms = round((self._monotonic() - started) * 1000, 2)
        self._repo.record_metric(
            channel=inbound.channel.value,
            message_id=result.message_id,
            latency_ms=latency_ms,
            escalated=escalated,
            tool_calls_count=tool_calls,
            at=now,
        )
        self._events.metrics(
            channel=inbound.channel.value,
            latency_ms=latency_ms,
            escalated=escalated,
            tool_calls_count=tool_calls,
        )
        return result

    def _dead_letter(
        self, raw_event: Any, exc: Exception, attempts: int
    ) -> DispatchResult:
        payload = _jsonable(raw_event if isinstance(raw_event, Mapping) else {"raw": repr(raw_event)})
        channel = payload.get("channel") if isinstance(payload.get("channel"), str) else None
        message_id = payload.get("channel_message_id")
        context = _jsonable(
            {"retryable": getattr(exc, "retryable", False), **getattr(exc, "context", {})}
        )
        error = str(exc) or type(exc).__name__
        self._repo.add_dead_letter(
            payload=payload,
            error_type=type(exc).__name__,
            error=error,
            attempts=attempts,
            context=context,
            channel=channel,
            channel_message_id=str(message_id) if message_id is not None else None,
            at=self._clock(),
        )
        self._events.dead_letter(
            event=payload, error_type=type(exc).__name__, error=error, attempts=attempts
        )
        logger.error(
            "Dead-lettered %s event after %d attempts: %s",
            channel or "unknown",
            attempts,
            error,
            extra={
                "event": "dead_lettered",
                "channel": channel,
                "error_type": type(exc).__name__,
                "attempts": attempts,
            },
        )
        return DispatchResult(
            outcome=DEAD_LETTERED, attempts=attempts, error=f"{type(exc).__name__}: {error}"
        )


def _jsonable(value: Any) -> dict[str, Any]:
    return json.loads(json.dumps(dict(value), default=str))


__all__ = [
    "APOLOGY_MESSAGE",
    "DEAD_LETTERED",
    "DUPLICATE",
    "DispatchResult",
    "ESCALATED",
    "HANDED_OFF",
    "HANDOFF_MESSAGE",
    "IngestionDispatcher",
    "PROCESSED",
]
