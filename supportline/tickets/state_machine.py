"""Ticket lifecycle and escalation policy.

Statuses only move forward: ``open -> in_progress -> resolved``, and any of
those can move to ``escalated``, which is terminal.

Transitions are compare-and-set updates in the repository, so two workers
racing on the same ticket apply a given transition at most once and can never
move a ticket backwards.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from uuid import UUID

from ..conversations import schemas
from ..conversations.models import EscalationDecision, TicketStatus
from ..conversations.repository import SupportRepository
from ..errors import InvalidTransitionError
from ..nlp import NlpPipeline

logger = logging.getLogger(__name__)

RANK: dict[TicketStatus, int] = {
    TicketStatus.OPEN: 0,
    TicketStatus.IN_PROGRESS: 1,
    TicketStatus.RESOLVED: 2,
    TicketStatus.ESCALATED: 3,
}

ALLOWED_FROM: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.IN_PROGRESS: frozenset({TicketStatus.OPEN}),
    TicketStatus.RESOLVED: frozenset({TicketStatus.IN_PROGRESS}),
    TicketStatus.ESCALATED: frozenset(
        {TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED}
    ),
}

NEGATIVE_SENTIMENT = "negative_sentiment"
PROCESSING_FAILURE = "processing_failure"
DELIVERY_FAILURE = "delivery_failure"
RESPONDER_ESCALATION = "responder_escalation"

_HIGH_URGENCY_PREFIXES = (
    "keyword:legal_language",
    NEGATIVE_SENTIMENT,
    PROCESSING_FAILURE,
    DELIVERY_FAILURE,
)


def validate_transition(current: TicketStatus | str, target: TicketStatus | str) -> None:
    """Raise :class:`InvalidTransitionError` unless ``current -> target`` is allowed."""

    current, target = TicketStatus(current), TicketStatus(target)
    allowed = ALLOWED_FROM.get(target, frozenset())
    if current not in allowed or RANK[target] <= RANK[current]:
        raise InvalidTransitionError(
            f"cannot move ticket from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )


def urgency_for(reason: str | None) -> str:
    if reason and reason.startswith(_HIGH_URGENCY_PREFIXES):
        return "high"
    return "normal"


class EscalationPolicy:
    """Hard escalation triggers evaluated on inbound text.

    Keyword matches take precedence over low sentiment so the reason names the
    most specific trigger.
    """

    def __init__(
        self,
        *,
        keywords: Mapping[str, Iterable[str]],
        sentiment_floor: float = 0.3,
        nlp: NlpPipeline | None = None,
    ) -> None:
        self.keywords = {category: tuple(words) for category, words in keywords.items()}
        self.sentiment_floor = sentiment_floor
        self.nlp = nlp or NlpPipeline()

    def evaluate(self, text: str, sentiment: float | None = None) -> EscalationDecision:
        match = self.nlp.match_keywords(text, self.keywords)
        if match is not None:
            reason = f"keyword:{match.category}:{match.keyword}"
            return EscalationDecision(True, reason, urgency_for(reason))
        score = self.nlp.sentiment_score(text) if sentiment is None else sentiment
        if score < self.sentiment_floor:
            return EscalationDecision(True, NEGATIVE_SENTIMENT, urgency_for(NEGATIVE_SENTIMENT))
        return EscalationDecision(False)


class TicketStateMachine:
    """Create tickets and apply monotonic status transitions."""

    def __init__(
        self,
        repository: SupportRepository,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def ensure_ticket(
        self,
        *,
        conversation_id: UUID,
        customer_id: UUID,
        source_channel: str,
        category: str = "general",
        priority: str = "normal",
    ) -> tuple[schemas.TicketRecord, bool]:
        """Return the conversation's ticket, opening it on first contact."""

        ticket, created = self._repo.get_or_create_ticket(
            conversation_id=conversation_id,
            customer_id=customer_id,
            source_channel=source_channel,
            category=category,
            priority=priority,
            now=self._clock(),
        )
        if created:
            logger.info(
                "Opened ticket %s for conversation %s",
                ticket.id,
                conversation_id,
                extra={"event": "ticket_opened", "ticket_id": str(ticket.id)},
            )
        return ticket, created

    def start_progress(self, ticket_id: UUID) -> schemas.TicketRecord | None:
        return self._apply(ticket_id, TicketStatus.IN_PROGRESS)

    def resolve(self, ticket_id: UUID, notes: str | None = None) -> schemas.TicketRecord | None:
        return self._apply(ticket_id, TicketStatus.RESOLVED, notes=notes)

    def escalate(self, ticket_id: UUID, reason: str) -> schemas.TicketRecord | None:
        ticket = self._apply(ticket_id, TicketStatus.ESCALATED, reason=reason)
        if ticket is not None:
            logger.warning(
                "Escalated ticket %s: %s",
                ticket_id,
                reason,
                extra={
                    "event": "ticket_escalated",
                    "ticket_id": str(ticket_id),
                    "reason": reason,
                    "urgency": urgency_for(reason),
                },
            )
        return ticket

    def _apply(
        self,
        ticket_id: UUID,
        target: TicketStatus,
        *,
        reason: str | None = None,
        notes: str | None = None,
    ) -> schemas.TicketRecord | None:
        """Apply a transition.

        Returns ``None`` when the ticket is missing, already in ``target`` or
        lost a race to another worker; a backward move raises
        :class:`InvalidTransitionError`.
        """

        current = self._repo.get_ticket(ticket_id)
        if current is None or current.status == target.value:
            return None
        validate_transition(current.status, target)
        return self._repo.transition_ticket(
            ticket_id,
            allowed_from=[status.value for status in ALLOWED_FROM[target]],
            to_status=target.value,
            reason=reason,
            notes=notes,
            now=self._clock(),
        )


__all__ = [
    "ALLOWED_FROM",
    "DELIVERY_FAILURE",
    "EscalationPolicy",
    "NEGATIVE_SENTIMENT",
    "PROCESSING_FAILURE",
    "RANK",
    "RESPONDER_ESCALATION",
    "TicketStateMachine",
    "urgency_for",
    "validate_transition",
]
