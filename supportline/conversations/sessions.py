"""Decide which conversation an inbound message belongs to."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from uuid import UUID

from .models import Channel, ConversationAttachment
from .repository import SupportRepository

logger = logging.getLogger(__name__)


class ConversationSessionManager:
    """Attach messages to the customer's active conversation or start one.

    A conversation is reused when it is active and started no earlier than
    ``continuity_window`` before the message, whatever channel the message
    arrived on. Active conversations that fall outside the window are closed
    before a new one is opened, so a customer never has two.
    """

    def __init__(
        self,
        repository: SupportRepository,
        *,
        continuity_window: timedelta = timedelta(hours=24),
        idle_timeout: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repository
        self.continuity_window = continuity_window
        self.idle_timeout = idle_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def attach_to_conversation(
        self, customer_id: UUID, channel: Channel, message_timestamp: datetime
    ) -> UUID:
        return self.attach(customer_id, channel, message_timestamp).conversation_id

    def attach(
        self, customer_id: UUID, channel: Channel, message_timestamp: datetime
    ) -> ConversationAttachment:
        window_start = message_timestamp - self.continuity_window
        active = self._repo.list_active_conversations(customer_id)
        in_window = [c for c in active if c.start_time >= window_start]
        stale = [c for c in active if c.start_time < window_start]

        if len(in_window) > 1:
            logger.warning(
                "Customer %s has %d active conversations; using the newest",
                customer_id,
                len(in_window),
                extra={
                    "event": "conversation_inconsistency",
                    "customer_id": str(customer_id),
                    "conversation_ids": [str(c.id) for c in in_window],
                },
            )

        if in_window:
            chosen = max(in_window, key=lambda c: c.start_time)
            return ConversationAttachment(
                conversation_id=chosen.id,
                created=False,
                initiating_channel=Channel(chosen.initiating_channel),
            )

        for conversation in stale:
            if self._repo.close_conversation(
                conversation.id, ended_at=message_timestamp, resolution_type="expired"
            ):
                logger.info(
                    "Closed conversation %s outside the continuity window",
                    conversation.id,
                    extra={"event": "conversation_expired", "conversation_id": str(conversation.id)},
                )

        created = self._repo.create_conversation(customer_id, channel.value, message_timestamp)
        logger.info(
            "Started conversation %s on %s",
            created.id,
            channel.value,
            extra={"event": "conversation_started", "conversation_id": str(created.id)},
        )
        return ConversationAttachment(
            conversation_id=created.id, created=True, initiating_channel=channel
        )

    def record_activity(
        self, conversation_id: UUID, at: datetime, sentiment: float | None = None
    ) -> None:
        self._repo.record_conversation_activity(conversation_id, at=at, sentiment=sentiment)

    def close_idle_conversations(self, now: datetime | None = None) -> list[UUID]:
        """Close active conversations idle for longer than ``idle_timeout``."""

        now = now or self._clock()
        cutoff = now - self.idle_timeout
        closed: list[UUID] = []
        for conversation in self._repo.list_idle_conversations(cutoff):
            if self._repo.close_conversation(
                conversation.id, ended_at=now, resolution_type="idle_timeout"
            ):
                closed.append(conversation.id)
        if closed:
            logger.info(
                "Closed %d idle conversations",
                len(closed),
                extra={"event": "conversations_idle_closed", "count": len(closed)},
            )
        return closed


__all__ = ["ConversationSessionManager"]
