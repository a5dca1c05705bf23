"""Topic names and payload builders for events the core publishes."""

from __future__ import annotations

import logging
from typing import Any

from .bus import EventBus

logger = logging.getLogger(__name__)

INBOUND_TOPIC = "inbound_events"
ESCALATIONS_TOPIC = "escalations"
DELIVERY_OUTCOMES_TOPIC = "delivery_outcomes"
METRICS_TOPIC = "channel_metrics"
DEAD_LETTER_TOPIC = "dead_letters"


class EventPublisher:
    """Publish derived events; a failing bus never fails the pipeline step.

    Outcome events are informational: the database row (ticket transition,
    delivery attempt, metric, dead letter) is already the durable record.
    """

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus

    def _publish(self, topic: str, payload: dict[str, Any], key: str | None) -> None:
        try:
            self.bus.publish(topic, payload, key=key)
        except Exception:
            logger.exception(
                "Failed to publish %s event",
                topic,
                extra={"event": "publish_failed", "topic": topic},
            )

    def escalation(
        self,
        *,
        ticket_id: str,
        reason: str,
        urgency: str,
        conversation_snapshot: dict[str, Any],
    ) -> None:
        self._publish(
            ESCALATIONS_TOPIC,
            {
                "ticket_id": ticket_id,
                "reason": reason,
                "urgency": urgency,
                "conversation_snapshot": conversation_snapshot,
            },
            key=ticket_id,
        )

    def delivery_outcome(
        self,
        *,
        message_id: int,
        channel: str,
        status: str,
        attempt_number: int | None,
        error: str | None,
    ) -> None:
        payload: dict[str, Any] = {
            "message_id": message_id,
            "channel": channel,
            "status": status,
            "attempt_number": attempt_number,
        }
        if error:
            payload["error"] = error
        self._publish(DELIVERY_OUTCOMES_TOPIC, payload, key=str(message_id))

    def metrics(
        self, *, channel: str, latency_ms: float, escalated: bool, tool_calls_count: int
    ) -> None:
        self._publish(
            METRICS_TOPIC,
            {
                "channel": channel,
                "latency_ms": latency_ms,
                "escalated": escalated,
                "tool_calls_count": tool_calls_count,
            },
            key=channel,
        )

    def dead_letter(
        self, *, event: Any, error_type: str, error: str, attempts: int
    ) -> None:
        self._publish(
            DEAD_LETTER_TOPIC,
            {"event": event, "error_type": error_type, "error": error, "attempts": attempts},
            key=None,
        )


__all__ = [
    "DEAD_LETTER_TOPIC",
    "DELIVERY_OUTCOMES_TOPIC",
    "ESCALATIONS_TOPIC",
    "EventPublisher",
    "INBOUND_TOPIC",
    "METRICS_TOPIC",
]
