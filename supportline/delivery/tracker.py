"""Outbound delivery with bounded retries and per-attempt accounting."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..channels import get_adapter
from ..conversations import schemas
from ..conversations.models import Channel, DeliveryStatus
from ..conversations.repository import SupportRepository
from ..errors import DeliveryPermanentError, DeliveryTransientError
from ..ingestion.events import EventPublisher
from .senders import Sender

logger = logging.getLogger(__name__)

_RECEIPT_STATUSES = {
    "delivered": DeliveryStatus.DELIVERED,
    "read": DeliveryStatus.DELIVERED,
    "failed": DeliveryStatus.FAILED,
    "undeliverable": DeliveryStatus.FAILED,
    "bounced": DeliveryStatus.FAILED,
}


@dataclass
class ReplyChunks:
    """Finite, restartable sequence of reply parts.

    ``position`` only advances after a part was accepted by the sender, so a
    retry resumes with the first part that has not gone out.
    """

    parts: list[str]
    position: int = 0

    def remaining(self) -> list[str]:
        return self.parts[self.position :]

    def advance(self) -> None:
        self.position = min(self.position + 1, len(self.parts))

    @property
    def done(self) -> bool:
        return self.position >= len(self.parts)


@dataclass
class DeliveryOutcome:
    message_id: int
    channel: Channel
    status: DeliveryStatus
    attempts: int
    external_id: str | None = None
    error: str | None = None
    parts_sent: int = 0
    extra: dict[str, object] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status is DeliveryStatus.FAILED


class DeliveryTracker:
    """Deliver outbound messages through channel senders.

    Transient sender errors are retried with exponential backoff up to
    ``max_attempts``; permanent errors stop immediately. Every attempt is
    written as a ``DeliveryAttempt`` row and the message's delivery status
    moves to a terminal value exactly once.
    """

    def __init__(
        self,
        repository: SupportRepository,
        senders: Mapping[Channel, Sender],
        *,
        events: EventPublisher | None = None,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repository
        self._senders = dict(senders)
        self._events = events
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    def send(
        self,
        message: schemas.MessageRecord,
        channel: Channel,
        *,
        display_name: str | None = None,
        max_attempts: int | None = None,
    ) -> DeliveryOutcome:
        """Deliver ``message`` on ``channel`` and return the final outcome."""

        bound = max_attempts or self.max_attempts
        previous = self._repo.list_delivery_attempts(message.id)
        if message.delivery_status and DeliveryStatus(message.delivery_status) is not (
            DeliveryStatus.PENDING
        ):
            # Already settled by an earlier run of the same event.
            last = previous[-1] if previous else None
            return DeliveryOutcome(
                message_id=message.id,
                channel=channel,
                status=DeliveryStatus(message.delivery_status),
                attempts=len(previous),
                external_id=message.external_id,
                error=last.error if last else None,
            )

        chunks: ReplyChunks | None = None
        self._repo.update_delivery_status(
            message.id, DeliveryStatus.PENDING.value, only_from=[None]
        )
        sender = self._senders.get(channel)
        attempt = len(previous)
        external_id: str | None = None
        error: str | None = None

        while attempt < len(previous) + bound:
            attempt += 1
            try:
                if sender is None:
                    raise DeliveryPermanentError(f"no sender configured for {channel.value}")
                if not message.destination:
                    raise DeliveryPermanentError("message has no destination")
                if chunks is None:
                    chunks = ReplyChunks(
                        get_adapter(channel)().format_outgoing(
                            message.content, display_name=display_name
                        )
                    )
                status = DeliveryStatus.SENT
                for part in chunks.remaining():
                    result = sender.send(message.destination, part, subject=message.subject)
                    chunks.advance()
                    external_id = result.external_id or external_id
                    status = result.status
            except DeliveryPermanentError as exc:
                error = str(exc)
                self._record(message.id, attempt, DeliveryStatus.FAILED, error=error)
                logger.warning(
                    "Delivery of message %s on %s rejected: %s",
                    message.id,
                    channel.value,
                    error,
                    extra={"event": "delivery_rejected", "message_id": message.id},
                )
                break
            except DeliveryTransientError as exc:
                error = str(exc)
                self._record(message.id, attempt, DeliveryStatus.FAILED, error=error)
                logger.info(
                    "Delivery attempt %d for message %s failed: %s",
                    attempt,
                    message.id,
                    error,
                    extra={"event": "delivery_retry", "message_id": message.id},
                )
                if attempt < len(previous) + bound:
                    self._sleep(self.backoff(attempt - len(previous)))
                continue
            except Exception as exc:
                # Unknown sender or formatting faults are not retried.
                error = f"{type(exc).__name__}: {exc}"
                self._record(message.id, attempt, DeliveryStatus.FAILED, error=error)
                logger.exception(
                    "Delivery of message %s on %s crashed",
                    message.id,
                    channel.value,
                    extra={"event": "delivery_crashed", "message_id": message.id},
                )
                break
            self._record(message.id, attempt, status, external_id=external_id)
            self._repo.update_delivery_status(
                message.id,
                status.value,
                external_id=external_id,
                only_from=[None, DeliveryStatus.PENDING.value],
            )
            return self._finish(
                DeliveryOutcome(
                    message_id=message.id,
                    channel=channel,
                    status=status,
                    attempts=attempt,
                    external_id=external_id,
                    parts_sent=chunks.position if chunks else 0,
                )
            )

        self._repo.update_delivery_status(
            message.id,
            DeliveryStatus.FAILED.value,
            external_id=external_id,
            only_from=[None, DeliveryStatus.PENDING.value],
        )
        logger.error(
            "Delivery of message %s on %s failed after %d attempts",
            message.id,
            channel.value,
            attempt,
            extra={"event": "delivery_failed", "message_id": message.id, "channel": channel.value},
        )
        return self._finish(
            DeliveryOutcome(
                message_id=message.id,
                channel=channel,
                status=DeliveryStatus.FAILED,
                attempts=attempt,
                external_id=external_id,
                error=error,
                parts_sent=chunks.position if chunks else 0,
            )
        )

    def send_best_effort(
        self,
        message: schemas.MessageRecord,
        channel: Channel,
        *,
        display_name: str | None = None,
    ) -> DeliveryOutcome:
        """Single attempt, no retries; used for apologies and handoff notices."""

        return self.send(message, channel, display_name=display_name, max_attempts=1)

    def record_receipt(
        self, channel: Channel, external_id: str, status: str
    ) -> tuple[schemas.MessageRecord | None, bool]:
        """Apply a provider delivery receipt.

        Only a message that is still ``sent`` (or ``pending``) moves; receipts
        for settled messages are ignored and reported as not applied.
        """

        target = _RECEIPT_STATUSES.get(status.lower())
        message = self._repo.find_outbound_by_external_id(channel.value, external_id)
        if message is None or target is None:
            return message, False
        applied = self._repo.update_delivery_status(
            message.id,
            target.value,
            only_from=[status.value for status in DeliveryStatus if not status.is_terminal],
        )
        if applied and self._events is not None:
            self._events.delivery_outcome(
                message_id=message.id,
                channel=channel.value,
                status=target.value,
                attempt_number=None,
                error=None if target is DeliveryStatus.DELIVERED else f"receipt:{status}",
            )
        return self._repo.get_message(message.id), applied

    def _record(
        self,
        message_id: int,
        attempt: int,
        status: DeliveryStatus,
        *,
        error: str | None = None,
        external_id: str | None = None,
    ) -> None:
        self._repo.record_delivery_attempt(
            message_id,
            attempt,
            status.value,
            error=error,
            external_id=external_id,
            at=self._clock(),
        )

    def _finish(self, outcome: DeliveryOutcome) -> DeliveryOutcome:
        if self._events is not None:
            self._events.delivery_outcome(
                message_id=outcome.message_id,
                channel=outcome.channel.value,
                status=outcome.status.value,
                attempt_number=outcome.attempts,
                error=outcome.error,
            )
        return outcome


__all__ = ["DeliveryOutcome", "DeliveryTracker", "ReplyChunks"]
