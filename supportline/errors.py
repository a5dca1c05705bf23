"""Exception types raised by the ingestion core.

Every error carries a ``retryable`` flag. The dispatcher consults it to decide
between another attempt with backoff and the dead-letter path.
"""

from __future__ import annotations

from typing import Any


class SupportlineError(Exception):
    """Base class for errors raised by the ingestion core."""

    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = context


class NormalizationError(SupportlineError):
    """Raised when an inbound event is missing mandatory fields."""


class IdentityConflictError(SupportlineError):
    """Raised when a uniqueness conflict cannot be resolved by re-fetching."""

    retryable = True


class ResponderError(SupportlineError):
    """Base class for responder failures."""

    retryable = True


class ResponderTimeoutError(ResponderError):
    """The responder did not answer within the configured timeout."""


class ResponderFailureError(ResponderError):
    """The responder raised or returned an unusable reply."""


class DeliveryError(SupportlineError):
    """Base class for sender failures."""


class DeliveryTransientError(DeliveryError):
    """Network, timeout or provider-side failure worth retrying."""

    retryable = True


class DeliveryPermanentError(DeliveryError):
    """The provider rejected the message (invalid address, bad request)."""


class InvalidTransitionError(SupportlineError):
    """A ticket transition would move the status backwards."""


class DuplicateMessageError(SupportlineError):
    """A message with the same channel message id is already stored."""


class NotFoundError(SupportlineError):
    """A requested customer, conversation or message does not exist."""


__all__ = [
    "DeliveryError",
    "DeliveryPermanentError",
    "DeliveryTransientError",
    "DuplicateMessageError",
    "IdentityConflictError",
    "InvalidTransitionError",
    "NormalizationError",
    "NotFoundError",
    "ResponderError",
    "ResponderFailureError",
    "ResponderTimeoutError",
    "SupportlineError",
]
