"""Entry point turning raw inbound events into canonical messages."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..conversations.models import Channel, InboundMessage
from ..errors import NormalizationError
from . import get_adapter


def normalize(raw_event: Mapping[str, Any], channel: Channel | str) -> InboundMessage:
    """Normalize ``raw_event`` received on ``channel``.

    Raises:
        NormalizationError: the channel is unknown or a mandatory field
            (message id, body text, contact evidence, timestamp) is missing or
            malformed. The event is not retryable.
    """

    try:
        adapter_cls = get_adapter(channel)
    except KeyError as exc:
        raise NormalizationError(str(exc.args[0]), field="channel") from exc
    return adapter_cls().normalize(raw_event)


def normalize_event(raw_event: Mapping[str, Any]) -> InboundMessage:
    """Normalize an event that names its own channel."""

    if not isinstance(raw_event, Mapping):
        raise NormalizationError("inbound event must be an object")
    channel = raw_event.get("channel")
    if not channel:
        raise NormalizationError("channel is required", field="channel")
    return normalize(raw_event, channel)


__all__ = ["normalize", "normalize_event"]
