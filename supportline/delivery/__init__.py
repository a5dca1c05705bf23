"""Outbound delivery: channel senders and the delivery tracker."""

from .senders import (
    ChatSender,
    EmailSender,
    HttpSender,
    SendResult,
    Sender,
    WebNotificationSender,
    build_senders,
)
from .tracker import DeliveryOutcome, DeliveryTracker, ReplyChunks

__all__ = [
    "ChatSender",
    "DeliveryOutcome",
    "DeliveryTracker",
    "EmailSender",
    "HttpSender",
    "ReplyChunks",
    "SendResult",
    "Sender",
    "WebNotificationSender",
    "build_senders",
]
