"""Customer identity, conversation and message persistence."""

from . import schemas
from .models import (
    Channel,
    ContactEvidence,
    ConversationAttachment,
    EscalationDecision,
    InboundMessage,
)

__all__ = [
    "Channel",
    "ContactEvidence",
    "ConversationAttachment",
    "EscalationDecision",
    "InboundMessage",
    "schemas",
]
