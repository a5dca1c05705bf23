"""SQLAlchemy declarative base and support-domain models.

This package hosts the SQLAlchemy models used by the ingestion core. It
exposes a single declarative ``Base`` class that the migration and the test
fixtures use when creating tables. Individual models live in
:mod:`supportline.models.support`.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export the models so callers can import them via
# ``from supportline.models import Customer`` instead of touching private modules.
from .support import (  # noqa: E402
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


__all__ = [
    "Base",
    "ChannelMetric",
    "Conversation",
    "Customer",
    "CustomerIdentifier",
    "DeadLetter",
    "DeliveryAttempt",
    "Message",
    "Ticket",
    "TicketTransition",
]
