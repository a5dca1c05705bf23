"""Channel adapter registry for multi-channel ingestion."""

from __future__ import annotations

from ..conversations.models import Channel
from .base import ChannelAdapter
from .chat import ChatAdapter
from .mail import EmailAdapter
from .web_form import WebFormAdapter

_REGISTRY: dict[Channel, type[ChannelAdapter]] = {}


def register_adapter(adapter: type[ChannelAdapter]) -> None:
    """Register a channel adapter class in the global registry."""
    _REGISTRY[adapter.channel] = adapter


def get_adapter(name: str | Channel) -> type[ChannelAdapter]:
    """Retrieve an adapter class for ``name`` or raise ``KeyError``."""
    try:
        channel = Channel(name.lower() if isinstance(name, str) else name)
    except (TypeError, ValueError) as exc:
        raise KeyError(f"Channel '{name}' is not configured") from exc
    if channel not in _REGISTRY:
        raise KeyError(f"Channel '{name}' is not configured")
    return _REGISTRY[channel]


# Pre-register built-in adapters
register_adapter(EmailAdapter)
register_adapter(ChatAdapter)
register_adapter(WebFormAdapter)

__all__ = ["ChannelAdapter", "get_adapter", "register_adapter"]
