"""Reply generation collaborators."""

from .base import CustomerContext, HistoryEntry, KnowledgeLookup, Responder, ResponderReply

__all__ = ["CustomerContext", "HistoryEntry", "KnowledgeLookup", "Responder", "ResponderReply"]
