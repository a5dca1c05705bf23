"""Ticket lifecycle and escalation policy."""

from .state_machine import EscalationPolicy, TicketStateMachine, urgency_for, validate_transition

__all__ = ["EscalationPolicy", "TicketStateMachine", "urgency_for", "validate_transition"]
