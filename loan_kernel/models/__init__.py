"""Persistence models for the loan intake pipeline."""

from loan_kernel.models.application import (
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    ApplicationStatus,
    LoanApplication,
)
from loan_kernel.models.application_log import ApplicationLog, EventKind
from loan_kernel.models.audit_event import AuditAction, AuditEvent
from loan_kernel.models.client import MAX_CREDIT_SCORE, MIN_CREDIT_SCORE, Client
from loan_kernel.models.queue import ConversationState, QueueConversation, QueueMessage
from loan_kernel.models.status_history import StatusTransition

__all__ = [
    "Client",
    "MIN_CREDIT_SCORE",
    "MAX_CREDIT_SCORE",
    "LoanApplication",
    "ApplicationStatus",
    "VALID_TRANSITIONS",
    "TERMINAL_STATUSES",
    "QueueConversation",
    "QueueMessage",
    "ConversationState",
    "StatusTransition",
    "ApplicationLog",
    "EventKind",
    "AuditEvent",
    "AuditAction",
]
