"""Services for the loan kernel (write side)."""

from loan_kernel.services.application_store import ApplicationStore
from loan_kernel.services.audit_sink import ApplicationAuditSink
from loan_kernel.services.auditor_service import AuditorService, AuditTrace, AuditTraceEntry
from loan_kernel.services.intake_service import IntakeProducer, SubmissionResult
from loan_kernel.services.queue_service import (
    END_DIALOG,
    LOAN_APPLICATION_MESSAGE,
    DurableQueue,
    ReceivedMessage,
)
from loan_kernel.services.sequence_service import SequenceService

__all__ = [
    "ApplicationAuditSink",
    "ApplicationStore",
    "AuditorService",
    "AuditTrace",
    "AuditTraceEntry",
    "DurableQueue",
    "END_DIALOG",
    "IntakeProducer",
    "LOAN_APPLICATION_MESSAGE",
    "ReceivedMessage",
    "SequenceService",
    "SubmissionResult",
]
