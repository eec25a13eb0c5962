"""
ORM-Level Immutability Enforcement (Layer 1 of 2).

===============================================================================
WHY THIS EXISTS
===============================================================================

The status history, the operational log and the audit chain are the record
of what the pipeline decided and why.  They are append-only.  A loan
application's terms and owner never change after submission, and its
status only ever moves forward along the state machine.

  Layer 1: THIS FILE (ORM event listeners)
    - Catches modifications through Python/SQLAlchemy code
    - Fires BEFORE the SQL is sent to the database

  Layer 2: db/triggers.py (database triggers)
    - Catches raw SQL and bulk statements against the append-only tables
    - Fires AT the database level, independent of application code

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity            | When Immutable                | Rule
------------------|-------------------------------|--------------------------------
AuditEvent        | ALWAYS                        | No UPDATE, no DELETE
StatusTransition  | ALWAYS                        | No UPDATE, no DELETE
ApplicationLog    | ALWAYS                        | No UPDATE, no DELETE
LoanApplication   | Loan terms, owner: ALWAYS     | client_id/amount/term_units/purpose frozen
                  | Status: per state machine     | Only VALID_TRANSITIONS moves
                  | Row: ALWAYS                   | No DELETE
Client            | Row: ALWAYS                   | No DELETE (contact fields are upserted)

===============================================================================
USAGE
===============================================================================

    from loan_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup; idempotent

To temporarily disable (TESTS ONLY):

    from loan_kernel.db.immutability import unregister_immutability_listeners
    unregister_immutability_listeners()
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from loan_kernel.exceptions import ImmutabilityViolationError
from loan_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _blocked(entity_type: str, target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


# =============================================================================
# Append-only records
# =============================================================================


def _check_append_only_update(mapper, connection, target):
    """Prevent any updates to append-only records."""
    entity_type = type(target).__name__
    _blocked(
        entity_type, target, "UPDATE",
        f"{entity_type} records are append-only and cannot be modified",
    )


def _check_append_only_delete(mapper, connection, target):
    """Prevent deletion of append-only records."""
    entity_type = type(target).__name__
    _blocked(
        entity_type, target, "DELETE",
        f"{entity_type} records are append-only and cannot be deleted",
    )


# =============================================================================
# LoanApplication
# =============================================================================


def _check_application_immutability(mapper, connection, target):
    """
    Freeze loan terms and owner; allow status only along the state machine.
    """
    from loan_kernel.models.application import (
        LOAN_TERM_FIELDS,
        VALID_TRANSITIONS,
        ApplicationStatus,
    )

    for field in LOAN_TERM_FIELDS:
        if get_history(target, field).has_changes():
            _blocked(
                "LoanApplication", target, "UPDATE",
                f"Field '{field}' is immutable after submission",
            )

    status_history = get_history(target, "status")
    if status_history.deleted and status_history.added:
        old_status = ApplicationStatus(status_history.deleted[0])
        new_status = ApplicationStatus(status_history.added[0])
        if new_status != old_status and new_status not in VALID_TRANSITIONS[old_status]:
            _blocked(
                "LoanApplication", target, "UPDATE",
                f"Status cannot move from {old_status.value} to {new_status.value}",
            )


def _check_application_delete(mapper, connection, target):
    _blocked("LoanApplication", target, "DELETE", "Loan applications cannot be deleted")


def _check_client_delete(mapper, connection, target):
    _blocked("Client", target, "DELETE", "Clients cannot be deleted")


# =============================================================================
# Registration
# =============================================================================


def _listener_table():
    from loan_kernel.models.application import LoanApplication
    from loan_kernel.models.application_log import ApplicationLog
    from loan_kernel.models.audit_event import AuditEvent
    from loan_kernel.models.client import Client
    from loan_kernel.models.status_history import StatusTransition

    return [
        (AuditEvent, "before_update", _check_append_only_update),
        (AuditEvent, "before_delete", _check_append_only_delete),
        (StatusTransition, "before_update", _check_append_only_update),
        (StatusTransition, "before_delete", _check_append_only_delete),
        (ApplicationLog, "before_update", _check_append_only_update),
        (ApplicationLog, "before_delete", _check_append_only_delete),
        (LoanApplication, "before_update", _check_application_immutability),
        (LoanApplication, "before_delete", _check_application_delete),
        (Client, "before_delete", _check_client_delete),
    ]


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call this after all models are imported but before any database
    operations begin.  Calling it again is harmless.
    """
    for target, event_name, listener_fn in _listener_table():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, listener_fn in _listener_table():
        _safe_remove_listener(target, event_name, listener_fn)
