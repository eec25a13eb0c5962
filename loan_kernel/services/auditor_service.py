"""
AuditorService -- tamper-evident row-change audit and hash chain maintenance.

Responsibility:
    Records every INSERT and UPDATE the pipeline makes to clients and loan
    applications as an immutable, hash-chained AuditEvent carrying the old
    and new column values and the acting principal.  Provides chain
    validation for tamper detection and trace queries for review.

Architecture position:
    Kernel > Services -- imperative shell, called by ApplicationStore.

Invariants enforced:
    - Sequence monotonicity via SequenceService (never raw SQL max+1).
    - Chain integrity: ``hash = H(table | record | action | payload_hash |
      prev_hash)``.  Every event carries a link to its predecessor.
    - Append-only: audit events are never modified or deleted (ORM listener
      and DB trigger on the AuditEvent model).

Failure modes:
    - AuditChainBrokenError: a recomputed hash does not match the stored
      hash, or prev_hash does not match the predecessor's hash.

Audit relevance:
    This IS the row-change audit.  Unlike the status history sink it is
    written in the business transaction itself: a store change and its
    audit event commit or roll back together.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from loan_kernel.domain.clock import Clock, SystemClock
from loan_kernel.exceptions import AuditChainBrokenError
from loan_kernel.logging_config import get_logger
from loan_kernel.models.audit_event import AuditAction, AuditEvent
from loan_kernel.services.sequence_service import SequenceService
from loan_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: str
    occurred_at: datetime
    actor: str | None
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one row, in chain order."""

    table_name: str
    record_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def first_action(self) -> str | None:
        return self.entries[0].action if self.entries else None

    @property
    def last_action(self) -> str | None:
        return self.entries[-1].action if self.entries else None


def _payload(old_values: dict | None, new_values: dict | None) -> dict:
    return {"old": old_values, "new": new_values}


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT interpret or act on audit events.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        """Get the hash of the most recent audit event."""
        return self._session.execute(
            select(AuditEvent.hash)
            .order_by(AuditEvent.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    def record_row_change(
        self,
        table_name: str,
        record_id: UUID,
        action: AuditAction,
        actor: str | None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Append one row-change event to the chain.

        Preconditions:
            The caller is inside the transaction that made the change.
        Postconditions:
            A new AuditEvent is flushed with the next audit sequence number
            and ``hash == H(table_name, record_id, action, payload_hash,
            prev_hash)``.
        """
        # The counter row lock serializes chain appends
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        old_values = to_json_safe(old_values)
        new_values = to_json_safe(new_values)
        payload_hash = hash_payload(_payload(old_values, new_values))

        event_hash = hash_audit_event(
            table_name=table_name,
            record_id=str(record_id),
            action=action.value,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            table_name=table_name,
            record_id=record_id,
            action=action.value,
            actor=actor,
            occurred_at=self._clock.now(),
            old_values=old_values,
            new_values=new_values,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )
        self._session.add(audit_event)
        self._session.flush()

        logger.debug(
            "audit_event_created",
            extra={
                "table_name": table_name,
                "record_id": str(record_id),
                "action": action.value,
                "seq": seq,
            },
        )
        return audit_event

    # Chain validation

    def validate_chain(self) -> bool:
        """
        Validate the entire audit chain.

        Checks, for every event in seq order, that the stored values still
        hash to the stored payload_hash, that the event hash recomputes, and
        that prev_hash links to the predecessor.

        Raises:
            AuditChainBrokenError: If chain validation fails at any point.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        prev_hash = None
        for event in events:
            if event.prev_hash != prev_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"audit_event_id": str(event.id), "check": "linkage"},
                )
                raise AuditChainBrokenError(
                    str(event.id), prev_hash or "None", event.prev_hash or "None",
                )

            payload_hash = hash_payload(_payload(event.old_values, event.new_values))
            if payload_hash != event.payload_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"audit_event_id": str(event.id), "check": "payload"},
                )
                raise AuditChainBrokenError(str(event.id), payload_hash, event.payload_hash)

            expected_hash = hash_audit_event(
                table_name=event.table_name,
                record_id=str(event.record_id),
                action=event.action,
                payload_hash=event.payload_hash,
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"audit_event_id": str(event.id), "check": "hash"},
                )
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)

            prev_hash = event.hash

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True

    # Trace and query methods

    def get_trace(self, table_name: str, record_id: UUID) -> AuditTrace:
        """Get the complete audit trace for one row."""
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.table_name == table_name,
                AuditEvent.record_id == record_id,
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        entries = tuple(
            AuditTraceEntry(
                seq=event.seq,
                action=event.action,
                occurred_at=event.occurred_at,
                actor=event.actor,
                old_values=event.old_values,
                new_values=event.new_values,
                hash=event.hash,
            )
            for event in events
        )
        return AuditTrace(table_name=table_name, record_id=record_id, entries=entries)

    def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """Get the most recent audit events, most recent first."""
        return list(
            self._session.execute(
                select(AuditEvent)
                .order_by(AuditEvent.seq.desc())
                .limit(limit)
            ).scalars().all()
        )
