"""
ApplicationAuditSink -- append-only status history and operational log.

Responsibility:
    Appends StatusTransition records (one per accepted status move) and
    ApplicationLog events (validation failures, intake steps, queue
    activity, warnings, errors).

Architecture position:
    Kernel > Services -- called by IntakeProducer and DecisionWorker.

Invariants enforced:
    - Append-only (ORM listeners and DB triggers on both tables).
    - Best-effort: every append runs in its own SAVEPOINT.  If the append
      fails the savepoint is rolled back, the failure is logged, and the
      caller's business transaction carries on untouched.
    - Optional idempotent transitions: with ``deduplicate_transitions`` a
      transition carries the key ``application_id:new_status``; a replay
      of the same transition is dropped instead of recorded twice.

Failure modes:
    - None surfaced.  Audit failures never roll back business state.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from loan_kernel.domain.clock import Clock, SystemClock
from loan_kernel.logging_config import get_logger
from loan_kernel.models.application import ApplicationStatus
from loan_kernel.models.application_log import ApplicationLog, EventKind
from loan_kernel.models.status_history import StatusTransition
from loan_kernel.services.sequence_service import SequenceService
from loan_kernel.utils.hashing import to_json_safe
from loan_kernel.utils.idempotency import transition_idempotency_key

logger = get_logger("services.audit_sink")


def _status_value(status: ApplicationStatus | str | None) -> str | None:
    if status is None:
        return None
    return status.value if isinstance(status, ApplicationStatus) else str(status)


class ApplicationAuditSink:
    """
    Best-effort writer for status history and operational events.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT read its own records back for business decisions.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        deduplicate_transitions: bool = False,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._deduplicate = deduplicate_transitions
        self._sequence_service = SequenceService(session)

    def append_transition(
        self,
        application_id: UUID,
        old_status: ApplicationStatus | str | None,
        new_status: ApplicationStatus | str,
        reason: str | None,
        actor: str | None = None,
    ) -> StatusTransition | None:
        """
        Record one status transition.

        Returns:
            The flushed StatusTransition, or None when the append was a
            deduplicated replay or failed.
        """
        new_value = _status_value(new_status)
        key = (
            transition_idempotency_key(application_id, new_value)
            if self._deduplicate
            else None
        )

        savepoint = self._session.begin_nested()
        try:
            if key is not None:
                existing = self._session.execute(
                    select(StatusTransition.id).where(
                        StatusTransition.idempotency_key == key
                    )
                ).scalar_one_or_none()
                if existing is not None:
                    savepoint.commit()
                    logger.info(
                        "status_transition_deduplicated",
                        extra={"application_id": str(application_id), "idempotency_key": key},
                    )
                    return None

            transition = StatusTransition(
                seq=self._sequence_service.next_value(SequenceService.STATUS_HISTORY),
                application_id=application_id,
                old_status=_status_value(old_status),
                new_status=new_value,
                reason=reason,
                changed_by=actor,
                changed_at=self._clock.now(),
                idempotency_key=key,
            )
            self._session.add(transition)
            self._session.flush()
            savepoint.commit()
        except Exception:
            savepoint.rollback()
            logger.exception(
                "status_transition_append_failed",
                extra={
                    "application_id": str(application_id),
                    "old_status": _status_value(old_status),
                    "new_status": new_value,
                },
            )
            return None

        logger.info(
            "status_transition_recorded",
            extra={
                "application_id": str(application_id),
                "old_status": transition.old_status,
                "new_status": transition.new_status,
                "reason": reason,
            },
        )
        return transition

    def append_event(
        self,
        application_id: UUID | None,
        kind: EventKind | str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> ApplicationLog | None:
        """
        Record one operational event.

        Returns:
            The flushed ApplicationLog, or None if the append failed.
        """
        kind_value = kind.value if isinstance(kind, EventKind) else str(kind)

        savepoint = self._session.begin_nested()
        try:
            entry = ApplicationLog(
                application_id=application_id,
                kind=kind_value,
                message=message,
                details=to_json_safe(details),
                logged_at=self._clock.now(),
            )
            self._session.add(entry)
            self._session.flush()
            savepoint.commit()
        except Exception:
            savepoint.rollback()
            logger.exception(
                "application_event_append_failed",
                extra={
                    "application_id": str(application_id) if application_id else None,
                    "kind": kind_value,
                },
            )
            return None

        logger.debug(
            "application_event_recorded",
            extra={"kind": kind_value, "event_message": message},
        )
        return entry
