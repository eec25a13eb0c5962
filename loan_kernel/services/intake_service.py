"""
IntakeProducer -- validated, atomic loan application submission.

Responsibility:
    Entry point for new loan applications.  Validates producer input at the
    boundary, then in ONE transaction upserts the client by email, inserts
    the application in status Submitted, records the creation transition and
    enqueues the processing message (transactional outbox).

Architecture position:
    Kernel > Services -- imperative shell.  Unlike the other services the
    producer owns its transaction: it opens a session per submission from
    the injected session factory and commits or rolls back itself.

Invariants enforced:
    - Validation precedes any write; a ValidationError leaves no state.
    - Atomicity: client upsert, application insert, creation transition and
      queue message all commit together or not at all.  There is never an
      application without its message, nor a message without its
      application.

Failure modes:
    - ValidationError: bad input shape or range (synchronous, no writes).
    - SubmissionFailedError: any failure inside the intake transaction; the
      transaction is rolled back and the cause is chained.

Audit relevance:
    Client, Application and Queue operational events are written in the
    intake transaction.  Validation and submission failures are recorded
    best-effort in a separate transaction after the rollback.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from loan_kernel.db.engine import session_scope
from loan_kernel.domain.clock import Clock, SystemClock
from loan_kernel.domain.dtos import ClientFields, LoanTerms
from loan_kernel.domain.state_machine import plan_creation
from loan_kernel.domain.validation import parse_loan_details, validate_client_fields
from loan_kernel.exceptions import SubmissionFailedError, ValidationError
from loan_kernel.logging_config import LogContext, get_logger
from loan_kernel.models.application import ApplicationStatus
from loan_kernel.models.application_log import EventKind
from loan_kernel.services.application_store import ApplicationStore
from loan_kernel.services.audit_sink import ApplicationAuditSink
from loan_kernel.services.queue_service import (
    LOAN_APPLICATION_MESSAGE,
    DurableQueue,
    application_message_body,
)

logger = get_logger("services.intake")


@dataclass(frozen=True)
class SubmissionResult:
    """Result of a successful submission."""

    application_id: UUID
    conversation_id: UUID
    client_id: UUID
    client_created: bool
    status: ApplicationStatus = ApplicationStatus.SUBMITTED

    def to_dict(self) -> dict[str, str]:
        """Producer-facing response body."""
        return {"application_id": str(self.application_id), "status": self.status.value}


class IntakeProducer:
    """
    Submits loan applications.

    Contract:
        ``submit_application`` returns a SubmissionResult whose application
        is durably stored in status Submitted with exactly one queued
        processing message, or raises.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        queue: DurableQueue,
        clock: Clock | None = None,
        deduplicate_transitions: bool = False,
    ):
        self._session_factory = session_factory
        self._queue = queue
        self._clock = clock or SystemClock()
        self._deduplicate = deduplicate_transitions

    def _sink(self, session: Session) -> ApplicationAuditSink:
        return ApplicationAuditSink(
            session, self._clock, deduplicate_transitions=self._deduplicate
        )

    def submit_application(
        self,
        client_fields: ClientFields | Mapping[str, Any],
        loan_fields: LoanTerms | Mapping[str, Any] | str,
        actor: str | None = None,
    ) -> SubmissionResult:
        """
        Validate and persist one application, queueing it for a decision.

        Args:
            client_fields: first_name, last_name, email, phone, credit_score.
            loan_fields: amount/term_units/purpose as LoanTerms, a mapping,
                or a JSON object string (``loanAmount``/``loanTerm``/``purpose``).
            actor: Who is submitting; recorded on every row written.

        Raises:
            ValidationError: Input rejected before any write.
            SubmissionFailedError: Intake transaction failed and rolled back.
        """
        with LogContext.bind(correlation_id=str(uuid4()), actor=actor):
            try:
                client = validate_client_fields(client_fields)
                terms = parse_loan_details(loan_fields)
            except ValidationError as exc:
                logger.warning(
                    "submission_validation_failed",
                    extra={"field": exc.field, "reason": exc.reason},
                )
                self._record_failure(
                    EventKind.VALIDATION,
                    str(exc),
                    {"field": exc.field, "reason": exc.reason, "value": repr(exc.value)},
                )
                raise

            session = self._session_factory()
            try:
                result = self._persist(session, client, terms, actor)
                session.commit()
            except Exception as exc:
                session.rollback()
                logger.exception(
                    "submission_failed",
                    extra={"email": client.email},
                )
                self._record_failure(
                    EventKind.ERROR,
                    "Error submitting application",
                    {"email": client.email, "error": str(exc)},
                )
                raise SubmissionFailedError(client.email, str(exc)) from exc
            finally:
                session.close()

            logger.info(
                "application_submitted",
                extra={
                    "application_id": str(result.application_id),
                    "conversation_id": str(result.conversation_id),
                    "client_created": result.client_created,
                },
            )
            return result

    def _persist(
        self,
        session: Session,
        client_fields: ClientFields,
        terms: LoanTerms,
        actor: str | None,
    ) -> SubmissionResult:
        store = ApplicationStore(session, self._clock)
        sink = self._sink(session)

        client, created = store.upsert_client(client_fields, actor)
        sink.append_event(
            None,
            EventKind.CLIENT,
            "Client created" if created else "Client updated",
            {"client_id": client.id, "email": client.email},
        )

        application_id = store.create_application(client.id, terms, actor)
        creation = plan_creation()
        sink.append_transition(
            application_id, creation.old_status, creation.new_status, creation.reason, actor
        )
        sink.append_event(
            application_id,
            EventKind.APPLICATION,
            "Application created",
            {
                "client_id": client.id,
                "amount": terms.amount,
                "term_units": terms.term_units,
                "purpose": terms.purpose,
            },
        )

        conversation_id = self._queue.enqueue(
            session,
            LOAN_APPLICATION_MESSAGE,
            application_message_body(application_id),
        )
        sink.append_event(
            application_id,
            EventKind.QUEUE,
            "Application queued for processing",
            {"conversation_id": conversation_id},
        )

        return SubmissionResult(
            application_id=application_id,
            conversation_id=conversation_id,
            client_id=client.id,
            client_created=created,
        )

    def _record_failure(self, kind: EventKind, message: str, details: dict) -> None:
        try:
            with session_scope(self._session_factory) as session:
                self._sink(session).append_event(None, kind, message, details)
        except Exception:
            logger.exception("submission_failure_not_recorded", extra={"kind": kind.value})

    def submit(
        self,
        first_name: str,
        last_name: str,
        email: str,
        phone: str | None,
        credit_score: int,
        amount,
        term_units: int,
        purpose: str,
        actor: str | None = None,
    ) -> dict[str, str]:
        """
        Producer-facing call.

        Returns:
            ``{"application_id": ..., "status": "Submitted"}``
        """
        result = self.submit_application(
            {
                "first_name": first_name,
                "last_name": last_name,
                "email": email,
                "phone": phone,
                "credit_score": credit_score,
            },
            {"amount": amount, "term_units": term_units, "purpose": purpose},
            actor=actor,
        )
        return result.to_dict()
