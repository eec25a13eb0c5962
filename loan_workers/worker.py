"""
DecisionWorker -- dequeue, decide, commit; one message per transaction.

Contract:
    ``process_next()`` runs exactly one cycle: open a session, claim the
    next message (bounded wait), handle it, commit.  ``run()`` repeats the
    cycle until a stop signal is set.

Architecture: loan_workers.  Uses loan_kernel services for every read and
    write; holds no state across cycles beyond its statistics.

Invariants enforced:
    - Claim, status changes, history, operational events and conversation
      close commit together.  A crash before commit returns the message to
      the queue and leaves no trace of the attempt.
    - Application handling runs in a SAVEPOINT.  Any exception in it rolls
      back the partial work and the application is force-rejected with
      reason "Error during processing: <error>".  The exception never
      escapes the cycle.
    - Unrecognized or malformed messages are logged and dropped (their
      conversation is closed); nothing is retried indefinitely.
    - Infrastructure failures (the cycle itself raising) roll back and are
      retried by ``run()`` after an exponential, capped backoff.  Each one
      is counted against the claimed message in a follow-up transaction;
      the queue dead-letters a message that keeps failing, so one bad
      application cannot hold the head of the queue.
"""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from loan_kernel.domain.clock import Clock, SystemClock
from loan_kernel.domain.decision import DEFAULT_POLICY, DecisionPolicy, decide
from loan_kernel.domain.state_machine import (
    plan_decision,
    plan_forced_rejection,
    plan_start_processing,
)
from loan_kernel.exceptions import MalformedMessageError, ProcessingError
from loan_kernel.logging_config import LogContext, get_logger
from loan_kernel.models.application import ApplicationStatus
from loan_kernel.models.application_log import EventKind
from loan_kernel.services.application_store import ApplicationStore
from loan_kernel.services.audit_sink import ApplicationAuditSink
from loan_kernel.services.queue_service import DurableQueue, ReceivedMessage

logger = get_logger("workers.decision")

DEFAULT_ACTOR = "decision-worker"


class WorkOutcome(str, Enum):
    """What one worker cycle did."""

    IDLE = "idle"  # Dequeue timed out
    END_DIALOG = "end_dialog"
    DECIDED = "decided"
    ALREADY_DECIDED = "already_decided"  # Application missing or terminal
    UNRECOGNIZED = "unrecognized"
    MALFORMED = "malformed"
    FAILED = "failed"  # Processing error, application force-rejected


@dataclass(frozen=True)
class WorkResult:
    """Result of one worker cycle."""

    outcome: WorkOutcome
    conversation_id: UUID | None = None
    application_id: UUID | None = None
    final_status: ApplicationStatus | None = None
    error: str | None = None


class WorkerStats:
    """Per-worker counters, safe to read from other threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._outcomes: Counter[str] = Counter()
        self._cycle_errors = 0
        self._dead_lettered = 0
        self._busy = False

    def record(self, outcome: WorkOutcome) -> None:
        with self._lock:
            self._outcomes[outcome.value] += 1

    def record_cycle_error(self) -> None:
        with self._lock:
            self._cycle_errors += 1

    def record_dead_letter(self) -> None:
        with self._lock:
            self._dead_lettered += 1

    def set_busy(self, busy: bool) -> None:
        with self._lock:
            self._busy = busy

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._busy

    def count(self, outcome: WorkOutcome) -> int:
        with self._lock:
            return self._outcomes[outcome.value]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            data = {outcome.value: self._outcomes[outcome.value] for outcome in WorkOutcome}
            data["cycle_errors"] = self._cycle_errors
            data["dead_lettered"] = self._dead_lettered
            return data


class DecisionWorker:
    """One serial dequeue-process-commit loop.

    Non-goals:
        - Does NOT share sessions with other workers.
        - Does NOT decide on its own when to stop -- the pool signals it.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        queue: DurableQueue,
        clock: Clock | None = None,
        policy: DecisionPolicy = DEFAULT_POLICY,
        worker_id: str = "worker-1",
        actor: str = DEFAULT_ACTOR,
        dequeue_timeout: float = 1.0,
        deduplicate_transitions: bool = False,
        backoff_initial: float = 0.5,
        backoff_max: float = 30.0,
    ):
        self._session_factory = session_factory
        self._queue = queue
        self._clock = clock or SystemClock()
        self._policy = policy
        self.worker_id = worker_id
        self._actor = actor
        self._dequeue_timeout = dequeue_timeout
        self._deduplicate = deduplicate_transitions
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self.stats = WorkerStats()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def process_next(self, timeout: float | None = None) -> WorkResult:
        """Run one cycle.

        Raises:
            Exception: Only infrastructure failures (the claim, the commit,
                the fail-safe itself).  The transaction is rolled back first,
                so the message is redelivered.
        """
        timeout = self._dequeue_timeout if timeout is None else timeout
        session = self._session_factory()
        received = None
        try:
            received = self._queue.dequeue(session, timeout)
            if received is None:
                session.commit()
                return WorkResult(WorkOutcome.IDLE)

            self.stats.set_busy(True)
            with LogContext.bind(
                worker_id=self.worker_id,
                conversation_id=str(received.conversation_id),
            ):
                result = self._handle(session, received)
                session.commit()
            self.stats.record(result.outcome)
            return result
        except Exception as exc:
            session.rollback()
            if received is not None:
                self._record_failed_attempt(session, received, exc)
            raise
        finally:
            self.stats.set_busy(False)
            session.close()

    def _record_failed_attempt(
        self, session: Session, received: ReceivedMessage, exc: Exception,
    ) -> None:
        """Count the failed cycle against its message; dead-letter it past the limit."""
        try:
            dead_lettered = self._queue.record_failed_attempt(session, received)
            if dead_lettered:
                self._sink(session).append_event(
                    None,
                    EventKind.ERROR,
                    "Message dead-lettered after repeated processing failures",
                    {
                        "conversation_id": received.conversation_id,
                        "message_type": received.message_type,
                        "body": received.body,
                        "error": str(exc),
                    },
                )
            session.commit()
        except Exception:
            session.rollback()
            logger.exception(
                "failed_attempt_not_recorded",
                extra={"seq": received.seq},
            )
            return
        if dead_lettered:
            self.stats.record_dead_letter()

    def run(self, stop_event: threading.Event, idle_exit: bool = False) -> None:
        """Loop until ``stop_event`` is set (or, with idle_exit, the queue idles).

        A cycle in progress always completes; the stop signal is checked
        between cycles, so an idle worker exits within one dequeue timeout.
        """
        backoff = self._backoff_initial
        with LogContext.bind(worker_id=self.worker_id):
            logger.info("worker_started")
            while not stop_event.is_set():
                try:
                    result = self.process_next()
                except Exception:
                    self.stats.record_cycle_error()
                    logger.exception(
                        "worker_cycle_failed",
                        extra={"backoff_seconds": backoff},
                    )
                    stop_event.wait(timeout=backoff)
                    backoff = min(backoff * 2, self._backoff_max)
                    continue

                backoff = self._backoff_initial
                if idle_exit and result.outcome == WorkOutcome.IDLE:
                    break
            logger.info("worker_stopped", extra={"stats": self.stats.snapshot()})

    # -------------------------------------------------------------------------
    # Message handling
    # -------------------------------------------------------------------------

    def _sink(self, session: Session) -> ApplicationAuditSink:
        return ApplicationAuditSink(
            session, self._clock, deduplicate_transitions=self._deduplicate
        )

    def _handle(self, session: Session, received: ReceivedMessage) -> WorkResult:
        conversation_id = received.conversation_id

        if received.is_end_dialog:
            self._queue.close_conversation(session, conversation_id)
            logger.debug("end_dialog_received")
            return WorkResult(WorkOutcome.END_DIALOG, conversation_id)

        if not received.is_application_message:
            logger.warning(
                "unrecognized_message_dropped",
                extra={"message_type": received.message_type},
            )
            self._sink(session).append_event(
                None,
                EventKind.WARNING,
                "Unknown message type received",
                {"message_type": received.message_type, "conversation_id": conversation_id},
            )
            self._queue.close_conversation(session, conversation_id)
            return WorkResult(WorkOutcome.UNRECOGNIZED, conversation_id)

        try:
            application_id = received.application_id()
        except MalformedMessageError as exc:
            logger.error("malformed_message_dropped", extra={"body": received.body})
            self._sink(session).append_event(
                None,
                EventKind.ERROR,
                str(exc),
                {"conversation_id": conversation_id, "body": repr(received.body)},
            )
            self._queue.close_conversation(session, conversation_id)
            return WorkResult(WorkOutcome.MALFORMED, conversation_id)

        with LogContext.bind(application_id=str(application_id)):
            return self._handle_application(session, received, application_id)

    def _handle_application(
        self,
        session: Session,
        received: ReceivedMessage,
        application_id: UUID,
    ) -> WorkResult:
        store = ApplicationStore(session, self._clock)
        sink = self._sink(session)
        conversation_id = received.conversation_id

        application = store.find_application(application_id)
        if application is None or application.is_terminal:
            status = application.status_enum if application is not None else None
            logger.info(
                "application_already_decided",
                extra={"status": status.value if status else None},
            )
            sink.append_event(
                application_id,
                EventKind.INFO,
                "Application not found" if status is None else "Application already decided",
                {"status": status, "conversation_id": conversation_id},
            )
            self._queue.close_conversation(session, conversation_id)
            return WorkResult(
                WorkOutcome.ALREADY_DECIDED, conversation_id, application_id, status,
            )

        savepoint = session.begin_nested()
        try:
            decision = self._decide(store, sink, application_id)
            savepoint.commit()
        except Exception as exc:
            savepoint.rollback()
            return self._reject_after_error(session, store, sink, received, application_id, exc)

        self._queue.close_conversation(session, conversation_id)
        return WorkResult(WorkOutcome.DECIDED, conversation_id, application_id, decision)

    def _decide(
        self,
        store: ApplicationStore,
        sink: ApplicationAuditSink,
        application_id: UUID,
    ) -> ApplicationStatus:
        application = store.get_application(application_id, for_update=True)

        start = plan_start_processing(application_id, application.status_enum)
        if start is not None:
            store.update_status(application_id, start.new_status, self._actor)
            sink.append_transition(
                application_id, start.old_status, start.new_status, start.reason, self._actor,
            )

        # Score is read now, not snapshotted at submission
        client = store.get_client(application.client_id)
        decision = decide(client.credit_score, application.amount, self._policy)

        plan = plan_decision(application_id, ApplicationStatus.PROCESSING, decision)
        store.update_status(application_id, plan.new_status, self._actor)
        sink.append_transition(
            application_id, plan.old_status, plan.new_status, plan.reason, self._actor,
        )
        sink.append_event(
            application_id,
            EventKind.STATUS_CHANGE,
            f"Application {decision.value}",
            {
                "credit_score": client.credit_score,
                "amount": application.amount,
                "decision": decision,
            },
        )
        logger.info(
            "application_decided",
            extra={
                "decision": decision.value,
                "credit_score": client.credit_score,
                "amount": application.amount,
            },
        )
        return decision

    def _reject_after_error(
        self,
        session: Session,
        store: ApplicationStore,
        sink: ApplicationAuditSink,
        received: ReceivedMessage,
        application_id: UUID,
        exc: Exception,
    ) -> WorkResult:
        """Fail-safe: force the application to Rejected and drop the message."""
        error = ProcessingError(str(application_id), str(exc))
        logger.error(
            "application_processing_failed",
            exc_info=(type(exc), exc, exc.__traceback__),
            extra={"reason": error.reason},
        )

        application = store.get_application(application_id)
        for plan in plan_forced_rejection(application_id, application.status_enum, str(exc)):
            store.update_status(application_id, plan.new_status, self._actor)
            sink.append_transition(
                application_id, plan.old_status, plan.new_status, plan.reason, self._actor,
            )
        sink.append_event(
            application_id,
            EventKind.ERROR,
            str(error),
            {"error_type": type(exc).__name__, "error_code": error.code},
        )
        self._queue.close_conversation(session, received.conversation_id)

        final_status = store.get_application(application_id).status_enum
        return WorkResult(
            WorkOutcome.FAILED,
            received.conversation_id,
            application_id,
            final_status,
            error=str(exc),
        )
