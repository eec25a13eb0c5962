"""
DurableQueue -- transactional message queue over database tables.

Responsibility:
    Carries processing requests from the intake producer to the decision
    workers.  Messages live on conversations; a conversation is an ordered
    channel that carries one application message and, once the consumer has
    finished, an EndDialog control message.

Architecture position:
    Kernel > Services -- called by IntakeProducer (enqueue) and
    DecisionWorker (dequeue, close_conversation).

Invariants enforced:
    - Transactional enqueue: a message row is written in the caller's
      transaction and is invisible to consumers until that commits.
    - Atomic claim: dequeue selects the head message of an un-closed
      conversation, locking the conversation row (FOR UPDATE SKIP LOCKED on
      PostgreSQL; the database write lock on SQLite), and deletes the
      message.  Rolling back the caller's transaction restores it
      (at-least-once delivery).
    - FIFO within a conversation; at most one message per conversation is
      in flight.  No ordering across conversations.
    - A closed conversation accepts no messages and delivers none.
    - A message whose cycles keep failing is dead-lettered after
      max_delivery_attempts, so it cannot block the queue.

Failure modes:
    - ConversationNotFoundError for an unknown conversation id.
    - ConversationClosedError when sending on a closed conversation.
    - SQLAlchemy errors propagate; the caller owns rollback.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.orm import Session, aliased

from loan_kernel.db.engine import DEFERRED_BEGIN
from loan_kernel.domain.clock import Clock, SystemClock
from loan_kernel.exceptions import (
    ConversationClosedError,
    ConversationNotFoundError,
    MalformedMessageError,
)
from loan_kernel.logging_config import get_logger
from loan_kernel.models.queue import ConversationState, QueueConversation, QueueMessage
from loan_kernel.services.sequence_service import SequenceService

logger = get_logger("services.queue")

DEFAULT_QUEUE_NAME = "LoanApplicationQueue"
DEFAULT_MAX_DELIVERY_ATTEMPTS = 5

# Message types
LOAN_APPLICATION_MESSAGE = "LoanApplicationMessage"
END_DIALOG = "EndDialog"


@dataclass(frozen=True)
class ReceivedMessage:
    """A message claimed by the current transaction."""

    conversation_id: UUID
    message_type: str
    body: dict[str, Any] | None
    seq: int
    enqueued_at: datetime
    failed_attempts: int = 0

    @property
    def is_end_dialog(self) -> bool:
        return self.message_type == END_DIALOG

    @property
    def is_application_message(self) -> bool:
        return self.message_type == LOAN_APPLICATION_MESSAGE

    def application_id(self) -> UUID:
        """
        Extract the application id from the body.

        Raises:
            MalformedMessageError: If the body carries no valid id.
        """
        raw = self.body.get("application_id") if isinstance(self.body, dict) else None
        if raw is None:
            raise MalformedMessageError(str(self.conversation_id), self.body)
        try:
            return UUID(str(raw))
        except ValueError:
            raise MalformedMessageError(str(self.conversation_id), self.body) from None


def application_message_body(application_id: UUID) -> dict[str, str]:
    """Wire body of a LoanApplicationMessage."""
    return {"application_id": str(application_id)}


class DurableQueue:
    """
    One named queue.  Stateless apart from configuration; every operation
    runs in the session passed to it.
    """

    def __init__(
        self,
        queue_name: str = DEFAULT_QUEUE_NAME,
        clock: Clock | None = None,
        poll_interval: float = 0.1,
        end_dialog_on_close: bool = True,
        max_delivery_attempts: int = DEFAULT_MAX_DELIVERY_ATTEMPTS,
    ):
        if max_delivery_attempts < 1:
            raise ValueError("max_delivery_attempts must be at least 1")
        self.queue_name = queue_name
        self._clock = clock or SystemClock()
        self._poll_interval = poll_interval
        self._end_dialog_on_close = end_dialog_on_close
        self.max_delivery_attempts = max_delivery_attempts

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        session: Session,
        message_type: str,
        body: dict[str, Any] | None,
        conversation_id: UUID | None = None,
    ) -> UUID:
        """
        Send a message inside the caller's transaction.

        Begins a new conversation when ``conversation_id`` is None.

        Returns:
            The conversation id the message was sent on.
        """
        if conversation_id is None:
            conversation = QueueConversation(
                queue_name=self.queue_name,
                state=ConversationState.OPEN.value,
                created_at=self._clock.now(),
            )
            session.add(conversation)
            session.flush()
        else:
            conversation = self._get_conversation_or_raise(session, conversation_id)
            if conversation.state_enum == ConversationState.CLOSED:
                raise ConversationClosedError(str(conversation_id))

        self._add_message(session, conversation, message_type, body)
        return conversation.id

    def _add_message(
        self,
        session: Session,
        conversation: QueueConversation,
        message_type: str,
        body: dict[str, Any] | None,
    ) -> QueueMessage:
        message = QueueMessage(
            seq=SequenceService(session).next_value(SequenceService.QUEUE_MESSAGE),
            queue_name=self.queue_name,
            conversation_id=conversation.id,
            message_type=message_type,
            body=body,
            enqueued_at=self._clock.now(),
        )
        session.add(message)
        session.flush()
        logger.debug(
            "message_enqueued",
            extra={
                "queue_name": self.queue_name,
                "conversation_id": str(conversation.id),
                "message_type": message_type,
                "seq": message.seq,
            },
        )
        return message

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def _deliverable(self):
        """Head messages of un-closed conversations on this queue."""
        older = aliased(QueueMessage)
        return (
            select(QueueMessage)
            .join(QueueConversation, QueueConversation.id == QueueMessage.conversation_id)
            .where(
                QueueMessage.queue_name == self.queue_name,
                QueueConversation.state != ConversationState.CLOSED.value,
                ~exists().where(
                    older.conversation_id == QueueMessage.conversation_id,
                    older.seq < QueueMessage.seq,
                ),
            )
        )

    def has_pending(self, session: Session) -> bool:
        # Separate short read on its own connection; leaves the caller's
        # session without a transaction (and SQLite without a write lock).
        stmt = self._deliverable().with_only_columns(QueueMessage.id).limit(1)
        with session.get_bind().connect() as conn:
            conn.execution_options(**{DEFERRED_BEGIN: True})
            return conn.execute(stmt).first() is not None

    def _claim(self, session: Session) -> ReceivedMessage | None:
        message = session.execute(
            self._deliverable()
            .order_by(QueueMessage.seq)
            .limit(1)
            .with_for_update(skip_locked=True, of=QueueConversation)
        ).scalar_one_or_none()
        if message is None:
            return None

        received = ReceivedMessage(
            conversation_id=message.conversation_id,
            message_type=message.message_type,
            body=message.body,
            seq=message.seq,
            enqueued_at=message.enqueued_at,
            failed_attempts=message.failed_attempts,
        )

        result = session.execute(
            delete(QueueMessage)
            .where(QueueMessage.id == message.id)
            .execution_options(synchronize_session=False)
        )
        session.expunge(message)
        if result.rowcount != 1:
            logger.debug("message_claim_lost", extra={"seq": received.seq})
            return None

        logger.debug(
            "message_claimed",
            extra={
                "queue_name": self.queue_name,
                "conversation_id": str(received.conversation_id),
                "message_type": received.message_type,
                "seq": received.seq,
            },
        )
        return received

    def dequeue(self, session: Session, timeout: float) -> ReceivedMessage | None:
        """
        Claim the next message, waiting up to ``timeout`` seconds.

        Returns:
            The claimed message, or None on timeout (the normal idle path).
            The claim belongs to the caller's transaction: commit completes
            it, rollback returns the message to the queue.
        """
        deadline = time.monotonic() + max(timeout, 0)
        while True:
            started_here = not session.in_transaction()
            if not started_here or self.has_pending(session):
                received = self._claim(session)
                if received is not None:
                    return received
                if started_here:
                    # Nothing to claim after all; don't sit on the transaction
                    session.rollback()

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self._poll_interval, remaining))

    def close_conversation(self, session: Session, conversation_id: UUID) -> ConversationState:
        """
        End a conversation and discard its pending messages.

        OPEN    -> CLOSING, sending EndDialog on it (end_dialog_on_close)
        OPEN    -> CLOSED   (end_dialog_on_close disabled)
        CLOSING -> CLOSED
        CLOSED  -> CLOSED   (no-op)

        Returns:
            The conversation's new state.
        """
        conversation = self._get_conversation_or_raise(session, conversation_id, for_update=True)
        state = conversation.state_enum
        if state == ConversationState.CLOSED:
            return state

        purged = session.execute(
            delete(QueueMessage)
            .where(QueueMessage.conversation_id == conversation_id)
            .execution_options(synchronize_session=False)
        ).rowcount

        if state == ConversationState.OPEN and self._end_dialog_on_close:
            self._add_message(session, conversation, END_DIALOG, None)
            conversation.state = ConversationState.CLOSING.value
        else:
            conversation.state = ConversationState.CLOSED.value
            conversation.closed_at = self._clock.now()
        session.flush()

        logger.debug(
            "conversation_closed",
            extra={
                "conversation_id": str(conversation_id),
                "old_state": state.value,
                "new_state": conversation.state,
                "purged_messages": purged,
            },
        )
        return conversation.state_enum

    def record_failed_attempt(self, session: Session, received: ReceivedMessage) -> bool:
        """
        Count one failed delivery of a message whose claim was rolled back.

        Once the count reaches ``max_delivery_attempts`` the message is
        dead-lettered: its conversation is closed without an EndDialog and
        its pending messages are discarded, so it stops holding the head of
        the queue.  Runs in the caller's transaction.

        Returns:
            True if the message was dead-lettered.  False if it stays
            queued, or is already gone (claimed and completed elsewhere).
        """
        conversation = self._get_conversation_or_raise(
            session, received.conversation_id, for_update=True,
        )
        session.execute(
            update(QueueMessage)
            .where(QueueMessage.seq == received.seq)
            .values(failed_attempts=QueueMessage.failed_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        attempts = session.execute(
            select(QueueMessage.failed_attempts).where(QueueMessage.seq == received.seq)
        ).scalar_one_or_none()
        if attempts is None:
            return False

        log_extra = {
            "conversation_id": str(received.conversation_id),
            "message_type": received.message_type,
            "seq": received.seq,
            "failed_attempts": attempts,
            "max_delivery_attempts": self.max_delivery_attempts,
        }
        if attempts < self.max_delivery_attempts:
            logger.warning("message_delivery_failed", extra=log_extra)
            return False

        session.execute(
            delete(QueueMessage)
            .where(QueueMessage.conversation_id == received.conversation_id)
            .execution_options(synchronize_session=False)
        )
        conversation.state = ConversationState.CLOSED.value
        conversation.closed_at = self._clock.now()
        session.flush()
        logger.error("message_dead_lettered", extra=log_extra)
        return True

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def _get_conversation_or_raise(
        self,
        session: Session,
        conversation_id: UUID,
        for_update: bool = False,
    ) -> QueueConversation:
        conversation = self.get_conversation(session, conversation_id, for_update=for_update)
        if conversation is None:
            raise ConversationNotFoundError(str(conversation_id))
        return conversation

    def get_conversation(
        self,
        session: Session,
        conversation_id: UUID,
        for_update: bool = False,
    ) -> QueueConversation | None:
        stmt = select(QueueConversation).where(QueueConversation.id == conversation_id)
        if for_update:
            stmt = stmt.with_for_update()
        return session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def pending_count(self, session: Session) -> int:
        """Number of messages waiting on un-closed conversations."""
        return session.execute(
            select(func.count())
            .select_from(QueueMessage)
            .join(QueueConversation, QueueConversation.id == QueueMessage.conversation_id)
            .where(
                QueueMessage.queue_name == self.queue_name,
                QueueConversation.state != ConversationState.CLOSED.value,
            )
        ).scalar_one()

    def messages_for(self, session: Session, conversation_id: UUID) -> list[QueueMessage]:
        """Pending messages on one conversation, in delivery order."""
        return list(
            session.execute(
                select(QueueMessage)
                .where(QueueMessage.conversation_id == conversation_id)
                .order_by(QueueMessage.seq)
            ).scalars().all()
        )
