"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly monotonically increasing sequence numbers for audit
    events, status transitions and queue messages.  Uses a dedicated counter
    table with row-level locking (``SELECT ... FOR UPDATE``) to guarantee
    uniqueness and ordering under concurrent access.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by AuditorService, ApplicationAuditSink and DurableQueue.

Invariants enforced:
    - Monotonicity: the locked counter row is the sole source of truth for
      the next value.  The aggregate-max-plus-one pattern is never used.
    - Transactional: an increment is only visible after the caller's
      transaction commits.  Rollback returns the value.

Failure modes:
    - IntegrityError: Concurrent counter creation race (handled via
      savepoint rollback and retry).
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from loan_kernel.db.base import Base
from loan_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    Row-level locking ensures monotonicity under concurrency.
    """

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.

    Usage:
        seq = SequenceService(session).next_value(SequenceService.AUDIT_EVENT)
        # If the transaction rolls back, seq is not consumed
    """

    # Well-known sequence names
    AUDIT_EVENT = "audit_event"
    STATUS_HISTORY = "status_history"
    QUEUE_MESSAGE = "queue_message"

    ALL_SEQUENCES = (AUDIT_EVENT, STATUS_HISTORY, QUEUE_MESSAGE)

    def __init__(self, session: Session):
        self._session = session

    def _lock_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Get the next value for a named sequence.

        Locks the sequence row (creating it on first use), increments it and
        returns the new value.  The row stays locked until the caller's
        transaction completes.

        Returns:
            The next sequence value (always > 0).
        """
        counter = self._lock_counter(sequence_name)

        if counter is None:
            # Another transaction may create the counter at the same time;
            # the savepoint keeps the caller's other work intact on conflict.
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._lock_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Get the current value of a sequence without incrementing."""
        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()

        return counter.current_value if counter else None

    def initialize_sequences(self) -> None:
        """
        Create all well-known sequences at zero.

        Called during database setup so workers never race on first use.
        """
        for name in self.ALL_SEQUENCES:
            existing = self._session.execute(
                select(SequenceCounter)
                .where(SequenceCounter.name == name)
            ).scalar_one_or_none()

            if existing is None:
                self._session.add(SequenceCounter(name=name, current_value=0))

        self._session.flush()
