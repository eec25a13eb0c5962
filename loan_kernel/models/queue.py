"""
Module: loan_kernel.models.queue
Responsibility: ORM persistence for the durable, transactional message queue
    (conversations and their pending messages).
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - seq is globally unique and monotonically increasing; it is the FIFO
      key within a conversation.
    - A message row exists only while it is pending.  A consumer claims it by
      deleting it inside its own transaction; rollback restores the row.
    - Conversations are never deleted; CLOSED is terminal.
    - failed_attempts is only ever incremented, in a transaction of its own
      after the claiming transaction rolled back.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from loan_kernel.db.base import Base, UTCDateTime, UUIDString


class ConversationState(str, Enum):
    """
    Lifecycle of a conversation.

    OPEN → CLOSING   (consumer ended its side; EndDialog sent to the peer)
    OPEN → CLOSED    (ended without notifying the peer)
    CLOSING → CLOSED (peer's end signal handled)
    """

    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class QueueConversation(Base):
    """A logical ordered channel for related messages."""

    __tablename__ = "queue_conversations"

    __table_args__ = (
        Index("idx_conversation_queue_state", "queue_name", "state"),
    )

    queue_name: Mapped[str] = mapped_column(String(100), nullable=False)

    state: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ConversationState.OPEN.value,
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )

    closed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    @property
    def state_enum(self) -> ConversationState:
        return ConversationState(self.state)

    def __repr__(self) -> str:
        return f"<QueueConversation {self.id} {self.state}>"


class QueueMessage(Base):
    """A pending message on a conversation."""

    __tablename__ = "queue_messages"

    __table_args__ = (
        Index("idx_queue_message_order", "queue_name", "seq"),
        Index("idx_queue_message_conversation", "conversation_id", "seq"),
    )

    seq: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
    )

    queue_name: Mapped[str] = mapped_column(String(100), nullable=False)

    conversation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("queue_conversations.id"),
        nullable=False,
    )

    message_type: Mapped[str] = mapped_column(String(256), nullable=False)

    body: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    enqueued_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )

    # Cycles that claimed this message and then rolled back
    failed_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    def __repr__(self) -> str:
        return f"<QueueMessage #{self.seq} {self.message_type} on {self.conversation_id}>"
