"""
Module: loan_kernel.models.application_log
Responsibility: ORM persistence for the operational event log of the
    pipeline (validation failures, intake steps, queue activity, errors).
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (ORM listener + DB trigger).
    - application_id is nullable: events that precede an application
      (validation failures, queue-level warnings) have none.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from loan_kernel.db.base import Base, UTCDateTime, UUIDString


class EventKind(str, Enum):
    """Kinds of operational events."""

    VALIDATION = "Validation"
    CLIENT = "Client"
    APPLICATION = "Application"
    QUEUE = "Queue"
    INFO = "Info"
    STATUS_CHANGE = "StatusChange"
    WARNING = "Warning"
    ERROR = "Error"


class ApplicationLog(Base):
    """One operational event."""

    __tablename__ = "application_logs"

    __table_args__ = (
        Index("idx_log_application", "application_id"),
        Index("idx_log_kind", "kind"),
    )

    application_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    kind: Mapped[str] = mapped_column(String(50), nullable=False)

    message: Mapped[str] = mapped_column(Text, nullable=False)

    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    logged_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ApplicationLog {self.kind}: {self.message}>"
