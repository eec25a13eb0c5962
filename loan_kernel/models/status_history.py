"""
Module: loan_kernel.models.status_history
Responsibility: ORM persistence for application status transitions.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (ORM listener + DB trigger).
    - One row per accepted transition, ordered by seq.
    - idempotency_key, when set, is unique; it lets the audit sink drop
      a replayed transition for the same application and target status.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import BigInteger, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from loan_kernel.db.base import Base, UTCDateTime, UUIDString


class StatusTransition(Base):
    """One recorded move of an application between statuses."""

    __tablename__ = "application_status_history"

    __table_args__ = (
        Index("idx_history_application", "application_id", "seq"),
    )

    seq: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
    )

    application_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("loan_applications.id"),
        nullable=False,
    )

    # Null for the creation record
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)

    new_status: Mapped[str] = mapped_column(String(20), nullable=False)

    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    changed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    changed_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )

    idempotency_key: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        unique=True,
    )

    def __repr__(self) -> str:
        return (
            f"<StatusTransition {self.application_id} "
            f"{self.old_status} -> {self.new_status}>"
        )
