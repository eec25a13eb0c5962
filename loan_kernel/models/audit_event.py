"""
Module: loan_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident row-change audit chain.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE (ORM + DB trigger).
    - Hash chain integrity: hash = H(table_name | record_id | action |
      payload_hash | prev_hash).  Validated by AuditorService.
    - seq is monotonically increasing, allocated by SequenceService.

Audit relevance:
    Every INSERT and UPDATE of a Client or LoanApplication made by the
    pipeline produces an AuditEvent with the old and new column values.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from loan_kernel.db.base import Base, UTCDateTime, UUIDString


class AuditAction(str, Enum):
    """Types of audited row changes."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Guarantees:
        - seq is globally unique and monotonically increasing.
        - prev_hash is None only for the genesis event.

    Non-goals:
        - This model does NOT enforce hash correctness at INSERT time;
          that is the responsibility of AuditorService.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_record", "table_name", "record_id"),
        Index("idx_audit_occurred", "occurred_at"),
    )

    seq: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        unique=True,
    )

    # Audited table (e.g., "clients", "loan_applications")
    table_name: Mapped[str] = mapped_column(String(128), nullable=False)

    record_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    action: Mapped[str] = mapped_column(String(20), nullable=False)

    # Who performed the change
    actor: Mapped[str | None] = mapped_column(String(128), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )

    old_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    new_values: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Hash of {"old": old_values, "new": new_values}
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} on {self.table_name}:{self.record_id}>"

    @property
    def is_genesis(self) -> bool:
        """Check if this is the first event in the hash chain."""
        return self.prev_hash is None
