"""
Module: loan_kernel.models.application
Responsibility: ORM persistence for loan applications and the status
    vocabulary of the application state machine.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - status is one of the four ApplicationStatus values (chk_application_status).
    - amount > 0 and term_units > 0 (check constraints).
    - client_id, amount, term_units and purpose are frozen after INSERT
      (ORM listener in db/immutability.py).
    - status only moves along VALID_TRANSITIONS; terminal statuses
      (APPROVED, REJECTED) have no outgoing transitions.

Failure modes:
    - IntegrityError on constraint violations.
    - ImmutabilityViolationError on loan-term changes or illegal status moves.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from loan_kernel.db.base import TimestampedBase, UTCDateTime, UUIDString


class ApplicationStatus(str, Enum):
    """
    Status of a loan application.

    State machine:
        SUBMITTED → PROCESSING
        PROCESSING → APPROVED | REJECTED
        APPROVED: terminal
        REJECTED: terminal
    """

    SUBMITTED = "Submitted"
    PROCESSING = "Processing"
    APPROVED = "Approved"
    REJECTED = "Rejected"


# Allowed state transitions (from → set of valid targets)
VALID_TRANSITIONS: dict[ApplicationStatus, frozenset[ApplicationStatus]] = {
    ApplicationStatus.SUBMITTED: frozenset({
        ApplicationStatus.PROCESSING,
    }),
    ApplicationStatus.PROCESSING: frozenset({
        ApplicationStatus.APPROVED, ApplicationStatus.REJECTED,
    }),
    # Terminal states: no transitions allowed
    ApplicationStatus.APPROVED: frozenset(),
    ApplicationStatus.REJECTED: frozenset(),
}

TERMINAL_STATUSES: frozenset[ApplicationStatus] = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if not targets
)

# Fields frozen once the application row exists
LOAN_TERM_FIELDS = frozenset({"client_id", "amount", "term_units", "purpose"})


class LoanApplication(TimestampedBase):
    """
    A loan application owned by a Client.

    Contract:
        Created by the intake producer in status SUBMITTED.  Only the decision
        worker mutates it afterwards, and only its ``status`` column.
    """

    __tablename__ = "loan_applications"

    __table_args__ = (
        CheckConstraint(
            "status IN ('Submitted', 'Processing', 'Approved', 'Rejected')",
            name="chk_application_status",
        ),
        CheckConstraint("amount > 0", name="chk_application_amount"),
        CheckConstraint("term_units > 0", name="chk_application_term"),
        Index("idx_application_client", "client_id"),
        Index("idx_application_status", "status"),
    )

    client_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("clients.id"),
        nullable=False,
    )

    application_date: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ApplicationStatus.SUBMITTED.value,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    term_units: Mapped[int] = mapped_column(Integer, nullable=False)

    purpose: Mapped[str] = mapped_column(String(100), nullable=False)

    # Who submitted the application (explicit actor, never ambient session state)
    submitted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    @property
    def status_enum(self) -> ApplicationStatus:
        """Return status as ApplicationStatus enum (normalizes raw DB strings)."""
        return ApplicationStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        """Check if this application reached a final decision."""
        return self.status_enum in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<LoanApplication {self.id} {self.status} amount={self.amount}>"

    def to_audit_dict(self) -> dict:
        """Column snapshot recorded in the audit chain."""
        return {
            "id": str(self.id),
            "client_id": str(self.client_id),
            "status": self.status,
            "amount": self.amount,
            "term_units": self.term_units,
            "purpose": self.purpose,
        }
