"""
Module: loan_kernel.models.client
Responsibility: ORM persistence for loan clients.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Email is unique (uq_client_email); intake upserts by email.
    - credit_score in [300, 850] (chk_client_credit_score).
    - Clients are never deleted by the pipeline (ORM listener in
      db/immutability.py).
"""

from sqlalchemy import CheckConstraint, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from loan_kernel.db.base import TimestampedBase

MIN_CREDIT_SCORE = 300
MAX_CREDIT_SCORE = 850


class Client(TimestampedBase):
    """
    A loan applicant, identified for upsert purposes by email.

    Contract:
        Contact fields and credit score are overwritten by every submission
        from the same email.  The decision worker reads ``credit_score``
        fresh at decision time.
    """

    __tablename__ = "clients"

    __table_args__ = (
        UniqueConstraint("email", name="uq_client_email"),
        CheckConstraint(
            f"credit_score BETWEEN {MIN_CREDIT_SCORE} AND {MAX_CREDIT_SCORE}",
            name="chk_client_credit_score",
        ),
    )

    first_name: Mapped[str] = mapped_column(String(50), nullable=False)

    last_name: Mapped[str] = mapped_column(String(50), nullable=False)

    email: Mapped[str] = mapped_column(String(100), nullable=False)

    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)

    credit_score: Mapped[int] = mapped_column(Integer, nullable=False)

    def __repr__(self) -> str:
        return f"<Client {self.email} score={self.credit_score}>"

    def to_audit_dict(self) -> dict:
        """Column snapshot recorded in the audit chain."""
        return {
            "id": str(self.id),
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "credit_score": self.credit_score,
        }
