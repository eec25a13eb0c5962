"""
Decision engine -- pure approve/reject rule.

    decide(credit_score, amount) -> Approved  if credit_score > 600
                                              and amount < 10000
                                   Rejected  otherwise

Both bounds are strict.  The thresholds live in a frozen DecisionPolicy so
deployments can tune them from configuration without touching the rule.

The credit score passed in is the client's score at decision time, read
fresh by the worker, not the score at submission.
"""

from dataclasses import dataclass
from decimal import Decimal

from loan_kernel.models.application import ApplicationStatus


@dataclass(frozen=True)
class DecisionPolicy:
    """Approval thresholds (both exclusive)."""

    min_credit_score: int = 600
    max_amount: Decimal = Decimal("10000")

    def __post_init__(self):
        if not isinstance(self.max_amount, Decimal):
            object.__setattr__(self, "max_amount", Decimal(str(self.max_amount)))


DEFAULT_POLICY = DecisionPolicy()


def decide(
    credit_score: int,
    amount: Decimal,
    policy: DecisionPolicy = DEFAULT_POLICY,
) -> ApplicationStatus:
    """Return Approved or Rejected for the given score and amount."""
    if credit_score > policy.min_credit_score and amount < policy.max_amount:
        return ApplicationStatus.APPROVED
    return ApplicationStatus.REJECTED
