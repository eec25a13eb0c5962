"""
Decision rule tests.

Approved exactly when credit_score > 600 AND amount < 10000; both bounds
strict.  Thresholds come from a frozen DecisionPolicy.
"""

from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from loan_kernel.domain.decision import DEFAULT_POLICY, DecisionPolicy, decide
from loan_kernel.models.application import ApplicationStatus

scores = st.integers(min_value=300, max_value=850)
amounts = st.decimals(
    min_value=Decimal("0.01"), max_value=Decimal("50000"), places=2,
    allow_nan=False, allow_infinity=False,
)


class TestDecisionBoundaries:
    @pytest.mark.parametrize(
        "credit_score, amount, expected",
        [
            (720, Decimal("5000"), ApplicationStatus.APPROVED),
            (550, Decimal("5000"), ApplicationStatus.REJECTED),
            (720, Decimal("15000"), ApplicationStatus.REJECTED),
            (601, Decimal("9999.99"), ApplicationStatus.APPROVED),
            (600, Decimal("5000"), ApplicationStatus.REJECTED),
            (720, Decimal("10000"), ApplicationStatus.REJECTED),
            (720, Decimal("10000.00"), ApplicationStatus.REJECTED),
            (600, Decimal("10000"), ApplicationStatus.REJECTED),
        ],
    )
    def test_boundaries_are_strict(self, credit_score, amount, expected):
        assert decide(credit_score, amount) == expected

    def test_custom_policy_moves_thresholds(self):
        policy = DecisionPolicy(min_credit_score=700, max_amount=Decimal("2000"))
        assert decide(701, Decimal("1999.99"), policy) == ApplicationStatus.APPROVED
        assert decide(700, Decimal("100"), policy) == ApplicationStatus.REJECTED
        assert decide(720, Decimal("2000"), policy) == ApplicationStatus.REJECTED

    def test_policy_coerces_max_amount_to_decimal(self):
        policy = DecisionPolicy(max_amount=2500)
        assert policy.max_amount == Decimal("2500")
        assert isinstance(policy.max_amount, Decimal)

    def test_policy_is_frozen(self):
        with pytest.raises(AttributeError):
            DEFAULT_POLICY.min_credit_score = 100


class TestDecisionProperties:
    @given(credit_score=scores, amount=amounts)
    def test_matches_rule(self, credit_score, amount):
        expected = (
            ApplicationStatus.APPROVED
            if credit_score > 600 and amount < Decimal("10000")
            else ApplicationStatus.REJECTED
        )
        assert decide(credit_score, amount) == expected

    @given(credit_score=scores, amount=amounts)
    def test_only_terminal_outcomes(self, credit_score, amount):
        assert decide(credit_score, amount) in (
            ApplicationStatus.APPROVED,
            ApplicationStatus.REJECTED,
        )

    @given(credit_score=st.integers(min_value=300, max_value=849), amount=amounts)
    def test_monotonic_in_credit_score(self, credit_score, amount):
        if decide(credit_score, amount) == ApplicationStatus.APPROVED:
            assert decide(credit_score + 1, amount) == ApplicationStatus.APPROVED
