"""
Pure domain layer.

Decision rule, state machine, intake validation, DTOs and the clock
abstraction.  Nothing here opens a session or performs I/O (SystemClock
aside).
"""

from loan_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from loan_kernel.domain.decision import DEFAULT_POLICY, DecisionPolicy, decide
from loan_kernel.domain.dtos import ClientFields, LoanTerms
from loan_kernel.domain.state_machine import (
    TransitionPlan,
    is_terminal,
    plan_start_processing,
    validate_transition,
)
from loan_kernel.domain.validation import parse_loan_details, validate_client_fields

__all__ = [
    "Clock",
    "SystemClock",
    "DeterministicClock",
    "DecisionPolicy",
    "DEFAULT_POLICY",
    "decide",
    "ClientFields",
    "LoanTerms",
    "TransitionPlan",
    "is_terminal",
    "plan_start_processing",
    "validate_transition",
    "parse_loan_details",
    "validate_client_fields",
]
