"""
Application state machine -- pure transition rules.

Responsibility:
    Decides whether a requested status change is legal and what the worker
    must record when it takes ownership of an application.  Applied by the
    intake producer (creation) and by the decision worker (every later move).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

    Submitted ──► Processing ──► Approved
                          └────► Rejected

Invariants enforced:
    - No transition out of Approved or Rejected.
    - Processing may be re-entered (a redelivered message finds the
      application already in Processing); re-entry records nothing.
"""

from dataclasses import dataclass

from loan_kernel.exceptions import InvalidStatusTransitionError
from loan_kernel.models.application import (
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    ApplicationStatus,
)

INITIAL_STATUS = ApplicationStatus.SUBMITTED

# Reason strings recorded on each transition
REASON_SUBMITTED = "Application submitted"
REASON_STARTED = "Started processing"
REASON_DECIDED = "Automated decision"
PROCESSING_ERROR_PREFIX = "Error during processing: "


@dataclass(frozen=True)
class TransitionPlan:
    """A status change the caller must apply and record."""

    old_status: ApplicationStatus | None
    new_status: ApplicationStatus
    reason: str

    @property
    def is_creation(self) -> bool:
        return self.old_status is None


def as_status(value: ApplicationStatus | str) -> ApplicationStatus:
    return value if isinstance(value, ApplicationStatus) else ApplicationStatus(value)


def is_terminal(status: ApplicationStatus | str) -> bool:
    """Check if a status has no outgoing transitions."""
    return as_status(status) in TERMINAL_STATUSES


def can_transition(
    from_status: ApplicationStatus | str,
    to_status: ApplicationStatus | str,
) -> bool:
    return as_status(to_status) in VALID_TRANSITIONS[as_status(from_status)]


def validate_transition(
    application_id,
    from_status: ApplicationStatus | str,
    to_status: ApplicationStatus | str,
) -> None:
    """
    Raise unless from_status -> to_status is a legal move.

    Raises:
        InvalidStatusTransitionError: For any move not in VALID_TRANSITIONS.
    """
    if not can_transition(from_status, to_status):
        raise InvalidStatusTransitionError(
            str(application_id),
            as_status(from_status).value,
            as_status(to_status).value,
        )


def plan_creation() -> TransitionPlan:
    """The creation record written alongside a new application."""
    return TransitionPlan(None, INITIAL_STATUS, REASON_SUBMITTED)


def plan_start_processing(
    application_id,
    current: ApplicationStatus | str,
) -> TransitionPlan | None:
    """
    Plan the worker's ownership step.

    Returns:
        The Submitted -> Processing plan, or None when the application is
        already Processing (re-entry is not a new transition).

    Raises:
        InvalidStatusTransitionError: If the application is terminal.
    """
    current = as_status(current)
    if current == ApplicationStatus.PROCESSING:
        return None
    validate_transition(application_id, current, ApplicationStatus.PROCESSING)
    return TransitionPlan(current, ApplicationStatus.PROCESSING, REASON_STARTED)


def plan_decision(
    application_id,
    current: ApplicationStatus | str,
    decision: ApplicationStatus,
) -> TransitionPlan:
    """Plan the Processing -> Approved/Rejected move."""
    validate_transition(application_id, current, decision)
    return TransitionPlan(as_status(current), decision, REASON_DECIDED)


def plan_forced_rejection(
    application_id,
    current: ApplicationStatus | str,
    error: str,
) -> list[TransitionPlan]:
    """
    Plan the fail-safe path to Rejected after a processing error.

    A Submitted application is routed through Processing so every recorded
    step is a legal transition.  A terminal application yields no plans.
    """
    current = as_status(current)
    if is_terminal(current):
        return []

    reason = f"{PROCESSING_ERROR_PREFIX}{error}"
    plans = []
    if current == ApplicationStatus.SUBMITTED:
        plans.append(
            TransitionPlan(current, ApplicationStatus.PROCESSING, REASON_STARTED)
        )
        current = ApplicationStatus.PROCESSING
    validate_transition(application_id, current, ApplicationStatus.REJECTED)
    plans.append(TransitionPlan(current, ApplicationStatus.REJECTED, reason))
    return plans
