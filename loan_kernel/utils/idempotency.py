"""
Idempotency key generation utilities.

A status transition key identifies "application X reached status Y".  A
redelivered queue message that replays the same decision produces the same
key, which lets the audit sink drop the duplicate history row.
"""

from uuid import UUID


def transition_idempotency_key(application_id: UUID | str, new_status: str) -> str:
    """
    Generate the idempotency key for a status transition.

    Format: application_id:new_status

    Example:
        >>> transition_idempotency_key(uuid, "Approved")
        "550e8400-e29b-41d4-a716-446655440000:Approved"
    """
    return f"{application_id}:{new_status}"


def parse_transition_idempotency_key(key: str) -> tuple[str, str]:
    """
    Parse a transition idempotency key into (application_id, new_status).

    Raises:
        ValueError: If key format is invalid.
    """
    application_id, sep, new_status = key.rpartition(":")
    if not sep or not application_id or not new_status:
        raise ValueError(f"Invalid idempotency key format: {key}")
    return application_id, new_status
