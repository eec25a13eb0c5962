"""Utility functions for the loan kernel."""

from loan_kernel.utils.hashing import canonicalize_json, hash_audit_event, hash_payload
from loan_kernel.utils.idempotency import transition_idempotency_key

__all__ = [
    "canonicalize_json",
    "hash_payload",
    "hash_audit_event",
    "transition_idempotency_key",
]
