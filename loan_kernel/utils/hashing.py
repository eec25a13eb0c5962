"""
Deterministic hashing utilities.

All hashing in the loan kernel must be deterministic and reproducible.
This module provides the canonical hashing functions used by the audit chain.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """
    Custom JSON serializer for types not natively supported.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        # Fixed-point string so 1000 and 1000.00 hash identically
        return f"{obj.normalize():f}"
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Produces a deterministic JSON representation:
    - Keys are sorted alphabetically
    - No whitespace
    - Consistent handling of special types (Decimal, datetime, UUID, Enum)
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def to_json_safe(data: dict | None) -> dict | None:
    """Round-trip through canonical JSON so values fit a JSON column."""
    if data is None:
        return None
    return json.loads(canonicalize_json(data))


def hash_payload(payload: dict) -> str:
    """
    Compute SHA-256 hash of a payload.

    Returns:
        Hex-encoded SHA-256 hash (64 characters).
    """
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_audit_event(
    table_name: str,
    record_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Compute hash for an audit event.

    The hash includes all key fields plus the previous event's hash,
    creating a tamper-evident chain.

    Args:
        table_name: Audited table.
        record_id: ID of the changed row.
        action: INSERT or UPDATE.
        payload_hash: Hash of the old/new values payload.
        prev_hash: Hash of the previous audit event (None for genesis).

    Returns:
        Hex-encoded SHA-256 hash.
    """
    components = [
        table_name,
        str(record_id),
        action,
        payload_hash,
        prev_hash or "GENESIS",
    ]
    data = "|".join(components)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
