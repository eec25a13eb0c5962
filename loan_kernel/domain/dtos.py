"""
Data Transfer Objects for the intake boundary.

These are immutable value objects that carry validated producer input into
the services.  No ORM, no I/O.
"""

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class ClientFields:
    """
    Validated client contact data, keyed for upsert by email.

    Guarantees:
        - All string fields are stripped; required ones are non-empty.
        - credit_score is an int within [300, 850].
    """

    first_name: str
    last_name: str
    email: str
    credit_score: int
    phone: str | None = None


@dataclass(frozen=True)
class LoanTerms:
    """
    Validated loan terms.  Immutable once the application exists.

    Guarantees:
        - amount is a Decimal quantized to cents and > 0.
        - term_units is an int > 0.
        - purpose is a non-empty string.
    """

    amount: Decimal
    term_units: int
    purpose: str

