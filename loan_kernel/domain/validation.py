"""
Intake validation -- shape and range checks on producer input.

Pure checks with no I/O.  Everything here runs before the intake
transaction opens, so a ValidationError never leaves state behind.

Loan details may arrive as a mapping or as a JSON document.  Both the
snake_case keys (``amount``, ``term_units``, ``purpose``) and the camelCase
keys of the JSON payload (``loanAmount``, ``loanTerm``, ``purpose``) are
accepted.
"""

import json
from collections.abc import Mapping
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from loan_kernel.domain.dtos import ClientFields, LoanTerms
from loan_kernel.exceptions import ValidationError
from loan_kernel.models.client import MAX_CREDIT_SCORE, MIN_CREDIT_SCORE

CENTS = Decimal("0.01")
MAX_AMOUNT = Decimal("9999999999999999.99")

_LOAN_KEY_ALIASES = {
    "amount": ("amount", "loanAmount"),
    "term_units": ("term_units", "loanTerm", "termUnits"),
    "purpose": ("purpose",),
}


def _require_text(field: str, value: Any, max_length: int) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, value, "is required")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(field, value, f"must be at most {max_length} characters")
    return value


def _require_int(field: str, value: Any) -> int:
    # bool is an int subclass; True is not a credit score
    if isinstance(value, bool):
        raise ValidationError(field, value, "must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, Decimal) and value.is_finite() and value == value.to_integral_value():
        return int(value)
    raise ValidationError(field, value, "must be an integer")


def validate_credit_score(value: Any) -> int:
    score = _require_int("credit_score", value)
    if not MIN_CREDIT_SCORE <= score <= MAX_CREDIT_SCORE:
        raise ValidationError(
            "credit_score",
            score,
            f"must be between {MIN_CREDIT_SCORE} and {MAX_CREDIT_SCORE}",
        )
    return score


def validate_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError("amount", value, "must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError("amount", value, "must be a number") from None
    if not amount.is_finite():
        raise ValidationError("amount", value, "must be a finite number")
    amount = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise ValidationError("amount", value, "must be greater than zero")
    if amount > MAX_AMOUNT:
        raise ValidationError("amount", value, "exceeds the maximum loan amount")
    return amount


def validate_term_units(value: Any) -> int:
    term = _require_int("term_units", value)
    if term <= 0:
        raise ValidationError("term_units", term, "must be greater than zero")
    return term


def validate_client_fields(fields: ClientFields | Mapping[str, Any]) -> ClientFields:
    """
    Validate client contact data.

    Raises:
        ValidationError: On a missing field or an out-of-range credit score.
    """
    if isinstance(fields, ClientFields):
        fields = vars(fields)
    if not isinstance(fields, Mapping):
        raise ValidationError("client_fields", fields, "must be a mapping")

    phone = fields.get("phone")
    if isinstance(phone, str) and not phone.strip():
        phone = None
    if phone is not None:
        phone = _require_text("phone", phone, 20)

    return ClientFields(
        first_name=_require_text("first_name", fields.get("first_name"), 50),
        last_name=_require_text("last_name", fields.get("last_name"), 50),
        email=_require_text("email", fields.get("email"), 100),
        credit_score=validate_credit_score(fields.get("credit_score")),
        phone=phone,
    )


def _lookup(details: Mapping[str, Any], canonical: str) -> Any:
    for key in _LOAN_KEY_ALIASES[canonical]:
        if key in details:
            return details[key]
    return None


def parse_loan_details(loan_fields: LoanTerms | Mapping[str, Any] | str) -> LoanTerms:
    """
    Parse and validate loan details.

    Args:
        loan_fields: LoanTerms, a mapping, or a JSON object string such as
            ``{"loanAmount": 5000, "loanTerm": 36, "purpose": "Car"}``.

    Raises:
        ValidationError: If the payload cannot be parsed or a term is invalid.
    """
    if isinstance(loan_fields, LoanTerms):
        loan_fields = vars(loan_fields)

    if isinstance(loan_fields, (str, bytes)):
        try:
            loan_fields = json.loads(loan_fields)
        except ValueError as exc:
            raise ValidationError("loan_details", loan_fields, f"unparseable JSON: {exc}") from exc

    if not isinstance(loan_fields, Mapping):
        raise ValidationError("loan_details", loan_fields, "must be a JSON object")

    return LoanTerms(
        amount=validate_amount(_lookup(loan_fields, "amount")),
        term_units=validate_term_units(_lookup(loan_fields, "term_units")),
        purpose=_require_text("purpose", _lookup(loan_fields, "purpose"), 100),
    )
