"""
Record validation and cleaning.

Pure functions: no database access. A mapped record is checked for the
fields every contact needs and then cleaned into the types the models
store. Optional values that cannot be coerced are dropped rather than
reported, so a malformed "kids" column never blocks an otherwise good row.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field as dataclass_field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Mapping, Sequence

from email_validator import EmailNotValidError, validate_email

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

REQUIRED_FIELDS: tuple[str, ...] = ("first_name", "last_name", "email")
INTEGER_FIELDS: Mapping[str, int] = {
    # field -> minimum accepted value
    "number_of_kids": 0,
    "years_with_organization": 0,
    "party_size": 1,
}
BOOLEAN_FIELDS: tuple[str, ...] = ("married", "is_org_member", "attended")
DECIMAL_FIELDS: tuple[str, ...] = ("amount_paid",)
LIST_FIELDS: tuple[str, ...] = ("tags",)

_TRUE_TOKENS = frozenset({"true", "t", "yes", "y", "1", "on", "x", "checked"})
_FALSE_TOKENS = frozenset({"false", "f", "no", "n", "0", "off"})
_LEADING_INT = re.compile(r"^\s*(-?\d+)")
_CENTS = Decimal("0.01")

FIRST_DATA_LINE = 2  # line 1 is the header row


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str
    value: object | None = None


@dataclass(frozen=True)
class RowError:
    """A per-row failure reported back to the caller of a batch operation."""

    row: int
    field: str | None
    message: str
    input: Mapping[str, object | None] = dataclass_field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return {"row": self.row, "field": self.field, "message": self.message, "input": dict(self.input)}


@dataclass
class ValidationResult:
    cleaned: dict[str, object | None]
    errors: list[FieldError]

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class BatchValidation:
    valid_records: list[dict[str, object | None]] = dataclass_field(default_factory=list)
    errors: list[RowError] = dataclass_field(default_factory=list)
    total_processed: int = 0

    @property
    def valid_count(self) -> int:
        return len(self.valid_records)

    @property
    def error_count(self) -> int:
        return len(self.errors)


def is_valid_email(value: object | None) -> bool:
    if not isinstance(value, str) or not EMAIL_PATTERN.match(value.strip()):
        return False
    try:
        validate_email(value.strip(), check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def _blank(value: object | None) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def coerce_bool(value: object | None) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        token = value.strip().lower()
        if token in _TRUE_TOKENS:
            return True
        if token in _FALSE_TOKENS:
            return False
    return None


def coerce_int(value: object | None, *, minimum: int | None = None) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    elif isinstance(value, float):
        number = int(value)
    elif isinstance(value, str):
        match = _LEADING_INT.match(value)
        if match is None:
            return None
        number = int(match.group(1))
    else:
        return None
    if minimum is not None and number < minimum:
        return None
    return number


def coerce_decimal(value: object | None) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, Decimal):
        amount = value
    else:
        token = str(value).strip().replace("$", "").replace(",", "").replace(" ", "")
        if not token:
            return None
        try:
            amount = Decimal(token)
        except InvalidOperation:
            return None
    if not amount.is_finite() or amount < 0:
        return None
    return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


def coerce_list(value: object | None) -> list[str] | None:
    if isinstance(value, str):
        items: Iterable[object] = re.split(r"[,;]", value)
    elif isinstance(value, (list, tuple, set)):
        items = value
    else:
        return None
    seen: list[str] = []
    for item in items:
        token = str(item).strip()
        if token and token not in seen:
            seen.append(token)
    return seen or None


def clean_record(record: Mapping[str, object | None]) -> dict[str, object | None]:
    """Trim strings, lower-case email and coerce typed fields."""

    cleaned: dict[str, object | None] = {}
    for key, value in record.items():
        if isinstance(value, str):
            value = value.strip()
        if _blank(value):
            cleaned[key] = None
            continue
        if key == "email":
            cleaned[key] = str(value).lower()
        elif key in INTEGER_FIELDS:
            cleaned[key] = coerce_int(value, minimum=INTEGER_FIELDS[key])
        elif key in BOOLEAN_FIELDS:
            cleaned[key] = coerce_bool(value)
        elif key in DECIMAL_FIELDS:
            cleaned[key] = coerce_decimal(value)
        elif key in LIST_FIELDS:
            cleaned[key] = coerce_list(value)
        else:
            cleaned[key] = value
    return {key: value for key, value in cleaned.items() if value is not None}


def validate_record(record: Mapping[str, object | None]) -> ValidationResult:
    """Check required fields and email shape, returning the cleaned record."""

    errors: list[FieldError] = []
    for name in REQUIRED_FIELDS:
        value = record.get(name)
        if _blank(value):
            errors.append(FieldError(name, f"Missing {name}"))
        elif name == "email" and not is_valid_email(value):
            errors.append(FieldError(name, "Invalid email format", value))
    return ValidationResult(cleaned=clean_record(record) if not errors else {}, errors=errors)


def validate_batch(
    records: Sequence[Mapping[str, object | None]],
    *,
    first_line: int = FIRST_DATA_LINE,
) -> BatchValidation:
    """Validate every record, collecting errors instead of stopping at the first bad row."""

    batch = BatchValidation(total_processed=len(records))
    for index, record in enumerate(records):
        result = validate_record(record)
        if result.is_valid:
            batch.valid_records.append(result.cleaned)
            continue
        line = index + first_line
        for error in result.errors:
            batch.errors.append(RowError(line, error.field, error.message, dict(record)))
    return batch


__all__ = [
    "BatchValidation",
    "EMAIL_PATTERN",
    "FieldError",
    "RowError",
    "ValidationResult",
    "clean_record",
    "coerce_bool",
    "coerce_decimal",
    "coerce_int",
    "coerce_list",
    "is_valid_email",
    "validate_batch",
    "validate_record",
]
