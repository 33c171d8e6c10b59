from decimal import Decimal

from funnel_app.pipeline.validator import (
    clean_record,
    coerce_bool,
    coerce_decimal,
    coerce_int,
    is_valid_email,
    validate_batch,
    validate_record,
)


def test_valid_record_is_cleaned():
    result = validate_record({"first_name": " Ada ", "last_name": "Lovelace", "email": " ADA@Example.org "})

    assert result.is_valid
    assert result.cleaned == {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.org"}


def test_missing_required_fields_are_reported():
    result = validate_record({"email": "a@example.org", "last_name": "   "})

    assert not result.is_valid
    assert [error.field for error in result.errors] == ["first_name", "last_name"]
    assert result.errors[0].message == "Missing first_name"


def test_invalid_email_is_reported():
    result = validate_record({"first_name": "A", "last_name": "B", "email": "not-an-email"})

    assert [(error.field, error.message) for error in result.errors] == [("email", "Invalid email format")]
    assert not is_valid_email("two@@example.org")
    assert not is_valid_email("a..b@example.org")
    assert is_valid_email("someone@example.co")


def test_typed_fields_are_coerced_and_bad_values_dropped():
    cleaned = clean_record(
        {
            "number_of_kids": "3 kids",
            "married": "Yes",
            "amount_paid": "$1,200.50",
            "tags": "vip, donor; vip",
            "party_size": "0",
            "birthday": "   ",
        }
    )

    assert cleaned == {
        "number_of_kids": 3,
        "married": True,
        "amount_paid": Decimal("1200.50"),
        "tags": ["vip", "donor"],
    }


def test_coercion_helpers():
    assert coerce_bool("maybe") is None
    assert coerce_bool("N") is False
    assert coerce_int("-2", minimum=0) is None
    assert coerce_int(4.9) == 4
    assert coerce_decimal("12.345") == Decimal("12.35")
    assert coerce_decimal("free") is None


def test_batch_validation_collects_errors_with_line_numbers():
    batch = validate_batch(
        [
            {"first_name": "A", "last_name": "One", "email": "one@example.org"},
            {"first_name": "B", "last_name": "Two", "email": "broken"},
            {"first_name": "C", "last_name": "Three", "email": "three@example.org"},
        ]
    )

    assert batch.total_processed == 3
    assert batch.valid_count == 2
    assert batch.error_count == 1
    error = batch.errors[0]
    assert error.row == 3
    assert error.field == "email"
    assert error.as_dict()["input"]["email"] == "broken"
