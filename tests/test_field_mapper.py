import pytest

from funnel_app.pipeline.field_mapper import (
    TARGET_MEMBERSHIP,
    TARGET_PARTICIPATION,
    describe_fields,
    map_record,
    normalize_header,
    resolve_headers,
    unmapped_fields,
)


def test_alias_headers_map_to_canonical_names():
    mapped = map_record(
        {"First Name": "  Ada ", "Last Name": "Lovelace", "E-mail": "ADA@example.org", "Favorite Color": "blue"}
    )

    assert mapped == {"first_name": "Ada", "last_name": "Lovelace", "email": "ADA@example.org"}


def test_full_name_column_is_split_when_first_and_last_are_missing():
    mapped = map_record({"Name": "Dr. Jane A. Smith", "Email": "jane@example.org"})

    assert mapped["first_name"] == "Jane A"
    assert mapped["last_name"] == "Smith"
    assert "full_name" not in mapped


def test_full_name_is_ignored_when_a_name_part_is_present():
    mapped = map_record({"Full Name": "Jane Smith", "First Name": "Janie"})

    assert mapped["first_name"] == "Janie"
    assert "last_name" not in mapped
    assert "full_name" not in mapped


def test_first_non_empty_value_wins_for_duplicate_columns():
    mapped = map_record({"Email": "", "Email Address": "second@example.org", "Primary Email": "third@example.org"})

    assert mapped["email"] == "second@example.org"


def test_fields_are_scoped_by_target_type():
    record = {"Email": "a@example.org", "Ticket Type": "VIP", "Tags": "donor", "Stage": "RSVP"}

    contact = map_record(record)
    membership = map_record(record, TARGET_MEMBERSHIP)
    participation = map_record(record, TARGET_PARTICIPATION)

    assert "ticket_type" not in contact
    assert contact["tags"] == "donor"
    assert contact["stage"] == "RSVP"
    assert "stage" not in membership
    assert membership["tags"] == "donor"
    assert participation["ticket_type"] == "VIP"
    assert "tags" not in participation


def test_unknown_target_type_is_rejected():
    with pytest.raises(ValueError):
        map_record({"Email": "a@example.org"}, "volunteer")


def test_normalize_header_ignores_case_punctuation_and_bom():
    assert normalize_header("\ufeffFirst Name") == "first_name"
    assert normalize_header(" E-Mail.Address ") == "e_mail_address"


def test_unmapped_fields_reports_dropped_columns():
    record = {"Email": "a@example.org", "Dietary Needs": "vegan"}

    assert unmapped_fields(record) == {"Dietary Needs": "vegan"}


def test_resolve_headers_pairs_unknown_headers_with_none():
    assert resolve_headers(["Email", "Shirt Size"], "contact") == (("Email", "email"), ("Shirt Size", None))


def test_describe_fields_lists_participation_fields():
    names = {field["name"] for field in describe_fields(TARGET_PARTICIPATION)}

    assert {"ticket_type", "amount_paid", "party_size", "email"} <= names
    assert "tags" not in names
