"""Canonical field vocabulary and the Field Mapper.

Input records arrive with whatever column names the spreadsheet or form
author chose. ``map_record`` projects them onto the canonical attribute names
used by the models, scoped by target type:

``contact``
    Person fields plus membership and funnel-stage columns.
``membership``
    Person fields plus organization membership fields.
``participation``
    Person fields plus event participation fields (ticket, payment, party).

Columns the vocabulary does not recognize for the target type are dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Iterable, Mapping, Sequence, Tuple

from .names import parse_full_name

Normalizer = Callable[[object | None], object | None]

TARGET_CONTACT = "contact"
TARGET_MEMBERSHIP = "membership"
TARGET_PARTICIPATION = "participation"
TARGET_TYPES: Tuple[str, ...] = (TARGET_CONTACT, TARGET_MEMBERSHIP, TARGET_PARTICIPATION)

_ALL_TARGETS = frozenset(TARGET_TYPES)
_MEMBERSHIP_TARGETS = frozenset({TARGET_CONTACT, TARGET_MEMBERSHIP})
_STAGE_TARGETS = frozenset({TARGET_CONTACT, TARGET_PARTICIPATION})
_PARTICIPATION_ONLY = frozenset({TARGET_PARTICIPATION})

FULL_NAME_FIELD = "full_name"


def _strip_string(value: object | None) -> object | None:
    if isinstance(value, str):
        return value.strip()
    return value


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a canonical field and the targets it is legal for."""

    name: str
    description: str
    targets: frozenset = _ALL_TARGETS
    aliases: Tuple[str, ...] = ()
    normalizer: Normalizer | None = _strip_string

    def headers(self) -> Tuple[str, ...]:
        """Return the canonical header plus aliases."""

        return (self.name, *self.aliases)


CANONICAL_FIELDS: Tuple[FieldSpec, ...] = (
    # Person
    FieldSpec("first_name", "Given name.", aliases=("first name", "first", "firstname", "given name")),
    FieldSpec("last_name", "Family name.", aliases=("last name", "last", "lastname", "surname", "family name")),
    FieldSpec(
        FULL_NAME_FIELD,
        "Single full-name column; split into first/last when those are absent.",
        aliases=("full name", "name", "contact name", "fullname"),
    ),
    FieldSpec("goes_by", "Display name override.", aliases=("goes by", "nickname", "preferred name")),
    FieldSpec(
        "email",
        "Email address (the contact's natural key).",
        aliases=("email address", "e-mail", "e-mail address", "primary email", "email_addr"),
    ),
    FieldSpec("phone", "Phone number.", aliases=("phone number", "mobile", "cell", "cell phone", "telephone")),
    FieldSpec("employer", "Employer.", aliases=("company", "workplace", "work")),
    FieldSpec("street", "Street address.", aliases=("address", "street address", "address line 1")),
    FieldSpec("city", "City."),
    FieldSpec("state", "State or region.", aliases=("province", "state code")),
    FieldSpec("zip_code", "Postal code.", aliases=("zip", "zip code", "postal code", "zipcode")),
    FieldSpec("birthday", "Birthday (free text).", aliases=("birth date", "birthdate", "dob", "date of birth")),
    FieldSpec("married", "Married flag.", aliases=("is married", "married?")),
    FieldSpec("spouse_name", "Spouse name.", aliases=("spouse", "spouse's name", "partner name")),
    FieldSpec("number_of_kids", "Number of children.", aliases=("number of kids", "kids", "children", "# of kids")),
    # Membership
    FieldSpec(
        "is_org_member",
        "Organization membership flag.",
        targets=_MEMBERSHIP_TARGETS,
        aliases=("org member", "member", "is member"),
    ),
    FieldSpec(
        "years_with_organization",
        "Tenure in years.",
        targets=_MEMBERSHIP_TARGETS,
        aliases=("years with org", "years with organization", "tenure", "years"),
    ),
    FieldSpec(
        "leadership_role",
        "Leadership role or position.",
        targets=_MEMBERSHIP_TARGETS,
        aliases=("leadership role", "role", "position"),
    ),
    FieldSpec(
        "origin_story",
        "How the contact came to the organization.",
        targets=_MEMBERSHIP_TARGETS,
        aliases=("origin story", "how they joined"),
    ),
    FieldSpec(
        "org_notes",
        "Free-text organization notes.",
        targets=_MEMBERSHIP_TARGETS,
        aliases=("notes", "comments", "org notes"),
    ),
    FieldSpec(
        "chapter",
        "Chapter, region or team.",
        targets=_MEMBERSHIP_TARGETS,
        aliases=("chapter responsible for", "region", "team"),
    ),
    FieldSpec("tags", "Comma-separated tags.", targets=_MEMBERSHIP_TARGETS, aliases=("labels", "tag")),
    FieldSpec(
        "engagement_tier",
        "Engagement tier label.",
        targets=_MEMBERSHIP_TARGETS,
        aliases=("engagement tier", "tier", "engagement"),
    ),
    # Funnel position
    FieldSpec(
        "audience_type",
        "Audience type label.",
        targets=_STAGE_TARGETS,
        aliases=("audience type", "audience"),
    ),
    FieldSpec(
        "stage",
        "Raw funnel stage label (canonicalized downstream).",
        targets=_STAGE_TARGETS,
        aliases=("current stage", "pipeline stage", "status", "funnel stage"),
    ),
    FieldSpec("attended", "Attendance flag.", targets=_STAGE_TARGETS, aliases=("checked in", "attendance")),
    # Participation only
    FieldSpec("ticket_type", "Ticket type.", targets=_PARTICIPATION_ONLY, aliases=("ticket type", "ticket")),
    FieldSpec(
        "amount_paid",
        "Amount paid.",
        targets=_PARTICIPATION_ONLY,
        aliases=("amount paid", "paid", "payment", "amount"),
    ),
    FieldSpec(
        "spouse_or_other",
        "Who the contact is bringing.",
        targets=_PARTICIPATION_ONLY,
        aliases=("spouse or other", "bringing", "plus one", "guest"),
    ),
    FieldSpec(
        "party_size",
        "Party size.",
        targets=_PARTICIPATION_ONLY,
        aliases=("party size", "how many in party", "guests", "party"),
    ),
)

_FIELDS_BY_NAME: Mapping[str, FieldSpec] = {spec.name: spec for spec in CANONICAL_FIELDS}


def _check_target(target_type: str) -> str:
    token = (target_type or "").strip().lower()
    if token not in _ALL_TARGETS:
        raise ValueError(f"Unknown target type {target_type!r}; expected one of {', '.join(TARGET_TYPES)}.")
    return token


def normalize_header(header: str) -> str:
    """Normalize a column name for comparison (case/space/punctuation agnostic)."""

    token = str(header).strip().lstrip("\ufeff").lower()
    for char in (" ", "-", ".", "/"):
        token = token.replace(char, "_")
    while "__" in token:
        token = token.replace("__", "_")
    return token.strip("_")


def get_field_specs(target_type: str) -> Tuple[FieldSpec, ...]:
    """Return the canonical fields legal for ``target_type``."""

    target = _check_target(target_type)
    return tuple(spec for spec in CANONICAL_FIELDS if target in spec.targets)


@lru_cache(maxsize=None)
def get_alias_map(target_type: str) -> Mapping[str, str]:
    """Map normalized header tokens to canonical names for ``target_type``."""

    mapping: dict[str, str] = {}
    for spec in get_field_specs(target_type):
        for header in spec.headers():
            mapping[normalize_header(header)] = spec.name
    return mapping


def resolve_headers(headers: Sequence[str], target_type: str) -> Tuple[tuple[str, str | None], ...]:
    """Pair each raw header with its canonical name (``None`` when unrecognized)."""

    alias_map = get_alias_map(_check_target(target_type))
    return tuple((header, alias_map.get(normalize_header(header))) for header in headers)


def _is_empty(value: object | None) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def map_record(record: Mapping[str, object], target_type: str = TARGET_CONTACT) -> dict[str, object | None]:
    """
    Project ``record`` onto canonical keys legal for ``target_type``.

    When several input columns map to the same canonical key the first
    non-empty value wins. A full-name column is split into ``first_name`` and
    ``last_name`` only when both are empty after mapping, and is never
    returned.
    """

    alias_map = get_alias_map(_check_target(target_type))
    mapped: dict[str, object | None] = {}
    for raw_key, value in record.items():
        if raw_key is None:
            continue
        canonical = alias_map.get(normalize_header(raw_key))
        if canonical is None:
            continue
        normalizer = _FIELDS_BY_NAME[canonical].normalizer
        normalized = normalizer(value) if normalizer else value
        if canonical in mapped and not _is_empty(mapped[canonical]):
            continue
        mapped[canonical] = normalized

    full_name = mapped.pop(FULL_NAME_FIELD, None)
    if not _is_empty(full_name) and _is_empty(mapped.get("first_name")) and _is_empty(mapped.get("last_name")):
        parsed = parse_full_name(full_name)
        mapped["first_name"] = parsed.first_name
        mapped["last_name"] = parsed.last_name
    return mapped


def unmapped_fields(record: Mapping[str, object], target_type: str = TARGET_CONTACT) -> dict[str, object]:
    """Return the entries of ``record`` that ``map_record`` would drop."""

    alias_map = get_alias_map(_check_target(target_type))
    return {
        key: value
        for key, value in record.items()
        if key is not None and alias_map.get(normalize_header(key)) is None
    }


def describe_fields(target_type: str) -> list[dict[str, object]]:
    """Field catalog for ``target_type`` (used by the API and CLI)."""

    return [
        {"name": spec.name, "description": spec.description, "aliases": list(spec.aliases)}
        for spec in get_field_specs(target_type)
    ]


def carries_stage_data(record: Mapping[str, object], fields: Iterable[str] = ("stage", "audience_type")) -> bool:
    return any(not _is_empty(record.get(field)) for field in fields)


__all__ = [
    "CANONICAL_FIELDS",
    "FieldSpec",
    "TARGET_CONTACT",
    "TARGET_MEMBERSHIP",
    "TARGET_PARTICIPATION",
    "TARGET_TYPES",
    "carries_stage_data",
    "describe_fields",
    "get_alias_map",
    "get_field_specs",
    "map_record",
    "normalize_header",
    "resolve_headers",
    "unmapped_fields",
]
