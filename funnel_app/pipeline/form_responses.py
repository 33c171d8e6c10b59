"""Helpers turning raw form answers into participation details."""

from __future__ import annotations

import re
from typing import Mapping

from funnel_app.models import ResponseBag

from .field_mapper import TARGET_PARTICIPATION, normalize_header, unmapped_fields

_PARTY_VALUES = ("spouse", "guest", "other", "family")
_YES = re.compile(r"\byes\b")


def _storable(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value.strip() if isinstance(value, str) else value
    if isinstance(value, (list, tuple)):
        return [item if isinstance(item, (str, int, float, bool)) or item is None else str(item) for item in value]
    return str(value)


def build_response_bag(data: Mapping[str, object], target_type: str = TARGET_PARTICIPATION) -> ResponseBag:
    """Collect the answers the field mapper does not model, keyed by normalized question."""

    answers: dict[str, object] = {}
    for key, value in unmapped_fields(data, target_type).items():
        token = normalize_header(key)
        if not token:
            continue
        value = _storable(value)
        if value is None or value == "" or value == []:
            continue
        answers.setdefault(token, value)
    return ResponseBag(answers)


def derive_party(record: Mapping[str, object]) -> tuple[str, int]:
    """
    Work out ``(spouse_or_other, party_size)`` from the bringing answer.

    "Yes" means a spouse is coming. An explicit party size always wins;
    otherwise it is two with a companion and one alone.
    """

    answer = str(record.get("spouse_or_other") or "").strip().lower()
    if _YES.search(answer):
        spouse_or_other = "spouse"
    elif answer in _PARTY_VALUES:
        spouse_or_other = answer
    else:
        spouse_or_other = "solo"

    party_size = record.get("party_size")
    if not isinstance(party_size, int) or isinstance(party_size, bool) or party_size < 1:
        party_size = 1 if spouse_or_other == "solo" else 2
    return spouse_or_other, party_size


__all__ = ["build_response_bag", "derive_party"]
