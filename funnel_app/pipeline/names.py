"""
Heuristic full-name splitting for imports that only carry a single name column.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

TITLES = frozenset({"dr", "mr", "mrs", "ms", "miss", "mx", "prof", "professor", "rev", "pastor", "father"})
SUFFIXES = frozenset({"jr", "sr", "ii", "iii", "iv", "phd", "md", "esq"})
SURNAME_PARTICLES = frozenset({"van", "von", "de", "del", "della", "der", "da", "di", "du", "la", "le", "st", "bin", "ibn"})

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class ParsedName:
    first_name: str | None
    last_name: str | None


def _bare(token: str) -> str:
    return token.rstrip(".,").lower()


def _strip_initial(token: str) -> str:
    # "A." -> "A"
    if len(token) == 2 and token.endswith(".") and token[0].isalpha():
        return token[0]
    return token.rstrip(",")


def _recase(word: str) -> str:
    return "-".join(part[:1].upper() + part[1:].lower() for part in word.split("-"))


def _normalize_case(value: str) -> str:
    if value.isupper() or value.islower():
        return " ".join(_recase(word) for word in value.split(" "))
    return value


def parse_full_name(value: object | None) -> ParsedName:
    """
    Split a free-text full name into first and last name.

    - Leading titles (``Dr.``, ``Prof``, ``Rev.`` ...) and trailing suffixes
      (``Jr.``, ``III`` ...) are dropped when other words remain.
    - One word yields a first name only.
    - Otherwise the final word is the last name, extended backwards over
      surname particles (``van``, ``de`` ...); everything before it is the
      first name, so middle names and initials stay with the first name.
    - Hyphenated surnames are kept intact.
    - All-upper or all-lower input is re-cased; mixed case is preserved.
    """

    if value is None:
        return ParsedName(None, None)
    text = _WHITESPACE.sub(" ", str(value)).strip()
    if not text:
        return ParsedName(None, None)

    words = text.split(" ")
    if len(words) > 1 and _bare(words[0]) in TITLES:
        words = words[1:]
    while len(words) > 2 and _bare(words[-1]) in SUFFIXES:
        words = words[:-1]
    words = [_strip_initial(word) for word in words if word.strip(".,")]
    if not words:
        return ParsedName(None, None)

    if len(words) == 1:
        return ParsedName(_normalize_case(words[0]), None)

    split_at = len(words) - 1
    while split_at > 1 and _bare(words[split_at - 1]) in SURNAME_PARTICLES:
        split_at -= 1

    first = " ".join(words[:split_at])
    last = " ".join(words[split_at:])
    return ParsedName(_normalize_case(first), _normalize_case(last))


__all__ = ["ParsedName", "parse_full_name"]
