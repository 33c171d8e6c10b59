# funnel_app/models/response_bag.py
"""
Typed key/value bag for free-form form answers.

Intake forms collect questions the core schema does not model (dietary
needs, "how did you hear about us", likelihood to attend). Those answers are
kept in a ``ResponseBag``: an ordered mapping of non-empty string keys to JSON
primitives (str, int, float, bool, None) or flat lists of primitives. The
bag is immutable; :meth:`ResponseBag.merged` returns a new bag.

``ResponseBagType`` stores a bag as JSON text and always loads it back as a
``ResponseBag`` so readers never see an untyped blob.
"""

from __future__ import annotations

import json
from typing import Iterator, Mapping, Union

from sqlalchemy.types import Text, TypeDecorator

Primitive = Union[str, int, float, bool, None]
JSONValue = Union[Primitive, list]

_PRIMITIVE_TYPES = (str, int, float, bool, type(None))


class ResponseBagError(ValueError):
    """Raised when a value cannot be stored in a response bag."""


def _check_value(key: str, value: object) -> JSONValue:
    if isinstance(value, _PRIMITIVE_TYPES):
        return value  # type: ignore[return-value]
    if isinstance(value, (list, tuple)):
        items = []
        for item in value:
            if not isinstance(item, _PRIMITIVE_TYPES):
                raise ResponseBagError(f"Response {key!r} contains a nested {type(item).__name__}.")
            items.append(item)
        return items
    raise ResponseBagError(f"Response {key!r} has unsupported type {type(value).__name__}.")


class ResponseBag(Mapping[str, JSONValue]):
    __slots__ = ("_items",)

    def __init__(self, items: Mapping[str, object] | None = None) -> None:
        data: dict[str, JSONValue] = {}
        for raw_key, value in (items or {}).items():
            if not isinstance(raw_key, str) or not raw_key.strip():
                raise ResponseBagError("Response keys must be non-empty strings.")
            key = raw_key.strip()
            data[key] = _check_value(key, value)
        self._items = data

    def __getitem__(self, key: str) -> JSONValue:
        return self._items[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ResponseBag):
            return list(self._items.items()) == list(other._items.items())
        if isinstance(other, Mapping):
            return self._items == dict(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"ResponseBag({self._items!r})"

    def as_dict(self) -> dict[str, JSONValue]:
        return {key: list(value) if isinstance(value, list) else value for key, value in self._items.items()}

    def merged(self, other: Mapping[str, object] | None) -> "ResponseBag":
        """Return a new bag where non-empty values from ``other`` win."""
        combined: dict[str, object] = dict(self._items)
        for key, value in (other or {}).items():
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            combined[key] = value
        return ResponseBag(combined)

    def to_json(self) -> str:
        return json.dumps(self._items, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str | None) -> "ResponseBag":
        if text is None or not text.strip():
            return cls()
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ResponseBagError(f"Stored responses are not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ResponseBagError("Stored responses must be a JSON object.")
        return cls(data)


class ResponseBagType(TypeDecorator):
    """Column type persisting a ``ResponseBag`` as JSON text."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, ResponseBag):
            value = ResponseBag(value)
        return value.to_json()

    def process_result_value(self, value, dialect):
        return ResponseBag.from_json(value)
