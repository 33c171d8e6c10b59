"""CSV adapter for contact ingest.

Streams spreadsheet exports as dictionaries keyed by the original header
text. Header recognition happens downstream in the field mapper, so any
column layout is accepted; the adapter only insists that a header row
exists and tracks where each row came from in the file.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from typing import IO, Iterator, Sequence

from funnel_app.pipeline.field_mapper import TARGET_CONTACT, resolve_headers


class CSVAdapterError(Exception):
    """Base exception for CSV adapter failures."""


class CSVHeaderError(CSVAdapterError):
    """Raised when the file has no usable header row."""

    def __init__(self, message: str = "CSV header row is missing or empty.") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class HeaderInfo:
    raw_headers: tuple[str, ...]
    recognized: tuple[tuple[str, str], ...]
    unrecognized: tuple[str, ...]


@dataclass(frozen=True)
class ContactCSVRow:
    """One parsed data row, numbered by its line in the source file."""

    sequence_number: int
    source_line: int
    raw: dict[str, object | None]


@dataclass
class ContactCSVStatistics:
    rows_processed: int = 0
    rows_skipped_blank: int = 0


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip()
    return token.lstrip("\ufeff")


def _row_is_blank(row: dict[str, object | None]) -> bool:
    return all((value is None or (isinstance(value, str) and value.strip() == "")) for value in row.values())


def _inspect_headers(raw_headers: Sequence[str], target_type: str) -> HeaderInfo:
    sanitized = tuple(_sanitize_header(header) for header in raw_headers)
    pairs = resolve_headers(sanitized, target_type)
    return HeaderInfo(
        raw_headers=sanitized,
        recognized=tuple((header, canonical) for header, canonical in pairs if canonical is not None),
        unrecognized=tuple(header for header, canonical in pairs if canonical is None and header),
    )


class ContactCSVAdapter:
    """CSV reader producing raw contact rows for the ingestion pipeline."""

    def __init__(
        self,
        file_obj: IO[str],
        *,
        target_type: str = TARGET_CONTACT,
        skip_blank_rows: bool = True,
    ) -> None:
        self._file_obj = file_obj
        self.target_type = target_type
        self.skip_blank_rows = skip_blank_rows
        self._header: HeaderInfo | None = None
        self.statistics = ContactCSVStatistics()

    @classmethod
    def from_text(cls, text: str, **kwargs) -> "ContactCSVAdapter":
        return cls(io.StringIO(text), **kwargs)

    @property
    def header(self) -> HeaderInfo | None:
        return self._header

    def _prepare_reader(self) -> csv.DictReader:
        if self._file_obj.seekable():
            self._file_obj.seek(0)
        reader = csv.DictReader(self._file_obj)
        if not reader.fieldnames or not any(_sanitize_header(name) for name in reader.fieldnames):
            raise CSVHeaderError()
        self._header = _inspect_headers(reader.fieldnames, self.target_type)
        reader.fieldnames = list(self._header.raw_headers)
        return reader

    def iter_rows(self) -> Iterator[ContactCSVRow]:
        reader = self._prepare_reader()
        for sequence_number, raw_row in enumerate(reader, start=1):
            # overflow cells land under the ``None`` key
            row_copy = {key: value for key, value in raw_row.items() if key}

            if self.skip_blank_rows and _row_is_blank(row_copy):
                self.statistics.rows_skipped_blank += 1
                continue

            self.statistics.rows_processed += 1
            yield ContactCSVRow(sequence_number=sequence_number, source_line=reader.line_num, raw=row_copy)


__all__ = [
    "CSVAdapterError",
    "CSVHeaderError",
    "ContactCSVAdapter",
    "ContactCSVRow",
    "ContactCSVStatistics",
    "HeaderInfo",
]
