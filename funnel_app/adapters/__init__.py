"""Input adapters feeding the ingestion pipeline."""

from .csv_contacts import (
    CSVAdapterError,
    CSVHeaderError,
    ContactCSVAdapter,
    ContactCSVRow,
    ContactCSVStatistics,
)

__all__ = [
    "CSVAdapterError",
    "CSVHeaderError",
    "ContactCSVAdapter",
    "ContactCSVRow",
    "ContactCSVStatistics",
]
