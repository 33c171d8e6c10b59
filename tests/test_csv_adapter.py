import io

import pytest

from funnel_app.adapters.csv_contacts import ContactCSVAdapter, CSVHeaderError


def _make_csv(contents: str) -> io.StringIO:
    stream = io.StringIO(contents)
    stream.seek(0)
    return stream


def test_adapter_reports_recognized_and_unrecognized_headers():
    adapter = ContactCSVAdapter(_make_csv("\ufeffFull Name,E-mail,Shirt Size\nJane Smith,jane@example.org,M\n"))

    rows = list(adapter.iter_rows())

    assert adapter.header.raw_headers == ("Full Name", "E-mail", "Shirt Size")
    assert adapter.header.recognized == (("Full Name", "full_name"), ("E-mail", "email"))
    assert adapter.header.unrecognized == ("Shirt Size",)
    assert rows[0].raw == {"Full Name": "Jane Smith", "E-mail": "jane@example.org", "Shirt Size": "M"}


def test_adapter_rejects_missing_header():
    adapter = ContactCSVAdapter(_make_csv(""))

    with pytest.raises(CSVHeaderError):
        list(adapter.iter_rows())


def test_adapter_skips_blank_rows_and_tracks_source_lines():
    csv_stream = _make_csv(
        "first_name,last_name,email\n" "Jane,Doe,jane@example.org\n" ",,\n" "John,Smith,john@example.org\n"
    )

    adapter = ContactCSVAdapter(csv_stream)
    rows = list(adapter.iter_rows())

    assert len(rows) == 2
    assert rows[0].sequence_number == 1
    assert rows[0].source_line == 2
    assert rows[1].sequence_number == 3  # Blank row still increments the sequence counter.
    assert rows[1].source_line == 4
    assert adapter.statistics.rows_processed == 2
    assert adapter.statistics.rows_skipped_blank == 1


def test_overflow_cells_are_dropped():
    adapter = ContactCSVAdapter.from_text("email\nsomeone@example.org,extra,cells\n")

    rows = list(adapter.iter_rows())

    assert rows[0].raw == {"email": "someone@example.org"}
