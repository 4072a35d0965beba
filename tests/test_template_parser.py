from datetime import datetime

import pandas as pd
import pytest

from services.template_parser import (
    TemplateParseError,
    column_to_number,
    detect_document_type,
    extract_fields_from_frame,
    extract_region_text,
    file_type_for,
    parse_amount,
    parse_date,
    parse_fields,
)


def test_region_text_in_reading_order():
    # page 100 x 100 points, origin bottom-left
    fragments = [
        (60, 80, "World"),
        (10, 80, "Hello"),
        (10, 70, "second line"),
        (90, 10, "outside"),
    ]
    region = {"left": 0, "top": 0, "right": 0.8, "bottom": 0.5}

    assert extract_region_text(fragments, 100, 100, region) == "Hello World second line"


def test_region_without_fragments_is_empty():
    assert extract_region_text([(90, 90, "x")], 100, 100, {"left": 0, "top": 0.5, "right": 0.5, "bottom": 1}) == ""


def test_column_to_number():
    assert column_to_number("A") == 1
    assert column_to_number("z") == 26
    assert column_to_number("AA") == 27
    assert column_to_number("BC") == 55


def test_frame_extraction_single_cells_and_ranges():
    frame = pd.DataFrame([
        ["Invoice No", "INV-42", None],
        ["Total", 120.0, None],
        ["Line", "Widget", 3.5],
        ["Line", "Bolt", float("nan")],
    ])
    cells = {
        "invoiceNumber": {"column": "B", "row": 1},
        "total": {"column": "B", "row": 2},
        "lines": {"column": "B", "row": 3, "endColumn": "C", "endRow": 4},
        "missing": {"column": "Z", "row": 99},
        "broken": {"row": 1},
    }

    extracted = extract_fields_from_frame(frame, cells)
    assert extracted == {
        "invoiceNumber": "INV-42",
        "total": "120",
        "lines": "Widget\t3.5\nBolt",
        "missing": "",
    }


def test_parse_fields_rejects_unknown_type():
    with pytest.raises(TemplateParseError):
        parse_fields("notes.txt", "text", {})


@pytest.mark.parametrize("raw, expected", [
    ("£1,234.50", 1234.5),
    ("(45.00)", -45.0),
    ("-12", -12.0),
    (99, 99.0),
    ("", None),
    ("n/a", None),
    ("1.2.3", None),
])
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


@pytest.mark.parametrize("raw", ["05/03/2024", "2024-03-05", "5 March 2024", "05.03.2024"])
def test_parse_date_formats(raw):
    assert parse_date(raw) == datetime(2024, 3, 5)


def test_parse_date_invalid():
    assert parse_date("next tuesday") is None
    assert parse_date(None) is None


def test_detect_document_type_and_file_type():
    assert detect_document_type("CREDIT NOTE 123") == "credit_note"
    assert detect_document_type("Monthly Statement") == "statement"
    assert detect_document_type(None) == "invoice"
    assert file_type_for("a.PDF") == "pdf"
    assert file_type_for("b.xls") == "excel"
    assert file_type_for("c.csv") is None
