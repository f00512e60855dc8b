from __future__ import annotations

from types import SimpleNamespace

import pytest
from openpyxl import Workbook

from ledger.models import PaymentPlan
from ledger.parser import LedgerColumns, cell_text, find_student, parse_amount, select_sheet


def _row(**cells):
    """Build a row list from column letters, e.g. _row(A="1", I=500)."""
    width = 21  # A..U
    row = [None] * width
    for letter, value in cells.items():
        row[ord(letter) - ord("A")] = value
    return row


HEADER = [_row(A="LEDGER 2025"), _row(A="ID", B="NAME", C="GRADE")]


@pytest.mark.parametrize(
    "value, expected",
    [
        (500, 500.0),
        (1250.5, 1250.5),
        ("L. 1,500.00", 1500.0),
        ("L.1,500.00", 1500.0),
        ("$ 2 000", 2000.0),
        ("  750 ", 750.0),
        ("n/a", 0.0),
        ("", 0.0),
        (None, 0.0),
        ({"formula": "SUM(A1:A2)", "result": 820}, 820.0),
        ({"richText": [], "text": "L. 90.50"}, 90.5),
        (SimpleNamespace(result="L. 1,000"), 1000.0),
    ],
)
def test_parse_amount_encodings(value, expected):
    assert parse_amount(value) == expected


def test_find_student_skips_header_and_maps_columns():
    rows = HEADER + [
        _row(A=801200500001.0, B="Other", I=100),
        _row(
            A="0801200512345",
            B="Ana Lopez",
            C="3rd",
            D=4321,
            H=10,
            I="L. 500.00",
            K=500,
            L="",
        ),
    ]
    student = find_student(rows, "0801200512345")

    assert student is not None
    assert student.name == "Ana Lopez"
    assert student.grade == "3rd"
    assert student.pin == "4321"
    assert student.plan is PaymentPlan.TEN_MONTH
    assert student.monthly_amount == 500.0
    # Cells are exposed unmodified; every month is present
    assert student.months["february"] == 500
    assert student.months["march"] == ""
    assert student.months["december"] is None
    assert len(student.months) == 12


def test_find_student_matches_numeric_id_cells():
    rows = HEADER + [_row(A=801200500001.0, B="Numeric")]
    student = find_student(rows, "801200500001")
    assert student is not None and student.name == "Numeric"


def test_find_student_ignores_header_rows_and_misses():
    rows = [_row(A="0801200512345", B="In header")] + HEADER[1:]
    assert find_student(rows, "0801200512345") is None
    assert find_student(HEADER, "0000000000000") is None


def test_first_match_wins():
    rows = HEADER + [_row(A="1", B="First"), _row(A="1", B="Second")]
    assert find_student(rows, "1").name == "First"


def test_short_rows_yield_blank_months():
    rows = HEADER + [["42", "Short"]]
    student = find_student(rows, "42")
    assert student is not None
    assert all(v is None for v in student.months.values())
    assert student.plan is PaymentPlan.STANDARD


def test_custom_columns_from_json():
    raw = '{"id": "b", "name": "a", "months": {' + ",".join(
        f'"{m}": "{chr(ord("C") + i)}"'
        for i, m in enumerate(
            ["January", "February", "March", "April", "May", "June", "July",
             "August", "September", "October", "November", "December"]
        )
    ) + "}}"
    columns = LedgerColumns.from_json(raw)
    assert columns.id == "B"
    assert columns.months["january"] == "C"

    rows = HEADER + [["Beto", "77", 100]]
    student = find_student(rows, "77", columns)
    assert student.name == "Beto"
    assert student.months["january"] == 100


def test_columns_require_every_month():
    with pytest.raises(ValueError):
        LedgerColumns(months={"january": "J"})


def test_cell_text():
    assert cell_text(12.0) == "12"
    assert cell_text(" x ") == "x"
    assert cell_text(None) == ""


def test_select_sheet_by_name_or_index():
    wb = Workbook()
    wb.active.title = "Summary"
    wb.create_sheet("Matricula 2025")
    wb.create_sheet("Other")

    assert select_sheet(wb, "Matricula 2025", 0).title == "Matricula 2025"
    assert select_sheet(wb, "Missing", 2).title == "Other"
    # Out-of-range index falls back to the last sheet
    assert select_sheet(wb, None, 9).title == "Other"
