from __future__ import annotations

import json
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

import structlog
from openpyxl.utils import column_index_from_string
from pydantic import BaseModel, Field, field_validator

from .models import MONTHS, PaymentPlan, Student


LOGGER = structlog.get_logger(__name__)

DEFAULT_HEADER_ROWS = 2


def _default_month_columns() -> Dict[str, str]:
    # January..December occupy J..U
    return {name: chr(ord("J") + i) for i, name in enumerate(MONTHS)}


class LedgerColumns(BaseModel):
    """Column letters for every field read from a ledger row."""

    id: str = "A"
    name: str = "B"
    grade: str = "C"
    pin: str = "D"
    plan: str = "H"
    amount_due: str = "I"
    months: Dict[str, str] = Field(default_factory=_default_month_columns)

    @field_validator("id", "name", "grade", "pin", "plan", "amount_due")
    @classmethod
    def _valid_letter(cls, v: str) -> str:
        v = v.strip().upper()
        column_index_from_string(v)  # raises ValueError on garbage
        return v

    @field_validator("months")
    @classmethod
    def _all_months(cls, v: Dict[str, str]) -> Dict[str, str]:
        norm = {k.strip().lower(): col.strip().upper() for k, col in v.items()}
        missing = [m for m in MONTHS if m not in norm]
        if missing:
            raise ValueError(f"missing month columns: {', '.join(missing)}")
        return {m: norm[m] for m in MONTHS}

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "LedgerColumns":
        if not raw:
            return cls()
        return cls.model_validate(json.loads(raw))


_CURRENCY_PREFIX = re.compile(r"^\s*(?:HNL|L\.?|\$)\s*", re.IGNORECASE)
_NON_NUMERIC = re.compile(r"[^0-9.\-]")


def _parse_amount_text(text: str) -> float:
    cleaned = _CURRENCY_PREFIX.sub("", text)
    cleaned = cleaned.replace(",", "")
    cleaned = _NON_NUMERIC.sub("", cleaned)
    try:
        return float(Decimal(cleaned))
    except (InvalidOperation, ValueError):
        return 0.0


def parse_amount(value: Any) -> float:
    """Normalize the 'amount due' cell into a float.

    Accepts a native number, a formatted string such as "L. 1,500.00", or a
    wrapper carrying a computed formula `result` (or rich `text`), either as a
    mapping or as attributes. Anything unparseable yields 0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        return _parse_amount_text(value)
    if isinstance(value, Mapping):
        if value.get("result") is not None:
            return parse_amount(value["result"])
        if value.get("text") is not None:
            return parse_amount(str(value["text"]))
        return 0.0
    result = getattr(value, "result", None)
    if result is not None:
        return parse_amount(result)
    text = getattr(value, "text", None)
    if text is not None:
        return parse_amount(str(text))
    return 0.0


def cell_text(value: Any) -> str:
    """Render an identity-like cell as text (integral floats lose their '.0')."""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


class _RowReader:
    def __init__(self, columns: LedgerColumns) -> None:
        self._idx = {
            field: column_index_from_string(getattr(columns, field)) - 1
            for field in ("id", "name", "grade", "pin", "plan", "amount_due")
        }
        self._months = {m: column_index_from_string(col) - 1 for m, col in columns.months.items()}

    @staticmethod
    def _at(row: Sequence[Any], idx: int) -> Any:
        return row[idx] if idx < len(row) else None

    def get(self, row: Sequence[Any], field: str) -> Any:
        return self._at(row, self._idx[field])

    def student(self, row: Sequence[Any], student_id: str) -> Student:
        pin = cell_text(self.get(row, "pin"))
        return Student(
            id=student_id,
            name=cell_text(self.get(row, "name")),
            grade=cell_text(self.get(row, "grade")),
            plan=PaymentPlan.from_cell(self.get(row, "plan")),
            months={m: self._at(row, idx) for m, idx in self._months.items()},
            monthly_amount=parse_amount(self.get(row, "amount_due")),
            pin=pin or None,
        )


def find_student(
    rows: Iterable[Sequence[Any]],
    student_id: str,
    columns: Optional[LedgerColumns] = None,
    *,
    header_rows: int = DEFAULT_HEADER_ROWS,
) -> Optional[Student]:
    """Return the first row after the header whose id cell equals `student_id`."""
    reader = _RowReader(columns or LedgerColumns())
    wanted = student_id.strip()
    for row_number, row in enumerate(rows, start=1):
        if row_number <= header_rows or not row:
            continue
        if cell_text(reader.get(row, "id")) == wanted:
            return reader.student(row, wanted)
    return None


def select_sheet(workbook: Any, name: Optional[str], fallback_index: int) -> Any:
    """Pick the ledger worksheet by name, falling back to a position."""
    if name and name in workbook.sheetnames:
        return workbook[name]
    sheets = workbook.worksheets
    if not sheets:
        raise LookupError("Workbook has no worksheets")
    index = fallback_index if 0 <= fallback_index < len(sheets) else len(sheets) - 1
    sheet = sheets[index]
    LOGGER.warning("ledger sheet_fallback", wanted=name, using=sheet.title, index=index)
    return sheet


__all__ = [
    "LedgerColumns",
    "cell_text",
    "find_student",
    "parse_amount",
    "select_sheet",
]
