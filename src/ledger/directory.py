from __future__ import annotations

import hmac
from typing import Optional
from zipfile import BadZipFile

import structlog
from openpyxl.utils.exceptions import InvalidFileException

from common.dropbox import DropboxError
from common.fetcher import FetchError

from .models import Student
from .parser import DEFAULT_HEADER_ROWS, LedgerColumns, find_student, select_sheet
from .workbook import WorkbookCache


LOGGER = structlog.get_logger(__name__)


class LedgerUnavailable(RuntimeError):
    """The ledger workbook could not be obtained."""


class StudentDirectory:
    """Student lookups over the cached ledger workbook."""

    def __init__(
        self,
        workbook: WorkbookCache,
        *,
        columns: Optional[LedgerColumns] = None,
        sheet_name: Optional[str] = None,
        sheet_index: int = 5,
        header_rows: int = DEFAULT_HEADER_ROWS,
    ) -> None:
        self._workbook = workbook
        self._columns = columns or LedgerColumns()
        self._sheet_name = sheet_name
        self._sheet_index = sheet_index
        self._header_rows = header_rows

    def lookup(self, student_id: str) -> Optional[Student]:
        try:
            wb = self._workbook.get()
        except (FetchError, DropboxError, BadZipFile, InvalidFileException) as exc:
            LOGGER.error("ledger unavailable", error=str(exc))
            raise LedgerUnavailable("Ledger workbook could not be loaded") from exc
        sheet = select_sheet(wb, self._sheet_name, self._sheet_index)
        rows = sheet.iter_rows(values_only=True)
        return find_student(rows, student_id, self._columns, header_rows=self._header_rows)

    def validate_pin(self, student_id: str, pin: str) -> bool:
        """Return True when `pin` is the secret recorded for the student."""
        student = self.lookup(student_id)
        if student is None or not student.pin:
            return False
        return hmac.compare_digest(student.pin.encode("utf-8"), pin.strip().encode("utf-8"))


__all__ = ["LedgerUnavailable", "StudentDirectory"]
