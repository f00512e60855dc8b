from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Tuple

from .models import Student, period_name


LATE_FEE_RATE = 0.05
DUE_DAY = 11


@dataclass(frozen=True)
class DebtSummary:
    """Settlement summary for one student.

    Amounts are rounded to 2 decimals; accrual happens on unrounded values.
    """

    monthly_amount: float
    pending_periods: Tuple[str, ...]
    total_pending_amount: float
    total_late_fee: float
    total_due: float

    @property
    def is_current(self) -> bool:
        return not self.pending_periods


def is_blank(value: Any) -> bool:
    """Return True when a month cell counts as unpaid."""
    if value is None:
        return True
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return value == 0
    return str(value).strip() == ""


def due_date(period: int, now: datetime) -> datetime:
    """Due date of `period`: the 11th of the following month.

    December rolls into January of the next year. When evaluating in January, a
    pending December belongs to the previous year.
    """
    year = now.year
    if period == 12 and now.month == 1:
        year -= 1
    if period == 12:
        return datetime(year + 1, 1, DUE_DAY, tzinfo=now.tzinfo)
    return datetime(year, period + 1, DUE_DAY, tzinfo=now.tzinfo)


def pending_periods(student: Student, now: datetime) -> List[int]:
    first = student.plan.first_period
    return [p for p in range(first, now.month + 1) if is_blank(student.cell(p))]


def calculate_debt(student: Student, now: datetime) -> DebtSummary:
    pending = pending_periods(student, now)
    monthly = float(student.monthly_amount)

    late_fee = 0.0
    for period in pending:
        if now > due_date(period, now):
            late_fee += monthly * LATE_FEE_RATE

    pending_amount = monthly * len(pending)
    return DebtSummary(
        monthly_amount=round(monthly, 2),
        pending_periods=tuple(period_name(p).upper() for p in pending),
        total_pending_amount=round(pending_amount, 2),
        total_late_fee=round(late_fee, 2),
        total_due=round(pending_amount + late_fee, 2),
    )


__all__ = ["DebtSummary", "calculate_debt", "due_date", "is_blank", "pending_periods"]
