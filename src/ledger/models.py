from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# Billing periods are calendar months; index + 1 is the period number.
MONTHS = (
    "january",
    "february",
    "march",
    "april",
    "may",
    "june",
    "july",
    "august",
    "september",
    "october",
    "november",
    "december",
)


class PaymentPlan(str, Enum):
    """Billing plan recorded in the ledger.

    A ten-payment plan starts in February; every other plan starts in January.
    """

    TEN_MONTH = "ten_month"
    STANDARD = "standard"

    @property
    def first_period(self) -> int:
        return 2 if self is PaymentPlan.TEN_MONTH else 1

    @classmethod
    def from_cell(cls, value: Any) -> "PaymentPlan":
        if isinstance(value, bool) or value is None:
            return cls.STANDARD
        try:
            number = float(str(value).strip())
        except ValueError:
            return cls.STANDARD
        return cls.TEN_MONTH if number == 10 else cls.STANDARD


def period_name(period: int) -> str:
    return MONTHS[period - 1]


class Student(BaseModel):
    id: str
    name: str
    grade: str = ""
    plan: PaymentPlan = PaymentPlan.STANDARD
    months: Dict[str, Any] = Field(
        default_factory=dict,
        description="Raw ledger cell per month name (lowercase); None when blank",
    )
    monthly_amount: float = 0.0
    pin: Optional[str] = Field(default=None, repr=False)

    def cell(self, period: int) -> Any:
        return self.months.get(period_name(period))


__all__ = ["MONTHS", "PaymentPlan", "Student", "period_name"]
