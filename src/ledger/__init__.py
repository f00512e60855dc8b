"""
Tuition ledger: workbook acquisition, row parsing and debt computation.

Modules:
- models: Student entity, payment plans and the billing calendar
- parser: spreadsheet row interpretation
- debt: pending periods, late fees and settlement summary
- workbook: TTL-cached workbook loading
- directory: student lookup and PIN validation
"""

from .models import MONTHS, PaymentPlan, Student

__all__ = ["MONTHS", "PaymentPlan", "Student"]
