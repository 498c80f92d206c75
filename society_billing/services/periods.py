"""Billing period, financial year and money helpers."""

import calendar
import re
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from society_billing.errors import InvalidPeriodError, ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

PERIOD_ID_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")
FINANCIAL_YEAR_RE = re.compile(r"^FY(\d{4})-(\d{2})$")


def to_money(value) -> Decimal:
    """Convert to a Decimal rounded half-up to whole cents.

    Floats go through ``str`` so 0.1 becomes Decimal("0.10"), not the binary
    expansion.
    """
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e


def format_period_id(year: int, month: int) -> str:
    """Build a period identifier, e.g. (2025, 3) -> "2025-03"."""
    if not 1 <= month <= 12:
        raise InvalidPeriodError(f"Month must be 1-12, got {month}")
    return f"{year:04d}-{month:02d}"


def parse_period_id(period_id: str) -> tuple[int, int]:
    """Parse "YYYY-MM" into (year, month).

    Raises:
        InvalidPeriodError: If the string is not exactly YYYY-MM with a
            zero-padded month
    """
    match = PERIOD_ID_RE.match(period_id or "")
    if not match:
        raise InvalidPeriodError(f"Invalid period id {period_id!r}, expected YYYY-MM")
    return int(match.group(1)), int(match.group(2))


def month_bounds(year: int, month: int) -> tuple[date, date]:
    """First and last day of a calendar month."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def due_date_for_period(period_id: str, bill_due_day: int) -> date:
    """Due date of a period's bills: bill_due_day of the billing month.

    Days past the end of the month clamp to its last day (31 -> Feb 28).
    """
    year, month = parse_period_id(period_id)
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(bill_due_day, last_day))


def add_days(value: date, days: int) -> date:
    return value + timedelta(days=days)


def financial_year_label(value: date, start_month: int = 4) -> str:
    """Financial year containing a date, e.g. 2025-05-01 -> "FY2025-26".

    Args:
        value: Date to classify
        start_month: First month of the financial year (4 = April)
    """
    start_year = value.year if value.month >= start_month else value.year - 1
    if start_month == 1:
        return f"FY{start_year}-{str(start_year)[-2:]}"
    return f"FY{start_year}-{str(start_year + 1)[-2:]}"


def financial_year_range(label: str, start_month: int = 4) -> tuple[date, date]:
    """First and last day of a financial year label such as "FY2025-26"."""
    match = FINANCIAL_YEAR_RE.match(label or "")
    if not match:
        raise ValidationError(f"Invalid financial year {label!r}, expected FY2025-26")
    start_year = int(match.group(1))
    start = date(start_year, start_month, 1)
    if start_month == 1:
        return start, date(start_year, 12, 31)
    end = date(start_year + 1, start_month, 1) - timedelta(days=1)
    return start, end


__all__ = [
    "CENT",
    "ZERO",
    "to_money",
    "format_period_id",
    "parse_period_id",
    "month_bounds",
    "due_date_for_period",
    "add_days",
    "financial_year_label",
    "financial_year_range",
]
