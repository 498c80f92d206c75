"""Interest on overdue balances.

Pure functions, no database access. All arithmetic is Decimal; the result
is rounded half-up to cents.

Conventions:
- A month is 30 days and the configured rate applies per month.
- The grace period is inclusive: nothing accrues on ``due_date + grace``
  itself, interest starts the day after.
- SIMPLE:   principal * rate/100 * days/30
- COMPOUND: principal * ((1 + rate/100/n) ** (n*t) - 1) with t = days/30,
  n = 30 for DAILY compounding and n = 1 for MONTHLY. MONTHLY counts whole
  elapsed months only, so the first 29 overdue days accrue nothing.
"""

from datetime import date
from decimal import Decimal, localcontext

from society_billing.errors import InvalidPolicyError
from society_billing.models.society import CompoundingFrequency, InterestMethod
from society_billing.services.periods import ZERO, add_days, to_money

DAYS_PER_MONTH = 30


def grace_end_date(due_date: date, grace_period_days: int) -> date:
    """Last day on which no interest accrues."""
    return add_days(due_date, grace_period_days)


def days_overdue(due_date: date, grace_period_days: int, as_of: date) -> int:
    """Whole days past the end of the grace period (0 while inside it)."""
    return max((as_of - grace_end_date(due_date, grace_period_days)).days, 0)


def compute_interest(
    principal: Decimal,
    annual_rate_percent: Decimal,
    due_date: date,
    grace_period_days: int,
    method: InterestMethod = InterestMethod.COMPOUND,
    compounding_frequency: CompoundingFrequency = CompoundingFrequency.MONTHLY,
    as_of: date | None = None,
) -> Decimal:
    """Interest accrued on ``principal`` as of a date.

    Args:
        principal: Outstanding amount; non-positive amounts accrue nothing
        annual_rate_percent: Interest rate in percent (e.g. Decimal("18"))
        due_date: Date the amount fell due
        grace_period_days: Days after due date before interest accrues
        method: SIMPLE or COMPOUND
        compounding_frequency: MONTHLY or DAILY (COMPOUND only)
        as_of: Evaluation date (default: today)

    Returns:
        Interest rounded to cents, never negative

    Raises:
        InvalidPolicyError: If rate or grace period is negative
    """
    rate = Decimal(annual_rate_percent)
    if rate < 0:
        raise InvalidPolicyError(f"Interest rate must be non-negative, got {rate}")
    if grace_period_days < 0:
        raise InvalidPolicyError(
            f"Grace period must be non-negative, got {grace_period_days}"
        )

    principal = Decimal(principal)
    if principal <= 0 or rate == 0:
        return ZERO

    overdue = days_overdue(due_date, grace_period_days, as_of or date.today())
    if overdue == 0:
        return ZERO

    method = InterestMethod(method)
    compounding_frequency = CompoundingFrequency(compounding_frequency)

    with localcontext() as ctx:
        ctx.prec = 34
        r = rate / Decimal(100)
        if method == InterestMethod.SIMPLE:
            interest = principal * r * Decimal(overdue) / Decimal(DAYS_PER_MONTH)
        elif compounding_frequency == CompoundingFrequency.DAILY:
            # n = 30 per month and t = days/30, so n*t is the day count
            interest = principal * ((1 + r / DAYS_PER_MONTH) ** overdue - 1)
        else:
            months = overdue // DAYS_PER_MONTH
            interest = principal * ((1 + r) ** months - 1)

    return max(to_money(interest), ZERO)


__all__ = ["DAYS_PER_MONTH", "compute_interest", "days_overdue", "grace_end_date"]
