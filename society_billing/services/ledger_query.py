"""Multi-filter ledger queries with totals, grouping and pagination."""

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import Integer, and_, case, cast, extract, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import contains_eager

from society_billing.config import get_settings
from society_billing.errors import ValidationError
from society_billing.models.member import Member
from society_billing.models.transaction import (
    PaymentMode,
    Transaction,
    TransactionCategory,
    TransactionType,
)
from society_billing.services.ledger_service import LedgerStore
from society_billing.services.periods import (
    ZERO,
    financial_year_range,
    month_bounds,
    parse_period_id,
    to_money,
)

logger = logging.getLogger(__name__)

SORT_FIELDS = ("date", "amount", "member")
GROUP_FIELDS = ("member", "category", "month")
BALANCE_STATUSES = ("arrears", "credit", "zero")


@dataclass
class LedgerFilter:
    """Ledger query parameters. Unset fields do not filter."""

    society_id: int
    member_ids: list[int] | None = None
    category: TransactionCategory | None = None
    type: TransactionType | None = None
    start_date: date | None = None
    end_date: date | None = None
    month: int | None = None
    year: int | None = None
    period_id: str | None = None
    wings: list[str] | None = None
    unit_pattern: str | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    payment_mode: PaymentMode | None = None
    financial_year: str | None = None
    created_by: int | None = None
    include_reversed: bool = False
    only_reversed: bool = False
    balance_status: str | None = None
    group_by: str | None = None
    sort_by: str = "date"
    sort_order: str = "desc"
    page: int = 1
    limit: int | None = None

    def validate(self) -> None:
        """Reject inconsistent parameters.

        Raises:
            ValidationError: On out-of-range paging, month, amounts or
                unknown sort/group/status values
        """
        settings = get_settings()
        if self.page < 1:
            raise ValidationError("page must be >= 1")
        if self.limit is not None and not 1 <= self.limit <= settings.max_page_limit:
            raise ValidationError(f"limit must be between 1 and {settings.max_page_limit}")
        if self.month is not None and not 1 <= self.month <= 12:
            raise ValidationError(f"month must be 1-12, got {self.month}")
        if self.sort_by not in SORT_FIELDS:
            raise ValidationError(f"sort_by must be one of {', '.join(SORT_FIELDS)}")
        if self.sort_order not in ("asc", "desc"):
            raise ValidationError("sort_order must be 'asc' or 'desc'")
        if self.group_by is not None and self.group_by not in GROUP_FIELDS:
            raise ValidationError(f"group_by must be one of {', '.join(GROUP_FIELDS)}")
        if self.balance_status is not None and self.balance_status not in BALANCE_STATUSES:
            raise ValidationError(
                f"balance_status must be one of {', '.join(BALANCE_STATUSES)}"
            )
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.min_amount > self.max_amount
        ):
            raise ValidationError("min_amount must not exceed max_amount")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValidationError("start_date must not be after end_date")
        if self.period_id is not None:
            parse_period_id(self.period_id)
        if self.financial_year is not None:
            financial_year_range(self.financial_year)

    @property
    def page_limit(self) -> int:
        return self.limit or get_settings().default_page_limit

    @property
    def single_member_id(self) -> int | None:
        if self.member_ids and len(self.member_ids) == 1:
            return self.member_ids[0]
        return None


@dataclass
class LedgerSummary:
    total_count: int = 0
    total_debit: Decimal = ZERO
    total_credit: Decimal = ZERO
    net: Decimal = ZERO
    balance_type: str = "DR"
    opening_balance: Decimal = ZERO
    closing_balance: Decimal | None = None
    current_page: int = 1
    total_pages: int = 0


@dataclass
class LedgerGroup:
    key: str
    count: int
    total_debit: Decimal
    total_credit: Decimal

    @property
    def net(self) -> Decimal:
        return self.total_debit - self.total_credit


@dataclass
class LedgerPage:
    entries: list[Transaction] = field(default_factory=list)
    summary: LedgerSummary = field(default_factory=LedgerSummary)
    groups: list[LedgerGroup] | None = None

    @property
    def total_count(self) -> int:
        return self.summary.total_count


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def unit_condition(pattern: str):
    """Condition on Member.unit_no for an exact, range or prefix pattern.

    "1310" matches exactly, "1310-1350" matches the numeric range inclusive,
    "13*" matches units starting with "13".
    """
    pattern = pattern.strip()
    if "-" in pattern:
        low, _, high = pattern.partition("-")
        try:
            low_no, high_no = int(low.strip()), int(high.strip())
        except ValueError as e:
            raise ValidationError(f"Invalid unit range {pattern!r}") from e
        if low_no > high_no:
            raise ValidationError(f"Invalid unit range {pattern!r}")
        return cast(Member.unit_no, Integer).between(low_no, high_no)
    if pattern.endswith("*"):
        prefix = _escape_like(pattern.rstrip("*"))
        return Member.unit_no.like(f"{prefix}%", escape="\\")
    return Member.unit_no == pattern


def build_conditions(flt: LedgerFilter) -> list:
    """WHERE clauses for a filter (statement must join Member)."""
    conditions = [Transaction.society_id == flt.society_id]

    if flt.member_ids:
        conditions.append(Transaction.member_id.in_(flt.member_ids))
    if flt.category is not None:
        conditions.append(Transaction.category == TransactionCategory(flt.category))
    if flt.type is not None:
        conditions.append(Transaction.type == TransactionType(flt.type))

    # Month/year shortcuts take precedence over an explicit date range
    if flt.month is not None and flt.year is not None:
        first, last = month_bounds(flt.year, flt.month)
        conditions.append(Transaction.transaction_date.between(first, last))
    elif flt.year is not None:
        conditions.append(
            Transaction.transaction_date.between(date(flt.year, 1, 1), date(flt.year, 12, 31))
        )
    elif flt.month is not None:
        conditions.append(extract("month", Transaction.transaction_date) == flt.month)
    else:
        if flt.start_date is not None:
            conditions.append(Transaction.transaction_date >= flt.start_date)
        if flt.end_date is not None:
            conditions.append(Transaction.transaction_date <= flt.end_date)

    if flt.period_id is not None:
        conditions.append(Transaction.period_id == flt.period_id)
    if flt.wings:
        conditions.append(Member.wing.in_(flt.wings))
    if flt.unit_pattern:
        conditions.append(unit_condition(flt.unit_pattern))
    if flt.min_amount is not None:
        conditions.append(Transaction.amount >= to_money(flt.min_amount))
    if flt.max_amount is not None:
        conditions.append(Transaction.amount <= to_money(flt.max_amount))
    if flt.payment_mode is not None:
        conditions.append(Transaction.payment_mode == PaymentMode(flt.payment_mode))
    if flt.financial_year is not None:
        conditions.append(Transaction.financial_year == flt.financial_year)
    if flt.created_by is not None:
        conditions.append(Transaction.created_by == flt.created_by)

    if flt.only_reversed:
        conditions.append(Transaction.is_reversed.is_(True))
    elif not flt.include_reversed:
        conditions.append(Transaction.is_reversed.is_(False))

    if flt.balance_status == "arrears":
        conditions.append(Transaction.balance_after > 0)
    elif flt.balance_status == "credit":
        conditions.append(Transaction.balance_after < 0)
    elif flt.balance_status == "zero":
        conditions.append(Transaction.balance_after == 0)

    return conditions


def _order_by(flt: LedgerFilter) -> list:
    if flt.sort_by == "amount":
        columns = [Transaction.amount, Transaction.id]
    elif flt.sort_by == "member":
        columns = [Member.wing, Member.unit_no, Transaction.transaction_date, Transaction.sequence]
    else:
        columns = [Transaction.transaction_date, Transaction.member_id, Transaction.sequence]
    if flt.sort_order == "desc":
        return [c.desc() for c in columns]
    return [c.asc() for c in columns]


_DEBIT_SUM = func.sum(
    case((Transaction.type == TransactionType.DEBIT, Transaction.amount), else_=0)
)
_CREDIT_SUM = func.sum(
    case((Transaction.type == TransactionType.CREDIT, Transaction.amount), else_=0)
)


class LedgerQueryService:
    """Read-only queries over the transactions table."""

    def __init__(self, session: AsyncSession):
        """Initialize with database session."""
        self.session = session

    async def query(self, flt: LedgerFilter) -> LedgerPage:
        """Run a ledger query.

        Totals and groups cover every matching entry; ``entries`` holds only
        the requested page.
        """
        flt.validate()
        conditions = build_conditions(flt)
        joined = and_(*conditions)

        totals = await self.session.execute(
            select(func.count(Transaction.id), _DEBIT_SUM, _CREDIT_SUM)
            .select_from(Transaction)
            .join(Member, Member.id == Transaction.member_id)
            .where(joined)
        )
        count, debit, credit = totals.one()
        total_debit = to_money(debit or 0)
        total_credit = to_money(credit or 0)
        limit = flt.page_limit

        result = await self.session.execute(
            select(Transaction)
            .join(Member, Member.id == Transaction.member_id)
            .options(contains_eager(Transaction.member))
            .where(joined)
            .order_by(*_order_by(flt))
            .offset((flt.page - 1) * limit)
            .limit(limit)
        )
        entries = list(result.scalars().all())

        net = total_debit - total_credit
        summary = LedgerSummary(
            total_count=int(count or 0),
            total_debit=total_debit,
            total_credit=total_credit,
            net=net,
            balance_type="DR" if net >= 0 else "CR",
            current_page=flt.page,
            total_pages=math.ceil((count or 0) / limit),
        )

        member_id = flt.single_member_id
        if member_id is not None:
            store = LedgerStore(self.session)
            member = await store.get_member(member_id)
            summary.opening_balance = to_money(member.opening_balance or 0)
            summary.closing_balance = await store.latest_balance(member_id)

        groups = await self._groups(flt, joined) if flt.group_by else None

        logger.debug(
            "Ledger query society=%d matched=%d page=%d groups=%s",
            flt.society_id,
            summary.total_count,
            flt.page,
            flt.group_by,
        )
        return LedgerPage(entries=entries, summary=summary, groups=groups)

    async def _groups(self, flt: LedgerFilter, joined) -> list[LedgerGroup]:
        if flt.group_by == "member":
            keys = [Transaction.member_id, Member.wing, Member.unit_no, Member.owner_name]
        elif flt.group_by == "category":
            keys = [Transaction.category]
        else:
            keys = [
                extract("year", Transaction.transaction_date).label("year"),
                extract("month", Transaction.transaction_date).label("month"),
            ]

        result = await self.session.execute(
            select(*keys, func.count(Transaction.id), _DEBIT_SUM, _CREDIT_SUM)
            .select_from(Transaction)
            .join(Member, Member.id == Transaction.member_id)
            .where(joined)
            .group_by(*keys)
            .order_by(*keys)
        )

        groups = []
        for row in result.all():
            if flt.group_by == "member":
                _, wing, unit_no, owner_name = row[:4]
                unit = f"{wing}-{unit_no}" if wing else unit_no
                key = f"{unit} {owner_name}"
            elif flt.group_by == "category":
                key = TransactionCategory(row[0]).value
            else:
                key = f"{int(row[0]):04d}-{int(row[1]):02d}"
            count, debit, credit = row[-3:]
            groups.append(
                LedgerGroup(
                    key=key,
                    count=int(count),
                    total_debit=to_money(debit or 0),
                    total_credit=to_money(credit or 0),
                )
            )
        return groups


__all__ = [
    "LedgerFilter",
    "LedgerSummary",
    "LedgerGroup",
    "LedgerPage",
    "LedgerQueryService",
    "build_conditions",
    "unit_condition",
]
