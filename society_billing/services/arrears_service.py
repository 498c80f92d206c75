"""Arrears resolution, outstanding balance and defaulter listing.

Arrears are the balances of a member's open bills (Unpaid, Partial,
Overdue). A bill carried forward into a later bill is still open but its
balance is already part of the later bill's ``previous_arrears``, so it is
counted as an unpaid month and never summed twice.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from society_billing.config import get_settings
from society_billing.errors import ValidationError
from society_billing.models.bill import OPEN_STATUSES, Bill
from society_billing.models.member import Member
from society_billing.services.bill_repository import BillRepository
from society_billing.services.directory import TenantConfig
from society_billing.services.interest import compute_interest, days_overdue
from society_billing.services.ledger_service import LedgerStore
from society_billing.services.periods import ZERO, to_money

logger = logging.getLogger(__name__)


@dataclass
class ArrearsSummary:
    """Open debt of one member."""

    total_arrears: Decimal = ZERO
    unpaid_count: int = 0
    oldest_unpaid_due_date: date | None = None
    bills: list[Bill] = field(default_factory=list)


@dataclass
class Outstanding:
    principal: Decimal = ZERO
    interest: Decimal = ZERO
    days_overdue: int = 0
    total: Decimal = ZERO
    oldest_unpaid_due_date: date | None = None


@dataclass
class Defaulter:
    member_id: int
    unit: str
    owner_name: str
    unpaid_count: int
    total_arrears: Decimal
    oldest_unpaid_due_date: date | None


class ArrearsResolver:
    """Read-only view of members' unpaid bills."""

    def __init__(self, session: AsyncSession):
        """Initialize with database session."""
        self.session = session

    async def resolve(self, member_id: int) -> ArrearsSummary:
        """Summarize a member's open bills.

        ``bills`` holds the bills that still carry their own balance, oldest
        period first. ``unpaid_count`` also counts bills carried forward, one
        per unpaid month.
        """
        repository = BillRepository(self.session)
        open_bills = await repository.list_unpaid(member_id, include_carried=True)
        bills = [b for b in open_bills if b.carried_forward_to_id is None]

        total = sum((to_money(b.balance_amount) for b in bills), ZERO)
        due_dates = [b.arrears_since or b.due_date for b in bills]
        return ArrearsSummary(
            total_arrears=total,
            unpaid_count=len(open_bills),
            oldest_unpaid_due_date=min(due_dates) if due_dates else None,
            bills=bills,
        )

    async def get_outstanding(
        self, member_id: int, config: TenantConfig, as_of: date | None = None
    ) -> Outstanding:
        """Ledger balance plus interest accrued since the oldest unpaid due date.

        A member in credit (or at zero) has nothing outstanding.

        Raises:
            MemberNotFoundError: If the member does not exist
        """
        as_of = as_of or date.today()
        principal = await LedgerStore(self.session).latest_balance(member_id)
        if principal <= 0:
            return Outstanding()

        summary = await self.resolve(member_id)
        oldest = summary.oldest_unpaid_due_date
        if oldest is None:
            return Outstanding(principal=principal, total=principal)

        interest = compute_interest(
            principal,
            config.interest_rate,
            oldest,
            config.grace_period_days,
            method=config.interest_method,
            compounding_frequency=config.compounding_frequency,
            as_of=as_of,
        )
        return Outstanding(
            principal=principal,
            interest=interest,
            days_overdue=days_overdue(oldest, config.grace_period_days, as_of),
            total=principal + interest,
            oldest_unpaid_due_date=oldest,
        )

    async def list_defaulters(
        self, society_id: int, months_threshold: int | None = None
    ) -> list[Defaulter]:
        """Members with at least ``months_threshold`` unpaid bills, largest arrears first."""
        threshold = months_threshold or get_settings().defaulter_months_threshold
        if threshold < 1:
            raise ValidationError("months_threshold must be >= 1")

        own_balance = case(
            (Bill.carried_forward_to_id.is_(None), Bill.balance_amount), else_=0
        )
        unpaid_count = func.count(Bill.id)
        result = await self.session.execute(
            select(
                Member.id,
                Member.wing,
                Member.unit_no,
                Member.owner_name,
                unpaid_count,
                func.sum(own_balance),
                func.min(func.coalesce(Bill.arrears_since, Bill.due_date)),
            )
            .join(Bill, Bill.member_id == Member.id)
            .where(
                Member.society_id == society_id,
                Bill.status.in_(OPEN_STATUSES),
                Bill.is_deleted.is_(False),
            )
            .group_by(Member.id, Member.wing, Member.unit_no, Member.owner_name)
            .having(unpaid_count >= threshold)
        )

        defaulters = []
        for member_id, wing, unit_no, owner_name, count, arrears, oldest in result.all():
            if isinstance(oldest, str):
                oldest = date.fromisoformat(oldest)
            defaulters.append(
                Defaulter(
                    member_id=member_id,
                    unit=f"{wing}-{unit_no}" if wing else unit_no,
                    owner_name=owner_name,
                    unpaid_count=int(count),
                    total_arrears=to_money(arrears or 0),
                    oldest_unpaid_due_date=oldest,
                )
            )
        defaulters.sort(key=lambda d: (-d.total_arrears, d.unit))
        logger.info(
            "Society %d has %d defaulters (threshold %d unpaid bills)",
            society_id,
            len(defaulters),
            threshold,
        )
        return defaulters


__all__ = ["ArrearsResolver", "ArrearsSummary", "Outstanding", "Defaulter"]
