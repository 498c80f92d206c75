"""Billing cycle orchestration.

A cycle generates one bill per member for a period:

    IDLE -> VALIDATING -> GENERATING -> AGGREGATING -> DONE | ABORTED

Validation happens before any write. During generation every member is an
independent unit of work (own session, own transaction, own timeout) so one
member's failure never affects another's bill. Cancellation is checked
before each member starts; bills already generated stay in place.

The engine keeps no state between calls: everything it needs arrives in a
``CycleContext``.
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, Mapping, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from society_billing.config import get_settings
from society_billing.errors import (
    BillingError,
    DuplicatePeriodError,
    FatalCycleError,
    PerMemberError,
    ValidationError,
)
from society_billing.models.bill import Bill
from society_billing.models.transaction import PaymentMode, TransactionCategory, TransactionType
from society_billing.services.arrears_service import ArrearsResolver
from society_billing.services.audit_service import AuditService
from society_billing.services.bill_repository import BillRepository, status_after_payment
from society_billing.services.directory import (
    ConfigProvider,
    MemberDirectory,
    MemberRecord,
    SqlConfigProvider,
    SqlMemberDirectory,
    TenantConfig,
)
from society_billing.services.interest import compute_interest
from society_billing.services.ledger_service import LedgerStore, NewEntry, run_member_unit
from society_billing.services.locks import MemberLockRegistry, get_member_locks
from society_billing.services.periods import ZERO, due_date_for_period, parse_period_id, to_money

logger = logging.getLogger(__name__)

AdHocCharges = Mapping[Union[int, str], Iterable[tuple[str, Decimal]]]


class CycleState(str, Enum):
    IDLE = "IDLE"
    VALIDATING = "VALIDATING"
    GENERATING = "GENERATING"
    AGGREGATING = "AGGREGATING"
    DONE = "DONE"
    ABORTED = "ABORTED"


@dataclass
class CycleContext:
    """Everything a cycle needs. Unset fields fall back to settings and SQL providers."""

    session_factory: async_sessionmaker[AsyncSession]
    config_provider: ConfigProvider | None = None
    member_directory: MemberDirectory | None = None
    locks: MemberLockRegistry | None = None
    as_of: date | None = None
    max_workers: int | None = None
    member_timeout: float | None = None
    max_retries: int | None = None
    cancel_event: asyncio.Event | None = None
    actor_id: int | None = None

    def __post_init__(self) -> None:
        settings = get_settings()
        if self.config_provider is None:
            self.config_provider = SqlConfigProvider(self.session_factory)
        if self.member_directory is None:
            self.member_directory = SqlMemberDirectory(self.session_factory)
        if self.locks is None:
            self.locks = get_member_locks()
        if self.max_workers is None:
            self.max_workers = settings.cycle_max_workers
        if self.member_timeout is None:
            self.member_timeout = settings.member_timeout_seconds
        if self.cancel_event is None:
            self.cancel_event = asyncio.Event()
        if self.max_workers < 1:
            raise ValidationError("max_workers must be >= 1")

    @property
    def evaluation_date(self) -> date:
        return self.as_of or date.today()


@dataclass
class FailedMember:
    member_id: int
    unit: str
    owner_name: str
    error: str
    code: str


@dataclass
class CycleResult:
    period_id: str
    state: CycleState = CycleState.IDLE
    success_count: int = 0
    failed_members: list[FailedMember] = field(default_factory=list)
    not_attempted: list[int] = field(default_factory=list)
    bills_created: list[int] = field(default_factory=list)
    total_billed: Decimal = ZERO
    total_members: int = 0


@dataclass
class FinalizeResult:
    period_id: str
    locked_count: int


def ad_hoc_for(member: MemberRecord, charges: AdHocCharges | None) -> list[tuple[str, Decimal]]:
    """Ad-hoc lines for a member, looked up by member id, then by unit label."""
    if not charges:
        return []
    lines = charges.get(member.member_id)
    if lines is None:
        lines = charges.get(member.unit_label, ())
    return list(lines)


async def generate_member_bill(
    session: AsyncSession,
    member: MemberRecord,
    config: TenantConfig,
    period_id: str,
    as_of: date,
    ad_hoc_charges: Iterable[tuple[str, Decimal]] = (),
    actor_id: int | None = None,
) -> Bill:
    """Create one member's bill and its ledger debit in the given session.

    Open bills are carried forward into the new bill as ``previous_arrears``
    and interest accrues on them from the oldest unpaid due date. The ledger
    already holds the carried debt, so only the new charges, tax and
    interest are debited.
    """
    year, month = parse_period_id(period_id)
    arrears = await ArrearsResolver(session).resolve(member.member_id)

    interest = ZERO
    if arrears.total_arrears > 0 and arrears.oldest_unpaid_due_date is not None:
        interest = compute_interest(
            arrears.total_arrears,
            config.interest_rate,
            arrears.oldest_unpaid_due_date,
            config.grace_period_days,
            method=config.interest_method,
            compounding_frequency=config.compounding_frequency,
            as_of=as_of,
        )

    charges = config.compute_charges(member, ad_hoc_charges)
    total = charges.subtotal + charges.tax + arrears.total_arrears + interest

    repository = BillRepository(session)
    bill = await repository.create(
        Bill(
            society_id=member.society_id,
            member_id=member.member_id,
            period_id=period_id,
            bill_month=month,
            bill_year=year,
            charges=charges.as_json(),
            subtotal=charges.subtotal,
            service_tax=charges.tax,
            previous_arrears=arrears.total_arrears,
            interest_on_arrears=interest,
            total_amount=total,
            amount_paid=ZERO,
            due_date=due_date_for_period(period_id, config.bill_due_day),
            arrears_since=arrears.oldest_unpaid_due_date,
            status=status_after_payment(total, ZERO),
            generated_by=actor_id,
            config_version=config.config_version,
            member_area=to_money(member.area),
        )
    )
    await repository.carry_forward(arrears.bills, bill)

    new_debt = total - arrears.total_arrears
    if new_debt > 0:
        await LedgerStore(session).append(
            member.member_id,
            NewEntry(
                type=TransactionType.DEBIT,
                category=TransactionCategory.MAINTENANCE,
                amount=new_debt,
                description=f"Maintenance bill {period_id}",
                bill_id=bill.id,
                period_id=period_id,
                payment_mode=PaymentMode.SYSTEM,
                created_by=actor_id,
            ),
        )
    return bill


async def _validate_cycle(
    ctx: CycleContext, society_id: int, period_id: str
) -> tuple[TenantConfig, list[MemberRecord]]:
    parse_period_id(period_id)

    config = await ctx.config_provider.get_config(society_id)
    config.validate()
    if not config.charge_heads():
        raise FatalCycleError(f"Society {society_id} has no active charge heads")

    members = await ctx.member_directory.list_members(society_id)
    if not members:
        raise FatalCycleError(f"Society {society_id} has no members to bill")

    async with ctx.session_factory() as session:
        existing = await BillRepository(session).count_for_period(society_id, period_id)
    if existing:
        raise DuplicatePeriodError(
            f"{existing} bills already exist for society {society_id} period {period_id}"
        )
    return config, members


async def run_cycle(
    ctx: CycleContext,
    society_id: int,
    period_id: str,
    ad_hoc_charges_by_member: AdHocCharges | None = None,
) -> CycleResult:
    """Generate the period's bills for every member of a society.

    Args:
        ctx: Session factory, providers, limits and cancellation flag
        society_id: Society to bill
        period_id: Billing period, "YYYY-MM"
        ad_hoc_charges_by_member: Extra ``(label, amount)`` lines keyed by
            member id or unit label

    Returns:
        CycleResult; state is DONE, or ABORTED if the cycle was cancelled

    Raises:
        ValidationError: On a malformed period or invalid policy
        FatalCycleError: If there are no members or no charge heads
        DuplicatePeriodError: If bills already exist for the period
    """
    result = CycleResult(period_id=period_id, state=CycleState.VALIDATING)
    logger.info("Billing cycle %s for society %d: validating", period_id, society_id)
    try:
        config, members = await _validate_cycle(ctx, society_id, period_id)
    except BillingError as e:
        result.state = CycleState.ABORTED
        logger.warning(
            "Billing cycle %s for society %d aborted: %s", period_id, society_id, e.message
        )
        raise

    result.state = CycleState.GENERATING
    result.total_members = len(members)
    as_of = ctx.evaluation_date
    semaphore = asyncio.Semaphore(ctx.max_workers)
    logger.info(
        "Billing cycle %s: generating bills for %d members (workers=%d)",
        period_id,
        len(members),
        ctx.max_workers,
    )

    async def process(member: MemberRecord) -> Bill | FailedMember | None:
        async with semaphore:
            if ctx.cancel_event.is_set():
                return None

            async def work(session: AsyncSession) -> Bill:
                return await generate_member_bill(
                    session,
                    member,
                    config,
                    period_id,
                    as_of,
                    ad_hoc_for(member, ad_hoc_charges_by_member),
                    ctx.actor_id,
                )

            try:
                return await asyncio.wait_for(
                    run_member_unit(
                        ctx.session_factory,
                        member.member_id,
                        work,
                        locks=ctx.locks,
                        max_retries=ctx.max_retries,
                    ),
                    timeout=ctx.member_timeout,
                )
            except asyncio.TimeoutError:
                error = PerMemberError(
                    member.member_id,
                    member.unit_label,
                    f"timed out after {ctx.member_timeout}s",
                    code="timeout",
                )
            except BillingError as e:
                error = PerMemberError(member.member_id, member.unit_label, e.message, code=e.code)
            except Exception as e:
                logger.exception("Unexpected error billing %s", member.unit_label)
                error = PerMemberError(
                    member.member_id, member.unit_label, str(e), code="internal_error"
                )

            logger.warning("Billing cycle %s: %s", period_id, error.message)
            return FailedMember(
                member_id=member.member_id,
                unit=member.unit_label,
                owner_name=member.owner_name,
                error=error.message,
                code=error.code,
            )

    outcomes = await asyncio.gather(*(process(m) for m in members))

    result.state = CycleState.AGGREGATING
    for member, outcome in zip(members, outcomes):
        if outcome is None:
            result.not_attempted.append(member.member_id)
        elif isinstance(outcome, FailedMember):
            result.failed_members.append(outcome)
        else:
            result.success_count += 1
            result.bills_created.append(outcome.id)
            result.total_billed += to_money(outcome.total_amount)

    async with ctx.session_factory() as session:
        async with session.begin():
            AuditService.log(
                session,
                entity_type="cycle",
                entity_id=society_id,
                action="run",
                actor_id=ctx.actor_id,
                changes={
                    "period_id": period_id,
                    "success_count": result.success_count,
                    "failed_members": [f.member_id for f in result.failed_members],
                    "not_attempted": result.not_attempted,
                    "total_billed": str(result.total_billed),
                },
            )

    result.state = CycleState.ABORTED if result.not_attempted else CycleState.DONE
    logger.info(
        "Billing cycle %s for society %d %s: %d billed, %d failed, %d not attempted, total %s",
        period_id,
        society_id,
        result.state.value,
        result.success_count,
        len(result.failed_members),
        len(result.not_attempted),
        result.total_billed,
    )
    return result


async def finalize_period(ctx: CycleContext, society_id: int, period_id: str) -> FinalizeResult:
    """Lock every bill of a period. Calling it again locks nothing new."""
    parse_period_id(period_id)
    async with ctx.session_factory() as session:
        async with session.begin():
            locked = await BillRepository(session).lock_period(society_id, period_id)
            AuditService.log(
                session,
                entity_type="cycle",
                entity_id=society_id,
                action="finalize",
                actor_id=ctx.actor_id,
                changes={"period_id": period_id, "locked_count": locked},
            )
    logger.info("Finalized %s for society %d: %d bills locked", period_id, society_id, locked)
    return FinalizeResult(period_id=period_id, locked_count=locked)


async def delete_period(
    ctx: CycleContext, society_id: int, period_id: str, reason: str
) -> int:
    """Soft-delete a period's deletable bills so the cycle can be run again.

    Holds the locks of every member billed in the period, taken in member id
    order, for the single transaction that deletes and reverses.

    Returns:
        Number of bills deleted
    """
    parse_period_id(period_id)
    if not reason or not reason.strip():
        raise ValidationError("Deletion reason is required")

    async with ctx.session_factory() as session:
        member_ids = await BillRepository(session).member_ids_for_period(society_id, period_id)

    async with AsyncExitStack() as stack:
        for member_id in member_ids:
            await stack.enter_async_context(ctx.locks.hold(member_id))
        async with ctx.session_factory() as session:
            async with session.begin():
                deleted = await BillRepository(session).delete_period(
                    society_id, period_id, reason, ctx.actor_id
                )
                AuditService.log(
                    session,
                    entity_type="cycle",
                    entity_id=society_id,
                    action="delete",
                    actor_id=ctx.actor_id,
                    changes={"period_id": period_id, "deleted": deleted, "reason": reason},
                )

    logger.info("Deleted %d bills of %s for society %d", deleted, period_id, society_id)
    return deleted


async def mark_overdue(ctx: CycleContext, society_id: int) -> list[Bill]:
    """Flag the society's bills past due as of ``ctx.as_of`` (default today)."""
    as_of = ctx.evaluation_date
    async with ctx.session_factory() as session:
        async with session.begin():
            bills = await BillRepository(session).mark_overdue(society_id, as_of)
            if bills:
                AuditService.log(
                    session,
                    entity_type="cycle",
                    entity_id=society_id,
                    action="mark_overdue",
                    actor_id=ctx.actor_id,
                    changes={"as_of": as_of.isoformat(), "bill_ids": [b.id for b in bills]},
                )
    logger.info("Marked %d bills overdue for society %d as of %s", len(bills), society_id, as_of)
    return bills


__all__ = [
    "CycleState",
    "CycleContext",
    "CycleResult",
    "FailedMember",
    "FinalizeResult",
    "run_cycle",
    "finalize_period",
    "delete_period",
    "mark_overdue",
    "generate_member_bill",
    "ad_hoc_for",
]
