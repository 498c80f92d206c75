"""Bill repository: period uniqueness, locking, soft delete and settlement."""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from society_billing.errors import (
    BillNotFoundError,
    ConflictError,
    DuplicatePeriodError,
    LockedBillError,
    ValidationError,
)
from society_billing.models.bill import OPEN_STATUSES, Bill, BillStatus
from society_billing.models.transaction import (
    PaymentMode,
    Transaction,
    TransactionCategory,
    TransactionType,
)
from society_billing.services.audit_service import AuditService
from society_billing.services.ledger_service import LedgerStore, NewEntry
from society_billing.services.periods import ZERO, to_money

logger = logging.getLogger(__name__)

# Fields a caller may patch on an unlocked bill. amount_paid moves only
# through payments and previous_arrears only through carry-forward.
PATCHABLE_FIELDS = {
    "notes",
    "due_date",
    "status",
    "subtotal",
    "service_tax",
    "interest_on_arrears",
    "total_amount",
}
AMOUNT_FIELDS = {
    "subtotal",
    "service_tax",
    "interest_on_arrears",
    "total_amount",
}
DELETABLE_STATUSES = (BillStatus.UNPAID, BillStatus.OVERDUE)

VALID_TRANSITIONS = {
    BillStatus.UNPAID: {BillStatus.PARTIAL, BillStatus.PAID, BillStatus.OVERDUE},
    BillStatus.PARTIAL: {BillStatus.PAID, BillStatus.OVERDUE, BillStatus.UNPAID},
    BillStatus.PAID: {BillStatus.PARTIAL, BillStatus.UNPAID},
    BillStatus.OVERDUE: {BillStatus.PARTIAL, BillStatus.PAID, BillStatus.UNPAID},
}


def status_after_payment(total_amount: Decimal, amount_paid: Decimal) -> BillStatus:
    """Status implied by how much of a bill is paid."""
    if amount_paid >= total_amount:
        return BillStatus.PAID
    if amount_paid > 0:
        return BillStatus.PARTIAL
    return BillStatus.UNPAID


def is_valid_status_transition(current: BillStatus, new: BillStatus) -> bool:
    """Whether a bill may move from ``current`` to ``new`` (same status is a no-op)."""
    current, new = BillStatus(current), BillStatus(new)
    return current == new or new in VALID_TRANSITIONS[current]


def is_bill_period_conflict(error: IntegrityError) -> bool:
    message = str(error.orig) if error.orig is not None else str(error)
    return "uq_bill_member_period_active" in message or "bills.period_id" in message


class BillRepository:
    """Bill CRUD within one session.

    Like the ledger store, the repository flushes but never commits.
    """

    def __init__(self, session: AsyncSession):
        """Initialize with database session."""
        self.session = session

    async def get(self, bill_id: int) -> Bill:
        bill = await self.session.get(Bill, bill_id)
        if bill is None or bill.is_deleted:
            raise BillNotFoundError(f"Bill {bill_id} not found")
        return bill

    async def find_for_member_period(self, member_id: int, period_id: str) -> Bill | None:
        result = await self.session.execute(
            select(Bill).where(
                Bill.member_id == member_id,
                Bill.period_id == period_id,
                Bill.is_deleted.is_(False),
            )
        )
        return result.scalar_one_or_none()

    async def count_for_period(self, society_id: int, period_id: str) -> int:
        """Count non-deleted bills of a period."""
        result = await self.session.execute(
            select(func.count(Bill.id)).where(
                Bill.society_id == society_id,
                Bill.period_id == period_id,
                Bill.is_deleted.is_(False),
            )
        )
        return int(result.scalar() or 0)

    async def list_for_period(self, society_id: int, period_id: str) -> list[Bill]:
        result = await self.session.execute(
            select(Bill)
            .where(
                Bill.society_id == society_id,
                Bill.period_id == period_id,
                Bill.is_deleted.is_(False),
            )
            .order_by(Bill.member_id)
        )
        return list(result.scalars().all())

    async def list_unpaid(self, member_id: int, include_carried: bool = False) -> list[Bill]:
        """Member's open bills (Unpaid, Partial, Overdue), oldest period first.

        Bills already carried forward into a later bill are left out unless
        ``include_carried`` is set.
        """
        stmt = select(Bill).where(
            Bill.member_id == member_id,
            Bill.status.in_(OPEN_STATUSES),
            Bill.is_deleted.is_(False),
        )
        if not include_carried:
            stmt = stmt.where(Bill.carried_forward_to_id.is_(None))
        result = await self.session.execute(
            stmt.order_by(Bill.bill_year, Bill.bill_month, Bill.id)
        )
        return list(result.scalars().all())

    async def carry_forward(self, bills: list[Bill], into: Bill) -> None:
        """Point older open bills at the bill that took over their balance."""
        for bill in bills:
            bill.carried_forward_to_id = into.id
        await self.session.flush()

    async def _carried_into(self, bill_ids: list[int]) -> list[Bill]:
        result = await self.session.execute(
            select(Bill).where(
                Bill.carried_forward_to_id.in_(bill_ids),
                Bill.is_deleted.is_(False),
            )
        )
        return list(result.scalars().all())

    async def _settle_carried(self, bill: Bill) -> None:
        """Mark every bill carried (directly or transitively) into ``bill`` as Paid."""
        pending = [bill.id]
        while pending:
            carried = await self._carried_into(pending)
            pending = []
            for older in carried:
                if older.status != BillStatus.PAID:
                    older.amount_paid = to_money(older.total_amount)
                    older.balance_amount = ZERO
                    older.status = BillStatus.PAID
                pending.append(older.id)

    async def create(self, bill: Bill) -> Bill:
        """Insert a bill.

        Raises:
            DuplicatePeriodError: If the member already has a non-deleted
                bill for the period
        """
        existing = await self.find_for_member_period(bill.member_id, bill.period_id)
        if existing is not None:
            raise DuplicatePeriodError(
                f"Bill for member {bill.member_id} and period {bill.period_id} already exists"
            )

        bill.amount_paid = to_money(bill.amount_paid or 0)
        bill.balance_amount = to_money(bill.total_amount) - bill.amount_paid
        self.session.add(bill)
        try:
            await self.session.flush()
        except IntegrityError as e:
            if is_bill_period_conflict(e):
                raise DuplicatePeriodError(
                    f"Bill for member {bill.member_id} and period {bill.period_id} already exists"
                ) from e
            raise
        return bill

    async def update(
        self, bill_id: int, patch: dict[str, Any], actor_id: int | None = None
    ) -> Bill:
        """Patch an unlocked bill.

        A change of ``total_amount`` is posted to the member's ledger as a
        Debit or Credit Adjustment for the difference, so the caller must hold
        the member's lock.

        Raises:
            LockedBillError: If the bill is locked, whatever the patch holds
            ConflictError: On an amount change to a bill already carried
                forward into a later bill
            ValidationError: On unknown fields, negative amounts, an invalid
                status transition or a total below the amount paid
        """
        bill = await self.get(bill_id)
        if bill.is_locked:
            raise LockedBillError(f"Bill {bill_id} ({bill.period_id}) is locked")

        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot patch bill fields: {', '.join(sorted(unknown))}")
        if AMOUNT_FIELDS & set(patch) and bill.carried_forward_to_id is not None:
            raise ConflictError(
                f"Bill {bill_id} ({bill.period_id}) is carried forward into bill "
                f"{bill.carried_forward_to_id}; amend that bill instead"
            )

        old_total = to_money(bill.total_amount)
        for name, value in patch.items():
            if name in AMOUNT_FIELDS:
                value = to_money(value)
                if value < 0:
                    raise ValidationError(f"{name} must be non-negative")
            elif name == "status":
                value = BillStatus(value)
                if not is_valid_status_transition(bill.status, value):
                    raise ValidationError(
                        f"Invalid status transition {bill.status.value} -> {value.value}"
                    )
            elif name == "due_date" and not isinstance(value, date):
                raise ValidationError("due_date must be a date")
            setattr(bill, name, value)

        if AMOUNT_FIELDS & set(patch):
            bill.balance_amount = to_money(bill.total_amount) - to_money(bill.amount_paid)
            if bill.balance_amount < 0:
                raise ValidationError("total_amount is below amount_paid")

        difference = to_money(bill.total_amount) - old_total
        if difference != 0:
            await LedgerStore(self.session).append(
                bill.member_id,
                NewEntry(
                    type=TransactionType.DEBIT if difference > 0 else TransactionType.CREDIT,
                    category=TransactionCategory.ADJUSTMENT,
                    amount=abs(difference),
                    description=(
                        f"Bill {bill.period_id} amended from {old_total} "
                        f"to {to_money(bill.total_amount)}"
                    ),
                    bill_id=bill.id,
                    period_id=bill.period_id,
                    payment_mode=PaymentMode.SYSTEM,
                    created_by=actor_id,
                ),
            )
            AuditService.log(
                self.session,
                entity_type="bill",
                entity_id=bill.id,
                action="amend",
                actor_id=actor_id,
                changes={
                    "period_id": bill.period_id,
                    "old_total": str(old_total),
                    "new_total": str(to_money(bill.total_amount)),
                },
            )
            logger.info(
                "Bill %d (member %d, %s) total amended by %s",
                bill.id,
                bill.member_id,
                bill.period_id,
                difference,
            )

        await self.session.flush()
        return bill

    async def lock_period(self, society_id: int, period_id: str) -> int:
        """Lock every unlocked bill of the period.

        Idempotent: already locked bills are not counted.

        Returns:
            Number of bills locked by this call
        """
        result = await self.session.execute(
            update(Bill)
            .where(
                Bill.society_id == society_id,
                Bill.period_id == period_id,
                Bill.is_locked.is_(False),
                Bill.is_deleted.is_(False),
            )
            .values(is_locked=True, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)

    async def has_payment_entries(self, bill_id: int) -> bool:
        result = await self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.bill_id == bill_id,
                Transaction.type == TransactionType.CREDIT,
                Transaction.category == TransactionCategory.PAYMENT,
                Transaction.is_reversed.is_(False),
            )
        )
        return bool(result.scalar())

    async def delete(self, bill_id: int, reason: str, actor_id: int | None = None) -> Bill:
        """Soft-delete a bill and reverse its ledger entries.

        Raises:
            ConflictError: If the bill is locked, partly/fully paid, has
                payment entries referencing it or is carried forward into a
                later bill
        """
        if not reason or not reason.strip():
            raise ValidationError("Deletion reason is required")

        bill = await self.get(bill_id)
        if bill.is_locked:
            raise LockedBillError(f"Bill {bill_id} ({bill.period_id}) is locked")
        if bill.status not in DELETABLE_STATUSES:
            raise ConflictError(
                f"Bill {bill_id} has status {bill.status.value}; only Unpaid or Overdue "
                "bills can be deleted"
            )
        if to_money(bill.amount_paid) > 0 or await self.has_payment_entries(bill_id):
            raise ConflictError(f"Bill {bill_id} has payments recorded against it")
        if bill.carried_forward_to_id is not None:
            raise ConflictError(
                f"Bill {bill_id} ({bill.period_id}) is carried forward into bill "
                f"{bill.carried_forward_to_id}; delete that bill first"
            )

        await LedgerStore(self.session).reverse_entries_for_bill(bill_id, reason, actor_id)

        # Balances this bill carried become arrears of their own bills again
        for older in await self._carried_into([bill.id]):
            older.carried_forward_to_id = None

        bill.is_deleted = True
        bill.deleted_at = datetime.now(timezone.utc)
        bill.deleted_by = actor_id
        bill.deletion_reason = reason
        await self.session.flush()

        logger.info(
            "Deleted bill %d (member %d, %s): %s", bill.id, bill.member_id, bill.period_id, reason
        )
        return bill

    async def delete_period(
        self, society_id: int, period_id: str, reason: str, actor_id: int | None = None
    ) -> int:
        """Soft-delete every deletable bill of a period.

        Locked, paid or partly paid bills are skipped. The caller must hold
        the member locks of the period's bills, since deletion appends
        reversal entries.

        Returns:
            Number of bills deleted
        """
        deleted = 0
        for bill in await self.list_for_period(society_id, period_id):
            try:
                await self.delete(bill.id, reason, actor_id)
            except ConflictError as e:
                logger.warning("Keeping bill %d of %s: %s", bill.id, period_id, e.message)
                continue
            deleted += 1
        return deleted

    async def member_ids_for_period(self, society_id: int, period_id: str) -> list[int]:
        result = await self.session.execute(
            select(Bill.member_id)
            .where(
                Bill.society_id == society_id,
                Bill.period_id == period_id,
                Bill.is_deleted.is_(False),
            )
            .order_by(Bill.member_id)
        )
        return list(result.scalars().all())

    async def apply_payment(self, bill: Bill, amount: Decimal) -> Decimal:
        """Settle up to ``amount`` of a bill's balance.

        Settlement is allowed on locked bills; it changes only paid amount,
        balance and status.

        Returns:
            Amount actually applied (at most the bill's balance)
        """
        amount = to_money(amount)
        applied = min(amount, to_money(bill.balance_amount))
        if applied <= 0:
            return ZERO
        bill.amount_paid = to_money(bill.amount_paid) + applied
        bill.balance_amount = to_money(bill.total_amount) - bill.amount_paid
        bill.status = status_after_payment(to_money(bill.total_amount), bill.amount_paid)
        if bill.status == BillStatus.PAID:
            await self._settle_carried(bill)
        await self.session.flush()
        return applied

    async def mark_overdue(self, society_id: int, as_of: date) -> list[Bill]:
        """Flag Unpaid/Partial bills past their due date as Overdue.

        Returns:
            Bills that changed status
        """
        result = await self.session.execute(
            select(Bill).where(
                Bill.society_id == society_id,
                Bill.status.in_((BillStatus.UNPAID, BillStatus.PARTIAL)),
                Bill.due_date < as_of,
                Bill.balance_amount > 0,
                Bill.is_deleted.is_(False),
                Bill.carried_forward_to_id.is_(None),
            )
        )
        bills = list(result.scalars().all())
        for bill in bills:
            bill.status = BillStatus.OVERDUE
        await self.session.flush()
        return bills


__all__ = [
    "BillRepository",
    "status_after_payment",
    "is_valid_status_transition",
    "is_bill_period_conflict",
    "PATCHABLE_FIELDS",
]
