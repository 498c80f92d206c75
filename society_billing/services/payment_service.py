"""Payment recording: ledger credit plus allocation to open bills."""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from society_billing.errors import ValidationError
from society_billing.models.bill import BillStatus
from society_billing.models.transaction import (
    PaymentMode,
    Transaction,
    TransactionCategory,
    TransactionType,
)
from society_billing.services.audit_service import AuditService
from society_billing.services.bill_repository import BillRepository
from society_billing.services.ledger_service import LedgerStore, NewEntry, run_member_unit
from society_billing.services.locks import MemberLockRegistry
from society_billing.services.periods import to_money

logger = logging.getLogger(__name__)


@dataclass
class BillSettlement:
    bill_id: int
    period_id: str
    applied: Decimal
    status: BillStatus


@dataclass
class PaymentResult:
    transaction: Transaction
    new_balance: Decimal
    bills_settled: list[BillSettlement] = field(default_factory=list)


class PaymentService:
    """Record member payments.

    The credit entry and the bill allocation are written in one transaction
    under the member's lock, so the ledger balance and bill balances never
    disagree.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: MemberLockRegistry | None = None,
        max_retries: int | None = None,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.max_retries = max_retries

    async def record_payment(
        self,
        member_id: int,
        amount: Decimal,
        payment_mode: PaymentMode = PaymentMode.CASH,
        payment_date: date | None = None,
        payment_details: dict[str, Any] | None = None,
        notes: str | None = None,
        actor_id: int | None = None,
    ) -> PaymentResult:
        """Credit a payment and settle open bills, oldest period first.

        Args:
            member_id: Paying member
            amount: Amount received, positive and at most the outstanding
                ledger balance
            payment_mode: How the money was received
            payment_date: Ledger date (default today)
            payment_details: Cheque number, UPI reference and the like
            notes: Free text kept with the payment details
            actor_id: Admin recording the payment

        Returns:
            PaymentResult with the credit entry, the new ledger balance and
            the bills that received money

        Raises:
            MemberNotFoundError: If the member does not exist
            ValidationError: On a non-positive amount, nothing outstanding or
                an amount above the outstanding balance
        """
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError(f"Payment amount must be positive, got {amount}")
        payment_mode = PaymentMode(payment_mode)

        details = dict(payment_details or {})
        if notes:
            details["notes"] = notes

        async def work(session: AsyncSession) -> PaymentResult:
            store = LedgerStore(session)
            balance = await store.latest_balance(member_id)
            if balance <= 0:
                raise ValidationError(f"Member {member_id} has no outstanding balance")
            if amount > balance:
                raise ValidationError(
                    f"Payment {amount} exceeds outstanding balance {balance} "
                    f"for member {member_id}"
                )

            repository = BillRepository(session)
            bills = await repository.list_unpaid(member_id)
            transaction = await store.append(
                member_id,
                NewEntry(
                    type=TransactionType.CREDIT,
                    category=TransactionCategory.PAYMENT,
                    amount=amount,
                    description=f"Payment received ({payment_mode.value})",
                    transaction_date=payment_date,
                    bill_id=bills[0].id if bills else None,
                    period_id=bills[0].period_id if bills else None,
                    payment_mode=payment_mode,
                    payment_details=details or None,
                    created_by=actor_id,
                ),
            )

            remaining = amount
            settled = []
            for bill in bills:
                if remaining <= 0:
                    break
                applied = await repository.apply_payment(bill, remaining)
                if applied > 0:
                    settled.append(BillSettlement(bill.id, bill.period_id, applied, bill.status))
                    remaining -= applied

            AuditService.log(
                session,
                entity_type="payment",
                entity_id=transaction.id,
                action="record",
                actor_id=actor_id,
                changes={
                    "member_id": member_id,
                    "amount": str(amount),
                    "payment_mode": payment_mode.value,
                    "bills": {str(s.bill_id): str(s.applied) for s in settled},
                },
            )
            return PaymentResult(
                transaction=transaction,
                new_balance=to_money(transaction.balance_after),
                bills_settled=settled,
            )

        result = await run_member_unit(
            self.session_factory, member_id, work, self.locks, self.max_retries
        )
        logger.info(
            "Recorded payment %s for member %d (%s), balance now %s, %d bills settled",
            amount,
            member_id,
            result.transaction.transaction_ref,
            result.new_balance,
            len(result.bills_settled),
        )
        return result


__all__ = ["PaymentService", "PaymentResult", "BillSettlement"]
