"""Integration tests for payment recording and allocation."""

import asyncio
from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from society_billing.errors import MemberNotFoundError, ValidationError
from society_billing.models import AuditLog
from society_billing.models.bill import BillStatus
from society_billing.models.transaction import PaymentMode, TransactionCategory, TransactionType
from society_billing.services.bill_repository import BillRepository
from society_billing.services.billing_engine import run_cycle
from society_billing.services.ledger_service import LedgerStore
from society_billing.services.payment_service import PaymentService

pytestmark = pytest.mark.integration


@pytest.fixture
async def april(session_factory, society, members, cycle_ctx):
    """April 2025 bills for all three members."""
    await run_cycle(cycle_ctx, society.id, "2025-04")
    return members


@pytest.fixture
def payments(session_factory, locks):
    return PaymentService(session_factory, locks)


async def member_bills(session_factory, member_id):
    async with session_factory() as session:
        return await BillRepository(session).list_unpaid(member_id, include_carried=True)


class TestRecordPayment:
    async def test_full_payment(self, session_factory, april, payments):
        result = await payments.record_payment(
            april[0].id,
            Decimal("4080"),
            payment_mode=PaymentMode.UPI,
            payment_details={"upi_ref": "UPI123"},
            notes="April maintenance",
            actor_id=5,
        )

        txn = result.transaction
        assert txn.type == TransactionType.CREDIT
        assert txn.category == TransactionCategory.PAYMENT
        assert txn.payment_mode == PaymentMode.UPI
        assert txn.payment_details == {"upi_ref": "UPI123", "notes": "April maintenance"}
        assert txn.period_id == "2025-04"
        assert txn.created_by == 5
        assert result.new_balance == Decimal("0.00")
        assert [(s.period_id, s.applied, s.status) for s in result.bills_settled] == [
            ("2025-04", Decimal("4080.00"), BillStatus.PAID)
        ]
        assert await member_bills(session_factory, april[0].id) == []

    async def test_partial_payment(self, session_factory, april, payments):
        result = await payments.record_payment(april[1].id, Decimal("1000"))

        assert result.new_balance == Decimal("2264.00")
        assert result.bills_settled[0].status == BillStatus.PARTIAL
        (bill,) = await member_bills(session_factory, april[1].id)
        assert bill.amount_paid == Decimal("1000.00")
        assert bill.balance_amount == Decimal("2264.00")

    async def test_carried_bill_gets_nothing_directly(self, session_factory, society, april, payments, cycle_ctx):
        await payments.record_payment(april[0].id, Decimal("1000"))
        await run_cycle(replace(cycle_ctx, as_of=date(2025, 5, 1)), society.id, "2025-05")

        result = await payments.record_payment(april[0].id, Decimal("5000"))

        assert [s.period_id for s in result.bills_settled] == ["2025-05"]
        assert result.new_balance == Decimal("2160.00")

    async def test_payment_spread_oldest_first(self, session_factory, society, april, payments, cycle_ctx):
        await run_cycle(replace(cycle_ctx, as_of=date(2025, 5, 1)), society.id, "2025-05")
        async with session_factory() as session:
            async with session.begin():
                # Undo the carry so April and May each hold their own balance
                repository = BillRepository(session)
                for bill in await repository.list_unpaid(april[2].id, include_carried=True):
                    bill.carried_forward_to_id = None
                    if bill.period_id == "2025-05":
                        bill.previous_arrears = Decimal("0")
                        bill.total_amount = Decimal("4896")
                        bill.balance_amount = Decimal("4896")

        result = await payments.record_payment(april[2].id, Decimal("6000"))

        assert [(s.period_id, s.applied, s.status) for s in result.bills_settled] == [
            ("2025-04", Decimal("4896.00"), BillStatus.PAID),
            ("2025-05", Decimal("1104.00"), BillStatus.PARTIAL),
        ]

    async def test_writes_audit_entry(self, session_factory, april, payments):
        result = await payments.record_payment(april[0].id, Decimal("500"), actor_id=9)

        async with session_factory() as session:
            audit = (
                await session.execute(select(AuditLog).where(AuditLog.entity_type == "payment"))
            ).scalar_one()
        assert audit.entity_id == result.transaction.id
        assert audit.actor_id == 9
        assert audit.changes["amount"] == "500.00"

    async def test_backdated_payment_rejected(self, april, payments):
        # Cycle debits are dated today
        with pytest.raises(ValidationError, match="precedes"):
            await payments.record_payment(april[0].id, Decimal("100"), payment_date=date(2020, 1, 1))

    async def test_concurrent_payments_keep_chain(self, session_factory, april, payments):
        await asyncio.gather(*(payments.record_payment(april[0].id, Decimal("1000")) for _ in range(4)))

        async with session_factory() as session:
            store = LedgerStore(session)
            assert await store.latest_balance(april[0].id) == Decimal("80.00")
            assert await store.verify_continuity(april[0].id) == []
        (bill,) = await member_bills(session_factory, april[0].id)
        assert bill.amount_paid == Decimal("4000.00")


class TestPaymentValidation:
    @pytest.mark.parametrize("amount", ["0", "-10"])
    async def test_non_positive_amount(self, april, payments, amount):
        with pytest.raises(ValidationError, match="positive"):
            await payments.record_payment(april[0].id, Decimal(amount))

    async def test_overpayment_rejected(self, session_factory, april, payments):
        with pytest.raises(ValidationError, match="exceeds"):
            await payments.record_payment(april[0].id, Decimal("4080.01"))

        async with session_factory() as session:
            assert await LedgerStore(session).latest_balance(april[0].id) == Decimal("4080.00")

    async def test_nothing_outstanding(self, members, payments):
        with pytest.raises(ValidationError, match="no outstanding"):
            await payments.record_payment(members[0].id, Decimal("10"))

    async def test_unknown_member(self, members, payments):
        with pytest.raises(MemberNotFoundError):
            await payments.record_payment(9999, Decimal("10"))

    async def test_unknown_payment_mode(self, april, payments):
        with pytest.raises(ValueError):
            await payments.record_payment(april[0].id, Decimal("10"), payment_mode="Barter")
