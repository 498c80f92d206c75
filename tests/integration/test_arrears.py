"""Integration tests for arrears, outstanding balance and defaulters."""

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from society_billing.config import reset_settings
from society_billing.errors import MemberNotFoundError, ValidationError
from society_billing.services.arrears_service import ArrearsResolver
from society_billing.services.billing_engine import run_cycle
from society_billing.services.directory import SqlConfigProvider
from society_billing.services.payment_service import PaymentService

pytestmark = pytest.mark.integration


@pytest.fixture
async def two_months(session_factory, society, members, cycle_ctx):
    """April and May 2025 cycles, May generated before April accrues interest."""
    await run_cycle(cycle_ctx, society.id, "2025-04")
    await run_cycle(replace(cycle_ctx, as_of=date(2025, 5, 1)), society.id, "2025-05")
    return members


@pytest.fixture
async def config(session_factory, society):
    return await SqlConfigProvider(session_factory).get_config(society.id)


class TestResolve:
    async def test_no_bills(self, session_factory, member):
        async with session_factory() as session:
            summary = await ArrearsResolver(session).resolve(member.id)

        assert summary.total_arrears == Decimal("0")
        assert summary.unpaid_count == 0
        assert summary.oldest_unpaid_due_date is None
        assert summary.bills == []

    async def test_carried_bills_counted_once(self, session_factory, two_months):
        async with session_factory() as session:
            summary = await ArrearsResolver(session).resolve(two_months[0].id)

        assert summary.total_arrears == Decimal("8160.00")
        assert summary.unpaid_count == 2
        assert summary.oldest_unpaid_due_date == date(2025, 4, 10)
        assert [b.period_id for b in summary.bills] == ["2025-05"]

    async def test_paid_member_has_no_arrears(self, session_factory, society, members, cycle_ctx, locks):
        await run_cycle(cycle_ctx, society.id, "2025-04")
        await PaymentService(session_factory, locks).record_payment(members[0].id, Decimal("4080"))

        async with session_factory() as session:
            summary = await ArrearsResolver(session).resolve(members[0].id)

        assert summary.total_arrears == Decimal("0")
        assert summary.unpaid_count == 0


class TestOutstanding:
    async def test_inside_grace(self, session_factory, society, members, cycle_ctx, config):
        await run_cycle(cycle_ctx, society.id, "2025-04")

        async with session_factory() as session:
            outstanding = await ArrearsResolver(session).get_outstanding(
                members[0].id, config, as_of=date(2025, 4, 20)
            )

        assert outstanding.principal == Decimal("4080.00")
        assert outstanding.interest == Decimal("0.00")
        assert outstanding.days_overdue == 0
        assert outstanding.total == Decimal("4080.00")
        assert outstanding.oldest_unpaid_due_date == date(2025, 4, 10)

    async def test_after_grace(self, session_factory, society, members, cycle_ctx, config):
        await run_cycle(cycle_ctx, society.id, "2025-04")

        async with session_factory() as session:
            outstanding = await ArrearsResolver(session).get_outstanding(
                members[0].id, config, as_of=date(2025, 5, 25)
            )

        assert outstanding.days_overdue == 35
        assert outstanding.interest == Decimal("81.60")
        assert outstanding.total == Decimal("4161.60")

    async def test_nothing_owed(self, session_factory, member, config):
        async with session_factory() as session:
            outstanding = await ArrearsResolver(session).get_outstanding(member.id, config)

        assert outstanding.principal == Decimal("0")
        assert outstanding.total == Decimal("0")

    async def test_unknown_member(self, session_factory, society, config):
        async with session_factory() as session:
            with pytest.raises(MemberNotFoundError):
                await ArrearsResolver(session).get_outstanding(9999, config)


class TestDefaulters:
    async def test_sorted_by_arrears(self, session_factory, society, two_months):
        async with session_factory() as session:
            defaulters = await ArrearsResolver(session).list_defaulters(society.id, months_threshold=2)

        assert [(d.unit, d.total_arrears) for d in defaulters] == [
            ("B-201", Decimal("9792.00")),
            ("A-101", Decimal("8160.00")),
            ("A-102", Decimal("6528.00")),
        ]
        assert all(d.unpaid_count == 2 for d in defaulters)
        assert defaulters[0].owner_name == "Meera Iyer"
        assert defaulters[0].oldest_unpaid_due_date == date(2025, 4, 10)

    async def test_threshold_excludes(self, session_factory, society, two_months):
        async with session_factory() as session:
            assert await ArrearsResolver(session).list_defaulters(society.id, months_threshold=3) == []

    async def test_paid_member_dropped(self, session_factory, society, two_months, locks):
        await PaymentService(session_factory, locks).record_payment(two_months[1].id, Decimal("6528"))

        async with session_factory() as session:
            defaulters = await ArrearsResolver(session).list_defaulters(society.id, months_threshold=1)

        assert [d.unit for d in defaulters] == ["B-201", "A-101"]

    async def test_default_threshold_from_settings(self, session_factory, society, two_months, monkeypatch):
        monkeypatch.setenv("DEFAULTER_MONTHS_THRESHOLD", "2")
        reset_settings()

        async with session_factory() as session:
            defaulters = await ArrearsResolver(session).list_defaulters(society.id)

        assert len(defaulters) == 3

    async def test_invalid_threshold(self, session_factory, society):
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await ArrearsResolver(session).list_defaulters(society.id, months_threshold=-1)
