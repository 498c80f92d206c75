"""Shared fixtures: temporary SQLite database, seeded society and members."""

from datetime import date
from decimal import Decimal

import pytest

from society_billing.config import reset_settings
from society_billing.models import Member, Society
from society_billing.services import create_engine_for_url, create_session_factory, init_db
from society_billing.services.billing_engine import CycleContext
from society_billing.services.locks import MemberLockRegistry


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Point settings at the test's temp dir so nothing touches the working tree."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'app.db'}")
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "logs" / "server.log"))
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def db_url(tmp_path):
    # File based so concurrent sessions see each other's commits
    return f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}"


@pytest.fixture
async def engine(db_url):
    engine = create_engine_for_url(db_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def locks():
    """Fresh lock registry per test (asyncio locks belong to one event loop)."""
    return MemberLockRegistry()


@pytest.fixture
async def society(session_factory):
    """Society billing 3/sq ft maintenance, 1/sq ft sinking fund and 2% tax."""
    society = Society(
        name="Green Park CHS",
        maintenance_rate=Decimal("3"),
        sinking_fund_rate=Decimal("1"),
        service_tax_rate=Decimal("2"),
        interest_rate=Decimal("2"),
        grace_period_days=10,
        bill_due_day=10,
    )
    async with session_factory() as session:
        async with session.begin():
            session.add(society)
    return society


@pytest.fixture
async def members(session_factory, society):
    """Three units: A-101 (1000 sq ft), A-102 (800) and B-201 (1200)."""
    rows = [
        Member(society_id=society.id, wing="A", unit_no="101", owner_name="Asha Rao", area=Decimal("1000")),
        Member(society_id=society.id, wing="A", unit_no="102", owner_name="Vikram Shah", area=Decimal("800")),
        Member(society_id=society.id, wing="B", unit_no="201", owner_name="Meera Iyer", area=Decimal("1200")),
    ]
    async with session_factory() as session:
        async with session.begin():
            session.add_all(rows)
    return rows


@pytest.fixture
def member(members):
    return members[0]


@pytest.fixture
def cycle_ctx(session_factory, locks):
    return CycleContext(
        session_factory=session_factory,
        locks=locks,
        as_of=date(2025, 4, 1),
        max_workers=4,
        member_timeout=10.0,
    )
