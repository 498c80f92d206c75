"""Tenant configuration and member directory providers.

The billing engine consumes configuration and members through the two
protocols below. The SQL-backed implementations read the ``societies``,
``billing_heads`` and ``members`` tables; callers with another source of
truth can pass their own objects.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from society_billing.errors import InvalidPolicyError, SocietyNotFoundError
from society_billing.models.billing_head import BillingHead, CalculationType
from society_billing.models.member import Member
from society_billing.models.society import CompoundingFrequency, InterestMethod, Society
from society_billing.services.charges import ChargeHead, ChargeResult, compute_charges

logger = logging.getLogger(__name__)

MAX_GRACE_PERIOD_DAYS = 90


@dataclass(frozen=True)
class MemberRecord:
    """Billable unit as seen by the engine."""

    member_id: int
    society_id: int
    unit_no: str
    area: Decimal
    wing: str = ""
    owner_name: str = ""
    opening_balance: Decimal = Decimal("0")

    @property
    def unit_label(self) -> str:
        return f"{self.wing}-{self.unit_no}" if self.wing else self.unit_no

    @classmethod
    def from_model(cls, member: Member) -> "MemberRecord":
        return cls(
            member_id=member.id,
            society_id=member.society_id,
            unit_no=member.unit_no,
            area=member.area,
            wing=member.wing or "",
            owner_name=member.owner_name,
            opening_balance=member.opening_balance or Decimal("0"),
        )


@dataclass
class TenantConfig:
    """Billing policy of one society."""

    society_id: int
    maintenance_rate: Decimal = Decimal("0")
    sinking_fund_rate: Decimal = Decimal("0")
    repair_fund_rate: Decimal = Decimal("0")
    water_charge: Decimal = Decimal("0")
    security_charge: Decimal = Decimal("0")
    electricity_charge: Decimal = Decimal("0")
    interest_rate: Decimal = Decimal("0")
    service_tax_rate: Decimal = Decimal("0")
    grace_period_days: int = 10
    bill_due_day: int = 10
    interest_method: InterestMethod = InterestMethod.COMPOUND
    compounding_frequency: CompoundingFrequency = CompoundingFrequency.MONTHLY
    financial_year_start_month: int = 4
    config_version: int = 1
    billing_heads: list[ChargeHead] = field(default_factory=list)

    def validate(self) -> None:
        """Check policy invariants.

        Raises:
            InvalidPolicyError: On negative rates/percentages, grace period
                outside 0-90 days, due day outside 1-31 or financial year
                start month outside 1-12
        """
        for name in (
            "maintenance_rate",
            "sinking_fund_rate",
            "repair_fund_rate",
            "water_charge",
            "security_charge",
            "electricity_charge",
            "interest_rate",
            "service_tax_rate",
        ):
            if Decimal(getattr(self, name)) < 0:
                raise InvalidPolicyError(f"{name} must be non-negative")
        for head in self.billing_heads:
            if head.amount < 0:
                raise InvalidPolicyError(f"Billing head {head.name!r} must be non-negative")
        if not 0 <= self.grace_period_days <= MAX_GRACE_PERIOD_DAYS:
            raise InvalidPolicyError(
                f"grace_period_days must be between 0 and {MAX_GRACE_PERIOD_DAYS}, "
                f"got {self.grace_period_days}"
            )
        if not 1 <= self.bill_due_day <= 31:
            raise InvalidPolicyError(f"bill_due_day must be 1-31, got {self.bill_due_day}")
        if not 1 <= self.financial_year_start_month <= 12:
            raise InvalidPolicyError(
                f"financial_year_start_month must be 1-12, got {self.financial_year_start_month}"
            )

    def charge_heads(self) -> list[ChargeHead]:
        """Active charge heads in evaluation order.

        Rate-based heads first, then fixed charges, then the society's own
        billing heads. Zero-valued built-in heads are left out.
        """
        heads: list[ChargeHead] = []
        for name, rate in (
            ("Maintenance", self.maintenance_rate),
            ("Sinking Fund", self.sinking_fund_rate),
            ("Repair Fund", self.repair_fund_rate),
        ):
            if rate > 0:
                heads.append(ChargeHead(name, CalculationType.PER_AREA_UNIT, Decimal(rate)))
        for name, amount in (
            ("Water", self.water_charge),
            ("Security", self.security_charge),
            ("Electricity", self.electricity_charge),
        ):
            if amount > 0:
                heads.append(ChargeHead(name, CalculationType.FIXED, Decimal(amount)))
        heads.extend(self.billing_heads)
        return heads

    def compute_charges(
        self, member: MemberRecord, ad_hoc_charges: Iterable[tuple[str, Decimal]] = ()
    ) -> ChargeResult:
        """Charge breakdown for one member under this policy."""
        return compute_charges(
            area=member.area,
            heads=self.charge_heads(),
            service_tax_rate=self.service_tax_rate,
            ad_hoc_charges=ad_hoc_charges,
        )


class ConfigProvider(Protocol):
    async def get_config(self, society_id: int) -> TenantConfig: ...


class MemberDirectory(Protocol):
    async def list_members(self, society_id: int) -> list[MemberRecord]: ...


class SqlConfigProvider:
    """Load TenantConfig from the societies and billing_heads tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_config(self, society_id: int) -> TenantConfig:
        async with self.session_factory() as session:
            society = await session.get(Society, society_id)
            if society is None:
                raise SocietyNotFoundError(f"Society {society_id} not found")

            result = await session.execute(
                select(BillingHead)
                .where(BillingHead.society_id == society_id, BillingHead.is_active.is_(True))
                .order_by(BillingHead.display_order, BillingHead.id)
            )
            heads = [
                ChargeHead(h.head_name, CalculationType(h.calculation_type), h.default_amount)
                for h in result.scalars().all()
            ]

        return TenantConfig(
            society_id=society.id,
            maintenance_rate=society.maintenance_rate,
            sinking_fund_rate=society.sinking_fund_rate,
            repair_fund_rate=society.repair_fund_rate,
            water_charge=society.water_charge,
            security_charge=society.security_charge,
            electricity_charge=society.electricity_charge,
            interest_rate=society.interest_rate,
            service_tax_rate=society.service_tax_rate,
            grace_period_days=society.grace_period_days,
            bill_due_day=society.bill_due_day,
            interest_method=InterestMethod(society.interest_method),
            compounding_frequency=CompoundingFrequency(society.compounding_frequency),
            financial_year_start_month=society.financial_year_start_month,
            config_version=society.config_version,
            billing_heads=heads,
        )


class SqlMemberDirectory:
    """List members from the members table, ordered by wing and unit."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def list_members(self, society_id: int) -> list[MemberRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Member)
                .where(Member.society_id == society_id)
                .order_by(Member.wing, Member.unit_no)
            )
            members = [MemberRecord.from_model(m) for m in result.scalars().all()]
        logger.debug("Listed %d members for society %d", len(members), society_id)
        return members


__all__ = [
    "MemberRecord",
    "TenantConfig",
    "ConfigProvider",
    "MemberDirectory",
    "SqlConfigProvider",
    "SqlMemberDirectory",
    "MAX_GRACE_PERIOD_DAYS",
]
