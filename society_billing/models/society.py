"""Society (tenant) ORM model holding billing policy."""

from decimal import Decimal
from enum import Enum

from sqlalchemy import Enum as SQLEnum
from sqlalchemy import Numeric, String, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, relationship

from society_billing.models import Base, BaseModel


class InterestMethod(str, Enum):
    """How interest on arrears accrues."""

    SIMPLE = "SIMPLE"
    COMPOUND = "COMPOUND"


class CompoundingFrequency(str, Enum):
    """Compounding periods for COMPOUND interest."""

    MONTHLY = "MONTHLY"
    DAILY = "DAILY"


class Society(Base, BaseModel):
    """Model representing a housing society and its billing configuration.

    Rates are per area unit (e.g. per sq ft). Percentages are plain percents
    (2 means 2%). Changing any policy field bumps ``config_version`` on flush
    so bills can record which configuration produced them.
    """

    __tablename__ = "societies"

    name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        comment="Society display name",
    )

    # Rate table (per area unit)
    maintenance_rate: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0"), comment="Maintenance per area unit"
    )
    sinking_fund_rate: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0"), comment="Sinking fund per area unit"
    )
    repair_fund_rate: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0"), comment="Repair fund per area unit"
    )

    # Fixed charges (per unit, regardless of area)
    water_charge: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    security_charge: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    electricity_charge: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )

    # Interest and tax policy
    interest_rate: Mapped[Decimal] = mapped_column(
        Numeric(7, 3),
        nullable=False,
        default=Decimal("0"),
        comment="Interest percent, applied per 30-day month",
    )
    service_tax_rate: Mapped[Decimal] = mapped_column(
        Numeric(7, 3), nullable=False, default=Decimal("0"), comment="Service tax percent"
    )
    grace_period_days: Mapped[int] = mapped_column(
        nullable=False, default=10, comment="Days after due date before interest accrues"
    )
    bill_due_day: Mapped[int] = mapped_column(
        nullable=False, default=10, comment="Day of month bills fall due (1-31)"
    )
    interest_method: Mapped[InterestMethod] = mapped_column(
        SQLEnum(InterestMethod),
        nullable=False,
        default=InterestMethod.COMPOUND,
    )
    compounding_frequency: Mapped[CompoundingFrequency] = mapped_column(
        SQLEnum(CompoundingFrequency),
        nullable=False,
        default=CompoundingFrequency.MONTHLY,
    )
    financial_year_start_month: Mapped[int] = mapped_column(
        nullable=False, default=4, comment="First month of the financial year (4 = April)"
    )
    config_version: Mapped[int] = mapped_column(nullable=False, default=1)

    # Relationships
    members: Mapped[list["Member"]] = relationship(  # noqa: F821
        "Member",
        back_populates="society",
    )
    billing_heads: Mapped[list["BillingHead"]] = relationship(  # noqa: F821
        "BillingHead",
        back_populates="society",
        order_by="BillingHead.display_order",
    )

    def __repr__(self) -> str:
        return f"<Society(id={self.id}, name={self.name!r}, config_version={self.config_version})>"


POLICY_FIELDS = (
    "maintenance_rate",
    "sinking_fund_rate",
    "repair_fund_rate",
    "water_charge",
    "security_charge",
    "electricity_charge",
    "interest_rate",
    "service_tax_rate",
    "grace_period_days",
    "bill_due_day",
    "interest_method",
    "compounding_frequency",
    "financial_year_start_month",
)


@event.listens_for(Society, "before_update")
def bump_config_version(mapper, connection, target: Society) -> None:
    state = inspect(target)
    if any(state.attrs[name].history.has_changes() for name in POLICY_FIELDS):
        target.config_version = (target.config_version or 1) + 1


__all__ = ["Society", "InterestMethod", "CompoundingFrequency", "POLICY_FIELDS"]
