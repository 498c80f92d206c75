"""Billing head ORM model for configurable charge lines."""

from decimal import Decimal
from enum import Enum

from sqlalchemy import Enum as SQLEnum
from sqlalchemy import ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from society_billing.models import Base, BaseModel


class CalculationType(str, Enum):
    """How a billing head amount is derived."""

    FIXED = "Fixed"
    """Flat amount per unit"""

    PER_AREA_UNIT = "PerAreaUnit"
    """default_amount multiplied by the unit's area"""

    PERCENTAGE = "Percentage"
    """Percent of the subtotal accumulated before this head"""


class BillingHead(Base, BaseModel):
    """A named charge line configured by the society (e.g. "Parking")."""

    __tablename__ = "billing_heads"

    society_id: Mapped[int] = mapped_column(
        ForeignKey("societies.id"),
        nullable=False,
        index=True,
    )
    head_name: Mapped[str] = mapped_column(String(100), nullable=False)
    calculation_type: Mapped[CalculationType] = mapped_column(
        SQLEnum(CalculationType),
        nullable=False,
    )
    default_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 3),
        nullable=False,
        comment="Amount, rate per area unit, or percent depending on calculation_type",
    )
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    display_order: Mapped[int] = mapped_column(
        nullable=False, default=0, comment="Evaluation order; percentage heads depend on it"
    )

    society: Mapped["Society"] = relationship(  # noqa: F821
        "Society",
        back_populates="billing_heads",
    )

    __table_args__ = (
        Index("idx_billing_head_society_order", "society_id", "display_order"),
        Index("idx_billing_head_society_name", "society_id", "head_name", unique=True),
    )

    def __repr__(self) -> str:
        return (
            f"<BillingHead(id={self.id}, head_name={self.head_name!r}, "
            f"calculation_type={self.calculation_type}, default_amount={self.default_amount})>"
        )


__all__ = ["BillingHead", "CalculationType"]
