"""Member ORM model: one billable unit (flat) in a society."""

from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from society_billing.models import Base, BaseModel


class Member(Base, BaseModel):
    """Model representing a billable unit and its owner.

    Managed by the member directory; read-only to the billing engine.
    """

    __tablename__ = "members"

    society_id: Mapped[int] = mapped_column(
        ForeignKey("societies.id"),
        nullable=False,
        index=True,
    )
    wing: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="",
        comment="Building wing (may be empty)",
    )
    unit_no: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="Room/flat number",
    )
    owner_name: Mapped[str] = mapped_column(String(200), nullable=False)
    area: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Area used for per-area-unit charges",
    )
    opening_balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0"),
        comment="Ledger balance before the first entry (positive = owes)",
    )
    contact: Mapped[str | None] = mapped_column(String(100), nullable=True)

    society: Mapped["Society"] = relationship(  # noqa: F821
        "Society",
        back_populates="members",
    )

    __table_args__ = (
        Index("idx_member_society_unit", "society_id", "wing", "unit_no", unique=True),
    )

    @property
    def unit_label(self) -> str:
        """Human-readable unit identifier, e.g. "A-101"."""
        return f"{self.wing}-{self.unit_no}" if self.wing else self.unit_no

    def __repr__(self) -> str:
        return f"<Member(id={self.id}, unit={self.unit_label!r}, owner={self.owner_name!r})>"


__all__ = ["Member"]
