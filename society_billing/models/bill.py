"""Bill ORM model: one maintenance bill per member per billing period."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Index, Numeric, String, text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from society_billing.models import Base, BaseModel


class BillStatus(str, Enum):
    """Payment status of a bill."""

    UNPAID = "Unpaid"
    PARTIAL = "Partial"
    PAID = "Paid"
    OVERDUE = "Overdue"


# Statuses that still carry a balance to collect
OPEN_STATUSES = (BillStatus.UNPAID, BillStatus.PARTIAL, BillStatus.OVERDUE)


class Bill(Base, BaseModel):
    """
    Maintenance bill for one member and one period ("YYYY-MM").

    Amounts are frozen at generation time: ``charges`` keeps the ordered
    breakdown as a JSON list of ``{"name", "amount"}`` objects. Only one
    non-deleted bill may exist per (society, member, period). Once
    ``is_locked`` is set by period finalization the bill can no longer be
    edited, only settled by payments.

    When a new bill takes over unpaid balances as ``previous_arrears``, the
    older bills point at it through ``carried_forward_to_id`` and stop
    counting as arrears themselves; they are marked Paid once the bill that
    carries them is paid.
    """

    __tablename__ = "bills"

    society_id: Mapped[int] = mapped_column(
        ForeignKey("societies.id"),
        nullable=False,
        index=True,
    )
    member_id: Mapped[int] = mapped_column(
        ForeignKey("members.id"),
        nullable=False,
        index=True,
    )

    # Period
    period_id: Mapped[str] = mapped_column(
        String(7),
        nullable=False,
        index=True,
        comment="Billing period, YYYY-MM",
    )
    bill_month: Mapped[int] = mapped_column(nullable=False, comment="1-12")
    bill_year: Mapped[int] = mapped_column(nullable=False)

    # Amounts
    charges: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="Ordered charge breakdown",
    )
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    service_tax: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    previous_arrears: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    interest_on_arrears: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    balance_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    arrears_since: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
        comment="Due date of the oldest debt included in previous_arrears",
    )
    carried_forward_to_id: Mapped[int | None] = mapped_column(
        ForeignKey("bills.id"),
        nullable=True,
        index=True,
        comment="Later bill whose previous_arrears absorbed this bill's balance",
    )
    status: Mapped[BillStatus] = mapped_column(
        SQLEnum(BillStatus),
        nullable=False,
        default=BillStatus.UNPAID,
        index=True,
    )

    # Locking and soft delete
    is_locked: Mapped[bool] = mapped_column(nullable=False, default=False)
    is_deleted: Mapped[bool] = mapped_column(nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[int | None] = mapped_column(nullable=True)
    deletion_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Generation metadata
    generated_by: Mapped[int | None] = mapped_column(nullable=True)
    config_version: Mapped[int | None] = mapped_column(nullable=True)
    member_area: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    member: Mapped["Member"] = relationship(  # noqa: F821
        "Member",
        foreign_keys=[member_id],
    )

    __table_args__ = (
        Index(
            "uq_bill_member_period_active",
            "society_id",
            "member_id",
            "period_id",
            unique=True,
            sqlite_where=text("is_deleted = 0"),
            postgresql_where=text("is_deleted = false"),
        ),
        Index("idx_bill_society_status_due", "society_id", "status", "due_date"),
        Index("idx_bill_society_period", "society_id", "period_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Bill(id={self.id}, member_id={self.member_id}, period_id={self.period_id}, "
            f"total_amount={self.total_amount}, status={self.status}, is_locked={self.is_locked})>"
        )


__all__ = ["Bill", "BillStatus", "OPEN_STATUSES"]
