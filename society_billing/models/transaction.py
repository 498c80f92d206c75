"""Transaction ORM model: one immutable entry in a member's running ledger."""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Date, ForeignKey, Index, Numeric, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from society_billing.models import Base, BaseModel


class TransactionType(str, Enum):
    """Debit raises what the member owes, credit lowers it."""

    DEBIT = "Debit"
    CREDIT = "Credit"


class TransactionCategory(str, Enum):
    MAINTENANCE = "Maintenance"
    ARREARS = "Arrears"
    INTEREST = "Interest"
    PAYMENT = "Payment"
    ADJUSTMENT = "Adjustment"
    REFUND = "Refund"
    FINE = "Fine"
    OPENING_BALANCE = "Opening Balance"


class PaymentMode(str, Enum):
    CASH = "Cash"
    CHEQUE = "Cheque"
    ONLINE = "Online"
    UPI = "UPI"
    NEFT = "NEFT"
    RTGS = "RTGS"
    SYSTEM = "System"


class Transaction(Base, BaseModel):
    """Model representing a ledger entry for a member.

    Entries form a chain per member: ``sequence`` starts at 1 and increases
    by one per append, and ``balance_after`` is the previous entry's balance
    (or the member's opening balance) plus the amount for a debit, minus it
    for a credit. The unique (member_id, sequence) index makes two writers
    that read the same tail collide instead of forking the chain.

    Entries are never edited or removed. A correction flags the entry
    ``is_reversed`` and appends a compensating entry.
    """

    __tablename__ = "transactions"

    transaction_ref: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        unique=True,
        index=True,
        comment="Generated public identifier, e.g. TXNLZ3K9Q1ABC123",
    )
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
    sequence: Mapped[int] = mapped_column(
        nullable=False,
        comment="Position in the member's ledger chain, from 1",
    )

    transaction_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    type: Mapped[TransactionType] = mapped_column(SQLEnum(TransactionType), nullable=False)
    category: Mapped[TransactionCategory] = mapped_column(
        SQLEnum(TransactionCategory),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Running balance after this entry (positive = member owes)",
    )

    # References
    bill_id: Mapped[int | None] = mapped_column(
        ForeignKey("bills.id"),
        nullable=True,
        index=True,
    )
    period_id: Mapped[str | None] = mapped_column(String(7), nullable=True, index=True)

    # Payment details
    payment_mode: Mapped[PaymentMode | None] = mapped_column(SQLEnum(PaymentMode), nullable=True)
    payment_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_by: Mapped[int | None] = mapped_column(nullable=True, index=True)
    is_reversed: Mapped[bool] = mapped_column(nullable=False, default=False)
    reversal_ref: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
        comment="transaction_ref of the compensating entry",
    )
    financial_year: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        index=True,
        comment="e.g. FY2025-26",
    )

    member: Mapped["Member"] = relationship(  # noqa: F821
        "Member",
        foreign_keys=[member_id],
    )
    bill: Mapped["Bill | None"] = relationship(  # noqa: F821
        "Bill",
        foreign_keys=[bill_id],
    )

    __table_args__ = (
        Index("uq_transaction_member_sequence", "member_id", "sequence", unique=True),
        Index("idx_transaction_society_member_date", "society_id", "member_id", "transaction_date"),
        Index("idx_transaction_society_category_date", "society_id", "category", "transaction_date"),
        Index("idx_transaction_society_fy", "society_id", "financial_year"),
    )

    def signed_amount(self) -> Decimal:
        """Amount as it moves the running balance."""
        return self.amount if self.type == TransactionType.DEBIT else -self.amount

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, ref={self.transaction_ref}, member_id={self.member_id}, "
            f"seq={self.sequence}, type={self.type}, amount={self.amount}, "
            f"balance_after={self.balance_after})>"
        )


__all__ = ["Transaction", "TransactionType", "TransactionCategory", "PaymentMode"]
