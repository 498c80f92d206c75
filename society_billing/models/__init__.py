"""SQLAlchemy base model with common fields and model exports."""

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

# Base class for all models
Base = declarative_base()


class BaseModel:
    """Base model with common timestamp fields."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


# Import models to register them with Base (after Base is defined)
# This must be after Base declaration to avoid circular imports
from society_billing.models.audit_log import AuditLog  # noqa: E402
from society_billing.models.bill import Bill, BillStatus  # noqa: E402
from society_billing.models.billing_head import BillingHead, CalculationType  # noqa: E402
from society_billing.models.member import Member  # noqa: E402
from society_billing.models.society import (  # noqa: E402
    CompoundingFrequency,
    InterestMethod,
    Society,
)
from society_billing.models.transaction import (  # noqa: E402
    PaymentMode,
    Transaction,
    TransactionCategory,
    TransactionType,
)

__all__ = [
    "Base",
    "BaseModel",
    "AuditLog",
    "Bill",
    "BillStatus",
    "BillingHead",
    "CalculationType",
    "Member",
    "Society",
    "InterestMethod",
    "CompoundingFrequency",
    "Transaction",
    "TransactionType",
    "TransactionCategory",
    "PaymentMode",
]
