"""Audit trail of billing operations."""

from typing import Any

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from society_billing.models import Base, BaseModel


class AuditLog(Base, BaseModel):
    """One billing operation as an operator would look it up later.

    Cycle runs, period finalisation and deletion, and overdue marking are
    keyed by the society; payments by their ledger entry; bill amendments
    by the bill.
    """

    __tablename__ = "audit_logs"

    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    """"cycle", "payment" or "bill"."""

    entity_id: Mapped[int] = mapped_column(nullable=False)
    """Society id for cycle events, transaction id for payments, bill id for amendments."""

    action: Mapped[str] = mapped_column(String(30), nullable=False)
    """What happened to the entity: "run", "finalize", "delete", "mark_overdue", "record", "amend"."""

    actor_id: Mapped[int | None] = mapped_column(nullable=True)
    """Operator who triggered it; None for scheduled runs."""

    changes: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    """Outcome snapshot, e.g. {"period_id": "2025-04", "locked_count": 3}."""

    __table_args__ = (Index("idx_audit_entity", "entity_type", "entity_id"),)

    def __repr__(self) -> str:
        return (
            f"<AuditLog(id={self.id}, {self.entity_type}:{self.entity_id} {self.action}, "
            f"actor_id={self.actor_id})>"
        )


__all__ = ["AuditLog"]
