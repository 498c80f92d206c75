"""Audit entries written alongside billing changes."""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from society_billing.models.audit_log import AuditLog


class AuditService:
    """Adds audit rows to the session that makes the change.

    Nothing is flushed here; the row commits or rolls back with the cycle,
    payment or amendment it records.
    """

    @staticmethod
    def log(
        session: AsyncSession,
        entity_type: str,
        entity_id: int,
        action: str,
        actor_id: int | None = None,
        changes: dict[str, Any] | None = None,
    ) -> AuditLog:
        """Record a billing operation.

        Args:
            session: Session holding the change being audited
            entity_type: "cycle", "payment" or "bill"
            entity_id: Society, transaction or bill id matching ``entity_type``
            action: Operation name, e.g. "run" or "record"
            actor_id: Operator, None for unattended runs
            changes: JSON-serializable outcome (amounts as strings)
        """
        entry = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            changes=changes,
        )
        session.add(entry)
        return entry


__all__ = ["AuditService"]
