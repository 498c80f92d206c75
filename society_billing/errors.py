"""Domain exceptions for billing and ledger operations.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer should answer with, so services can raise them without knowing about
FastAPI.
"""


class BillingError(Exception):
    """Base exception for billing and ledger errors."""

    code = "billing_error"
    http_status = 400

    def __init__(self, message: str, code: str | None = None, http_status: int | None = None):
        """Initialize error."""
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        super().__init__(message)


class ValidationError(BillingError):
    """Bad input: policy values, period identifiers, amounts."""

    code = "validation_error"
    http_status = 400


class InvalidPolicyError(ValidationError):
    """Tenant policy (rates, grace period, due day) is invalid."""

    code = "invalid_policy"


class InvalidPeriodError(ValidationError):
    """Period identifier is not in YYYY-MM format."""

    code = "invalid_period"


class NotFoundError(BillingError):
    """Referenced entity does not exist."""

    code = "not_found"
    http_status = 404


class SocietyNotFoundError(NotFoundError):
    code = "society_not_found"


class MemberNotFoundError(NotFoundError):
    code = "member_not_found"


class BillNotFoundError(NotFoundError):
    code = "bill_not_found"


class ConflictError(BillingError):
    """Operation conflicts with existing state. No partial change was made."""

    code = "conflict"
    http_status = 409


class DuplicatePeriodError(ConflictError):
    """A bill already exists for the member/period (or the whole period)."""

    code = "duplicate_period"


class LockedBillError(ConflictError):
    """Bill belongs to a finalized period and cannot be edited."""

    code = "bill_locked"


class ConcurrencyError(BillingError):
    """Concurrent writers kept invalidating the ledger tail."""

    code = "concurrency_error"
    http_status = 409


class StaleBalanceError(ConcurrencyError):
    """Ledger tail moved between read and write (optimistic retry signal)."""

    code = "stale_balance"


class FatalCycleError(BillingError):
    """Billing cycle cannot start at all (no members, no charge heads)."""

    code = "fatal_cycle_error"
    http_status = 422


class PerMemberError(BillingError):
    """Failure isolated to one member during a billing cycle."""

    code = "member_failed"

    def __init__(self, member_id: int, unit: str, message: str, code: str | None = None):
        self.member_id = member_id
        self.unit = unit
        super().__init__(f"{unit} (member {member_id}): {message}", code=code)


__all__ = [
    "BillingError",
    "ValidationError",
    "InvalidPolicyError",
    "InvalidPeriodError",
    "NotFoundError",
    "SocietyNotFoundError",
    "MemberNotFoundError",
    "BillNotFoundError",
    "ConflictError",
    "DuplicatePeriodError",
    "LockedBillError",
    "ConcurrencyError",
    "StaleBalanceError",
    "FatalCycleError",
    "PerMemberError",
]
