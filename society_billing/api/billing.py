"""Billing API endpoints.

Thin layer over the services: request parsing, response schemas and error
translation. Domain errors keep their status (400/404/409/422) and answer
with ``{"detail": {"code": ..., "message": ...}}``.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from society_billing.errors import BillingError
from society_billing.models.bill import BillStatus
from society_billing.models.transaction import PaymentMode, TransactionCategory, TransactionType
from society_billing.services import get_session_factory
from society_billing.services.arrears_service import ArrearsResolver
from society_billing.services.billing_engine import (
    CycleContext,
    CycleState,
    delete_period,
    finalize_period,
    mark_overdue,
    run_cycle,
)
from society_billing.services.directory import SqlConfigProvider
from society_billing.services.ledger_query import LedgerFilter, LedgerQueryService
from society_billing.services.ledger_service import LedgerStore
from society_billing.services.locks import MemberLockRegistry, get_member_locks
from society_billing.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])

Money = Annotated[Decimal, PlainSerializer(lambda v: f"{v:.2f}", return_type=str)]


def billing_http_error(error: BillingError) -> HTTPException:
    """HTTPException carrying a domain error's status, code and message."""
    return HTTPException(
        status_code=error.http_status,
        detail={"code": error.code, "message": error.message},
    )


def server_error() -> HTTPException:
    return HTTPException(
        status_code=500, detail={"code": "internal_error", "message": "Server error"}
    )


# Request schemas
class AdHocChargeItem(BaseModel):
    label: str
    amount: Decimal = Field(ge=0)


class RunCycleRequest(BaseModel):
    """Body of a cycle run. ``ad_hoc_charges`` keys are member ids or unit labels."""

    as_of: date | None = None
    actor_id: int | None = None
    ad_hoc_charges: dict[str, list[AdHocChargeItem]] | None = None


class AsOfRequest(BaseModel):
    as_of: date | None = None
    actor_id: int | None = None


class PaymentRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    payment_mode: PaymentMode = PaymentMode.CASH
    payment_date: date | None = None
    payment_details: dict[str, Any] | None = None
    notes: str | None = None
    actor_id: int | None = None


class LedgerQueryRequest(BaseModel):
    """Ledger filters; every field is optional."""

    member_ids: list[int] | None = None
    category: TransactionCategory | None = None
    type: TransactionType | None = None
    start_date: date | None = None
    end_date: date | None = None
    month: int | None = None
    year: int | None = None
    period_id: str | None = None
    wings: list[str] | None = None
    unit_pattern: str | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    payment_mode: PaymentMode | None = None
    financial_year: str | None = None
    created_by: int | None = None
    include_reversed: bool = False
    only_reversed: bool = False
    balance_status: str | None = None
    group_by: str | None = None
    sort_by: str = "date"
    sort_order: str = "desc"
    page: int = 1
    limit: int | None = None


# Response schemas
class FailedMemberResponse(BaseModel):
    member_id: int
    unit: str
    owner_name: str
    error: str
    code: str

    model_config = ConfigDict(from_attributes=True)


class CycleResponse(BaseModel):
    period_id: str
    state: CycleState
    success_count: int
    failed_members: list[FailedMemberResponse]
    not_attempted: list[int]
    bills_created: list[int]
    total_billed: Money
    total_members: int

    model_config = ConfigDict(from_attributes=True)


class FinalizeResponse(BaseModel):
    period_id: str
    locked_count: int

    model_config = ConfigDict(from_attributes=True)


class DeletePeriodResponse(BaseModel):
    period_id: str
    deleted_count: int


class OutstandingResponse(BaseModel):
    member_id: int
    principal: Money
    interest: Money
    days_overdue: int
    total: Money
    oldest_unpaid_due_date: date | None = None

    model_config = ConfigDict(from_attributes=True)


class TransactionResponse(BaseModel):
    """Ledger entry as returned by queries and payments."""

    id: int
    transaction_ref: str
    member_id: int
    sequence: int
    transaction_date: date
    type: TransactionType
    category: TransactionCategory
    description: str
    amount: Money
    balance_after: Money
    bill_id: int | None
    period_id: str | None
    payment_mode: PaymentMode | None
    financial_year: str
    is_reversed: bool
    reversal_ref: str | None

    model_config = ConfigDict(from_attributes=True)


class LedgerSummaryResponse(BaseModel):
    total_count: int
    total_debit: Money
    total_credit: Money
    net: Money
    balance_type: str
    opening_balance: Money
    closing_balance: Money | None
    current_page: int
    total_pages: int

    model_config = ConfigDict(from_attributes=True)


class LedgerGroupResponse(BaseModel):
    key: str
    count: int
    total_debit: Money
    total_credit: Money
    net: Money

    model_config = ConfigDict(from_attributes=True)


class LedgerQueryResponse(BaseModel):
    entries: list[TransactionResponse]
    total_count: int
    summary: LedgerSummaryResponse
    groups: list[LedgerGroupResponse] | None = None


class BillSettlementResponse(BaseModel):
    bill_id: int
    period_id: str
    applied: Money
    status: BillStatus

    model_config = ConfigDict(from_attributes=True)


class PaymentResponse(BaseModel):
    transaction: TransactionResponse
    new_balance: Money
    bills_settled: list[BillSettlementResponse]

    model_config = ConfigDict(from_attributes=True)


class BillResponse(BaseModel):
    id: int
    member_id: int
    period_id: str
    total_amount: Money
    balance_amount: Money
    due_date: date
    status: BillStatus
    is_locked: bool

    model_config = ConfigDict(from_attributes=True)


class MarkOverdueResponse(BaseModel):
    marked_count: int
    bills: list[BillResponse]


class DefaulterResponse(BaseModel):
    member_id: int
    unit: str
    owner_name: str
    unpaid_count: int
    total_arrears: Money
    oldest_unpaid_due_date: date | None

    model_config = ConfigDict(from_attributes=True)


def _ad_hoc_by_member(
    charges: dict[str, list[AdHocChargeItem]] | None,
) -> dict[int | str, list[tuple[str, Decimal]]] | None:
    """JSON keys are strings: numeric keys count as member ids and as unit labels."""
    if not charges:
        return None
    by_member: dict[int | str, list[tuple[str, Decimal]]] = {}
    for key, items in charges.items():
        lines = [(item.label, item.amount) for item in items]
        by_member[key] = lines
        if key.isdigit():
            by_member[int(key)] = lines
    return by_member


@router.post("/societies/{society_id}/cycles/{period_id}", response_model=CycleResponse)
async def run_billing_cycle(
    society_id: int,
    period_id: str,
    request: RunCycleRequest | None = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),  # noqa: B008
    locks: MemberLockRegistry = Depends(get_member_locks),  # noqa: B008
) -> CycleResponse:
    """Generate the period's bills for every member of the society."""
    request = request or RunCycleRequest()
    ctx = CycleContext(
        session_factory=session_factory,
        locks=locks,
        as_of=request.as_of,
        actor_id=request.actor_id,
    )
    try:
        result = await run_cycle(
            ctx, society_id, period_id, _ad_hoc_by_member(request.ad_hoc_charges)
        )
        return CycleResponse.model_validate(result)
    except BillingError as e:
        raise billing_http_error(e) from e
    except Exception as e:
        logger.error(
            "Error running cycle %s for society %d: %s", period_id, society_id, e, exc_info=True
        )
        raise server_error() from e


@router.post(
    "/societies/{society_id}/cycles/{period_id}/finalize", response_model=FinalizeResponse
)
async def finalize_billing_period(
    society_id: int,
    period_id: str,
    request: AsOfRequest | None = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),  # noqa: B008
) -> FinalizeResponse:
    """Lock the period's bills."""
    request = request or AsOfRequest()
    ctx = CycleContext(session_factory=session_factory, actor_id=request.actor_id)
    try:
        result = await finalize_period(ctx, society_id, period_id)
        return FinalizeResponse.model_validate(result)
    except BillingError as e:
        raise billing_http_error(e) from e
    except Exception as e:
        logger.error(
            "Error finalizing %s for society %d: %s", period_id, society_id, e, exc_info=True
        )
        raise server_error() from e


@router.delete(
    "/societies/{society_id}/cycles/{period_id}", response_model=DeletePeriodResponse
)
async def delete_billing_period(
    society_id: int,
    period_id: str,
    reason: str = Query(..., min_length=1),
    actor_id: int | None = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),  # noqa: B008
    locks: MemberLockRegistry = Depends(get_member_locks),  # noqa: B008
) -> DeletePeriodResponse:
    """Soft-delete the period's deletable bills and reverse their ledger entries."""
    ctx = CycleContext(session_factory=session_factory, locks=locks, actor_id=actor_id)
    try:
        deleted = await delete_period(ctx, society_id, period_id, reason)
        return DeletePeriodResponse(period_id=period_id, deleted_count=deleted)
    except BillingError as e:
        raise billing_http_error(e) from e
    except Exception as e:
        logger.error(
            "Error deleting %s for society %d: %s", period_id, society_id, e, exc_info=True
        )
        raise server_error() from e


@router.post(
    "/societies/{society_id}/bills/mark-overdue", response_model=MarkOverdueResponse
)
async def mark_bills_overdue(
    society_id: int,
    request: AsOfRequest | None = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),  # noqa: B008
) -> MarkOverdueResponse:
    request = request or AsOfRequest()
    ctx = CycleContext(
        session_factory=session_factory, as_of=request.as_of, actor_id=request.actor_id
    )
    try:
        bills = await mark_overdue(ctx, society_id)
        return MarkOverdueResponse(
            marked_count=len(bills),
            bills=[BillResponse.model_validate(b) for b in bills],
        )
    except BillingError as e:
        raise billing_http_error(e) from e
    except Exception as e:
        logger.error("Error marking overdue for society %d: %s", society_id, e, exc_info=True)
        raise server_error() from e


@router.get("/societies/{society_id}/defaulters", response_model=list[DefaulterResponse])
async def list_defaulters(
    society_id: int,
    months_threshold: int | None = Query(default=None, ge=1),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),  # noqa: B008
) -> list[DefaulterResponse]:
    """Members with at least ``months_threshold`` unpaid bills."""
    try:
        async with session_factory() as session:
            defaulters = await ArrearsResolver(session).list_defaulters(
                society_id, months_threshold
            )
        return [DefaulterResponse.model_validate(d) for d in defaulters]
    except BillingError as e:
        raise billing_http_error(e) from e
    except Exception as e:
        logger.error("Error listing defaulters for society %d: %s", society_id, e, exc_info=True)
        raise server_error() from e


@router.post("/societies/{society_id}/ledger/query", response_model=LedgerQueryResponse)
async def query_ledger(
    society_id: int,
    request: LedgerQueryRequest | None = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),  # noqa: B008
) -> LedgerQueryResponse:
    """Filtered, grouped and paginated ledger entries with totals."""
    request = request or LedgerQueryRequest()
    try:
        flt = LedgerFilter(society_id=society_id, **request.model_dump())
        async with session_factory() as session:
            page = await LedgerQueryService(session).query(flt)
            return LedgerQueryResponse(
                entries=[TransactionResponse.model_validate(t) for t in page.entries],
                total_count=page.total_count,
                summary=LedgerSummaryResponse.model_validate(page.summary),
                groups=(
                    [LedgerGroupResponse.model_validate(g) for g in page.groups]
                    if page.groups is not None
                    else None
                ),
            )
    except BillingError as e:
        raise billing_http_error(e) from e
    except Exception as e:
        logger.error("Error querying ledger for society %d: %s", society_id, e, exc_info=True)
        raise server_error() from e


@router.get("/members/{member_id}/outstanding", response_model=OutstandingResponse)
async def get_outstanding(
    member_id: int,
    as_of: date | None = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),  # noqa: B008
) -> OutstandingResponse:
    """Ledger balance plus interest accrued as of a date (default today)."""
    try:
        async with session_factory() as session:
            member = await LedgerStore(session).get_member(member_id)
            config = await SqlConfigProvider(session_factory).get_config(member.society_id)
            outstanding = await ArrearsResolver(session).get_outstanding(member_id, config, as_of)
        return OutstandingResponse(
            member_id=member_id,
            principal=outstanding.principal,
            interest=outstanding.interest,
            days_overdue=outstanding.days_overdue,
            total=outstanding.total,
            oldest_unpaid_due_date=outstanding.oldest_unpaid_due_date,
        )
    except BillingError as e:
        raise billing_http_error(e) from e
    except Exception as e:
        logger.error("Error computing outstanding for member %d: %s", member_id, e, exc_info=True)
        raise server_error() from e


@router.post("/members/{member_id}/payments", response_model=PaymentResponse, status_code=201)
async def record_payment(
    member_id: int,
    request: PaymentRequest,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),  # noqa: B008
    locks: MemberLockRegistry = Depends(get_member_locks),  # noqa: B008
) -> PaymentResponse:
    """Record a payment and settle open bills oldest first."""
    try:
        result = await PaymentService(session_factory, locks).record_payment(
            member_id,
            request.amount,
            payment_mode=request.payment_mode,
            payment_date=request.payment_date,
            payment_details=request.payment_details,
            notes=request.notes,
            actor_id=request.actor_id,
        )
        return PaymentResponse.model_validate(result)
    except BillingError as e:
        raise billing_http_error(e) from e
    except Exception as e:
        logger.error("Error recording payment for member %d: %s", member_id, e, exc_info=True)
        raise server_error() from e


__all__ = ["router", "billing_http_error"]
