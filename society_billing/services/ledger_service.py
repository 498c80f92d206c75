"""Ledger store: the single append path for member transactions.

Every entry that moves a member's balance goes through ``LedgerStore.append``
so the running-balance chain is maintained in one place:

    balance_after[i] = balance_after[i-1] + amount  (Debit)
    balance_after[i] = balance_after[i-1] - amount  (Credit)
    balance_after[0] = opening_balance +/- amount

Writers are serialized per member in two layers. ``run_member_unit`` holds
the member's asyncio lock for the whole database transaction, and the
``(member_id, sequence)`` unique index turns a lost race with another
process into ``StaleBalanceError``, which ``run_member_unit`` retries with a
fresh read.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Awaitable, Callable, NamedTuple, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from society_billing.config import get_settings
from society_billing.errors import (
    ConcurrencyError,
    MemberNotFoundError,
    StaleBalanceError,
    ValidationError,
)
from society_billing.models.member import Member
from society_billing.models.society import Society
from society_billing.models.transaction import (
    PaymentMode,
    Transaction,
    TransactionCategory,
    TransactionType,
)
from society_billing.services.locks import MemberLockRegistry, get_member_locks
from society_billing.services.periods import financial_year_label, to_money

logger = logging.getLogger(__name__)

T = TypeVar("T")

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_transaction_ref() -> str:
    """Public transaction id: TXN + base36 millis + 6 random chars."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"TXN{_to_base36(int(time.time() * 1000))}{suffix}"


def is_sequence_conflict(error: IntegrityError) -> bool:
    """True if the integrity error came from the (member_id, sequence) key."""
    message = str(error.orig) if error.orig is not None else str(error)
    return "uq_transaction_member_sequence" in message or "transactions.sequence" in message


@dataclass
class NewEntry:
    """Entry to append; balance and sequence are filled in by the store."""

    type: TransactionType
    category: TransactionCategory
    amount: Decimal
    description: str
    transaction_date: date | None = None
    bill_id: int | None = None
    period_id: str | None = None
    payment_mode: PaymentMode | None = None
    payment_details: dict[str, Any] | None = None
    created_by: int | None = None


class ContinuityBreak(NamedTuple):
    """A ledger entry whose stored balance does not follow from its predecessor."""

    sequence: int
    transaction_ref: str
    expected_balance: Decimal
    stored_balance: Decimal


class LedgerStore:
    """Append and read a member's ledger within one session.

    The store never commits; the caller owns the transaction so a bill and
    its ledger entry land together.
    """

    def __init__(self, session: AsyncSession):
        """Initialize with database session."""
        self.session = session

    async def get_member(self, member_id: int) -> Member:
        member = await self.session.get(Member, member_id)
        if member is None:
            raise MemberNotFoundError(f"Member {member_id} not found")
        return member

    async def tail(self, member_id: int) -> Transaction | None:
        """Last entry of the member's chain (highest sequence), reversed or not."""
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.member_id == member_id)
            .order_by(Transaction.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_balance(self, member_id: int) -> Decimal:
        """Balance of the most recent non-reversed entry, else the opening balance.

        Raises:
            MemberNotFoundError: If the member does not exist
        """
        member = await self.get_member(member_id)
        result = await self.session.execute(
            select(Transaction.balance_after)
            .where(Transaction.member_id == member_id, Transaction.is_reversed.is_(False))
            .order_by(Transaction.sequence.desc())
            .limit(1)
        )
        balance = result.scalar_one_or_none()
        if balance is None:
            return to_money(member.opening_balance or 0)
        return to_money(balance)

    async def append(self, member_id: int, entry: NewEntry) -> Transaction:
        """Append an entry to the member's chain and flush it.

        Args:
            member_id: Member whose ledger receives the entry
            entry: Entry data; ``transaction_date`` defaults to today (or the
                tail's date if that is later)

        Returns:
            Stored Transaction with sequence and balance_after set

        Raises:
            MemberNotFoundError: If the member does not exist
            ValidationError: On non-positive amount or an entry dated before
                the member's last entry
            StaleBalanceError: If another writer appended the same sequence
                first; the session must be rolled back
        """
        amount = to_money(entry.amount)
        if amount <= 0:
            raise ValidationError(f"Ledger amount must be positive, got {amount}")

        member = await self.get_member(member_id)
        last = await self.tail(member_id)

        if last is None:
            sequence = 1
            previous_balance = to_money(member.opening_balance or 0)
        else:
            sequence = last.sequence + 1
            previous_balance = to_money(last.balance_after)

        entry_date = entry.transaction_date or date.today()
        if last is not None and entry.transaction_date is None:
            entry_date = max(entry_date, last.transaction_date)
        if last is not None and entry_date < last.transaction_date:
            raise ValidationError(
                f"Entry dated {entry_date} precedes member {member_id}'s last entry "
                f"({last.transaction_date})"
            )

        signed = amount if TransactionType(entry.type) == TransactionType.DEBIT else -amount
        fy_start = await self.session.scalar(
            select(Society.financial_year_start_month).where(Society.id == member.society_id)
        )

        transaction = Transaction(
            transaction_ref=generate_transaction_ref(),
            society_id=member.society_id,
            member_id=member_id,
            sequence=sequence,
            transaction_date=entry_date,
            type=TransactionType(entry.type),
            category=TransactionCategory(entry.category),
            description=entry.description,
            amount=amount,
            balance_after=previous_balance + signed,
            bill_id=entry.bill_id,
            period_id=entry.period_id,
            payment_mode=entry.payment_mode,
            payment_details=entry.payment_details,
            created_by=entry.created_by,
            is_reversed=False,
            financial_year=financial_year_label(entry_date, fy_start or 4),
        )
        self.session.add(transaction)
        try:
            await self.session.flush()
        except IntegrityError as e:
            if is_sequence_conflict(e):
                raise StaleBalanceError(
                    f"Ledger tail for member {member_id} moved past sequence {sequence - 1}"
                ) from e
            raise

        logger.debug(
            "Appended %s %s %s for member %d: seq=%d balance_after=%s",
            transaction.type.value,
            transaction.category.value,
            amount,
            member_id,
            sequence,
            transaction.balance_after,
        )
        return transaction

    async def reverse_entries_for_bill(
        self, bill_id: int, reason: str, actor_id: int | None = None
    ) -> list[Transaction]:
        """Flag a bill's entries reversed and append compensating entries.

        Returns:
            The compensating entries, in append order
        """
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.bill_id == bill_id, Transaction.is_reversed.is_(False))
            .order_by(Transaction.sequence)
        )
        originals = list(result.scalars().all())

        compensations = []
        for original in originals:
            opposite = (
                TransactionType.CREDIT
                if original.type == TransactionType.DEBIT
                else TransactionType.DEBIT
            )
            compensation = await self.append(
                original.member_id,
                NewEntry(
                    type=opposite,
                    category=TransactionCategory.ADJUSTMENT,
                    amount=original.amount,
                    description=f"Reversal of {original.transaction_ref}: {reason}",
                    period_id=original.period_id,
                    payment_mode=PaymentMode.SYSTEM,
                    created_by=actor_id,
                ),
            )
            original.is_reversed = True
            original.reversal_ref = compensation.transaction_ref
            compensations.append(compensation)

        await self.session.flush()
        return compensations

    async def member_ledger(
        self,
        member_id: int,
        start_date: date | None = None,
        end_date: date | None = None,
        include_reversed: bool = False,
    ) -> list[Transaction]:
        """Member's entries in ledger order (date, sequence)."""
        await self.get_member(member_id)
        stmt = select(Transaction).where(Transaction.member_id == member_id)
        if not include_reversed:
            stmt = stmt.where(Transaction.is_reversed.is_(False))
        if start_date is not None:
            stmt = stmt.where(Transaction.transaction_date >= start_date)
        if end_date is not None:
            stmt = stmt.where(Transaction.transaction_date <= end_date)
        result = await self.session.execute(
            stmt.order_by(Transaction.transaction_date, Transaction.sequence)
        )
        return list(result.scalars().all())

    async def verify_continuity(self, member_id: int) -> list[ContinuityBreak]:
        """Replay the member's full chain and report every broken link.

        Reversed entries are part of the chain (their compensating entries
        follow them), so all entries are replayed.
        """
        member = await self.get_member(member_id)
        entries = await self.member_ledger(member_id, include_reversed=True)

        breaks = []
        expected = to_money(member.opening_balance or 0)
        for position, entry in enumerate(entries, start=1):
            expected = expected + entry.signed_amount()
            stored = to_money(entry.balance_after)
            if entry.sequence != position or stored != expected:
                breaks.append(
                    ContinuityBreak(entry.sequence, entry.transaction_ref, expected, stored)
                )
            expected = stored
        return breaks


async def run_member_unit(
    session_factory: async_sessionmaker[AsyncSession],
    member_id: int,
    work: Callable[[AsyncSession], Awaitable[T]],
    locks: MemberLockRegistry | None = None,
    max_retries: int | None = None,
) -> T:
    """Run ``work`` in one transaction while holding the member's lock.

    ``work`` receives a fresh session and must not commit. On
    ``StaleBalanceError`` the transaction is rolled back and ``work`` runs
    again from scratch, up to ``max_retries`` extra attempts.

    Raises:
        ConcurrencyError: If every attempt lost the race
    """
    locks = locks or get_member_locks()
    retries = get_settings().append_max_retries if max_retries is None else max_retries

    async with locks.hold(member_id):
        for attempt in range(retries + 1):
            try:
                async with session_factory() as session:
                    async with session.begin():
                        return await work(session)
            except StaleBalanceError:
                logger.warning(
                    "Stale ledger tail for member %d (attempt %d/%d)",
                    member_id,
                    attempt + 1,
                    retries + 1,
                )

    raise ConcurrencyError(
        f"Ledger for member {member_id} kept changing; gave up after {retries + 1} attempts"
    )


async def append_entry(
    session_factory: async_sessionmaker[AsyncSession],
    member_id: int,
    entry: NewEntry,
    locks: MemberLockRegistry | None = None,
    max_retries: int | None = None,
) -> Transaction:
    """Serialized standalone append (manual adjustments, fines, refunds)."""

    async def work(session: AsyncSession) -> Transaction:
        return await LedgerStore(session).append(member_id, entry)

    return await run_member_unit(session_factory, member_id, work, locks, max_retries)


__all__ = [
    "NewEntry",
    "ContinuityBreak",
    "LedgerStore",
    "run_member_unit",
    "append_entry",
    "generate_transaction_ref",
    "is_sequence_conflict",
]
