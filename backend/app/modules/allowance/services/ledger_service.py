from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session

from app.modules.allowance.errors import LedgerEntryNotFound
from app.modules.allowance.models import (
    ENTRY_STATUS_COMPLETED,
    ENTRY_STATUS_DECLINED,
    ENTRY_TYPE_CREDIT,
    ENTRY_TYPE_DEBIT,
    Account,
    LedgerEntry,
)
from app.modules.allowance.utils.config import Settings
from app.modules.allowance.utils.money import ToMoney
from app.modules.auth.deps import NowUtc

ENTRY_TYPES = {ENTRY_TYPE_CREDIT, ENTRY_TYPE_DEBIT}
ENTRY_STATUSES = {ENTRY_STATUS_COMPLETED, ENTRY_STATUS_DECLINED}


@dataclass(frozen=True)
class LedgerPage:
    Entries: list[LedgerEntry]
    NextAfterId: int | None


@dataclass(frozen=True)
class LedgerVerification:
    AccountId: int
    StoredBalance: Decimal
    ReplayedBalance: Decimal
    EntryCount: int
    IsConsistent: bool
    FirstInconsistentEntryId: int | None = None


def EntryDelta(entry: LedgerEntry) -> Decimal:
    if entry.Status != ENTRY_STATUS_COMPLETED:
        return Decimal("0.00")
    amount = ToMoney(entry.Amount)
    return amount if entry.EntryType == ENTRY_TYPE_CREDIT else -amount


def ReplayBalance(entries: Iterable[LedgerEntry]) -> Decimal:
    total = Decimal("0.00")
    for entry in entries:
        total += EntryDelta(entry)
    return total


def _ValidateEntry(
    entry_type: str,
    status: str,
    amount: Decimal,
    balance_before: Decimal,
    balance_after: Decimal,
) -> None:
    if entry_type not in ENTRY_TYPES:
        raise ValueError(f"Unknown ledger entry type: {entry_type}")
    if status not in ENTRY_STATUSES:
        raise ValueError(f"Unknown ledger entry status: {status}")
    if amount <= 0:
        raise ValueError("Ledger entry amount must be positive")

    if status == ENTRY_STATUS_DECLINED:
        expected_after = balance_before
    elif entry_type == ENTRY_TYPE_CREDIT:
        expected_after = balance_before + amount
    else:
        expected_after = balance_before - amount
    if balance_after != expected_after:
        raise ValueError(
            f"{status} {entry_type} of {amount} cannot move balance {balance_before} to {balance_after}"
        )


class Ledger:
    """Append-only ledger bound to one session.

    Append flushes without committing so the entry lands in the same
    transaction as the balance write that produced it.
    """

    def __init__(self, db: Session):
        self.db = db

    def Append(
        self,
        account_id: int,
        entry_type: str,
        status: str,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        description: str | None = None,
        product_name: str | None = None,
        decline_reason: str | None = None,
        created_by_user_id: int | None = None,
    ) -> LedgerEntry:
        amount = ToMoney(amount)
        balance_before = ToMoney(balance_before)
        balance_after = ToMoney(balance_after)
        _ValidateEntry(entry_type, status, amount, balance_before, balance_after)
        if status == ENTRY_STATUS_DECLINED and not decline_reason:
            raise ValueError("Declined ledger entries need a reason")

        entry = LedgerEntry(
            AccountId=account_id,
            EntryType=entry_type,
            Status=status,
            Amount=amount,
            BalanceBefore=balance_before,
            BalanceAfter=balance_after,
            Description=description,
            ProductName=product_name,
            DeclineReason=decline_reason if status == ENTRY_STATUS_DECLINED else None,
            CreatedByUserId=created_by_user_id,
            CreatedAt=NowUtc(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def Get(self, entry_id: int) -> LedgerEntry:
        entry = self.db.query(LedgerEntry).filter(LedgerEntry.Id == entry_id).first()
        if not entry:
            raise LedgerEntryNotFound(entry_id)
        return entry

    def ListForAccount(self, account_id: int) -> list[LedgerEntry]:
        return list(self.IterForAccount(account_id))

    def ReadPage(self, account_id: int, after_id: int | None = None, limit: int = 50) -> LedgerPage:
        # Ids are assigned in creation order, so keyset paging on Id follows CreatedAt.
        query = self.db.query(LedgerEntry).filter(LedgerEntry.AccountId == account_id)
        if after_id is not None:
            query = query.filter(LedgerEntry.Id > after_id)
        rows = query.order_by(LedgerEntry.Id.asc()).limit(limit + 1).all()
        entries = rows[:limit]
        next_after_id = entries[-1].Id if len(rows) > limit else None
        return LedgerPage(Entries=entries, NextAfterId=next_after_id)

    def IterForAccount(
        self,
        account_id: int,
        page_size: int | None = None,
        after_id: int | None = None,
    ) -> Iterator[LedgerEntry]:
        page_size = page_size or Settings.LedgerMaxPageSize
        cursor = after_id
        while True:
            page = self.ReadPage(account_id, after_id=cursor, limit=page_size)
            yield from page.Entries
            if page.NextAfterId is None:
                return
            cursor = page.NextAfterId

    def VerifyAccount(self, account: Account) -> LedgerVerification:
        running = Decimal("0.00")
        count = 0
        first_bad: int | None = None
        for entry in self.IterForAccount(account.Id):
            count += 1
            if first_bad is None and ToMoney(entry.BalanceBefore) != running:
                first_bad = entry.Id
            running += EntryDelta(entry)

        stored = ToMoney(account.Balance)
        return LedgerVerification(
            AccountId=account.Id,
            StoredBalance=stored,
            ReplayedBalance=running,
            EntryCount=count,
            IsConsistent=first_bad is None and running == stored,
            FirstInconsistentEntryId=first_bad,
        )
