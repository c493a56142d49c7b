"""Balance-changing operations for allowance accounts.

Every fund and purchase runs read, validate, compare-and-swap, append inside a
single database transaction. A BalanceConflict means another writer committed
between the read and the write; the attempt is rolled back and replayed in a
fresh session so validation sees the committed balance. After MaxAttempts the
caller gets TransientFailure.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.modules.allowance.errors import (
    REJECTIONS_BY_REASON,
    AccountInactive,
    AllowanceError,
    BalanceConflict,
    InsufficientFunds,
    InvalidAccountKind,
    InvalidAmount,
    LimitExceeded,
    TransientFailure,
)
from app.modules.allowance.models import (
    ACCOUNT_KIND_CHILD,
    ENTRY_STATUS_COMPLETED,
    ENTRY_STATUS_DECLINED,
    ENTRY_TYPE_CREDIT,
    ENTRY_TYPE_DEBIT,
    Account,
    LedgerEntry,
)
from app.modules.allowance.services.account_store import AccountStore
from app.modules.allowance.services.ledger_service import Ledger
from app.modules.allowance.utils.config import Settings
from app.modules.allowance.utils.money import MAX_MONEY, ParseMoney, ToMoney

logger = logging.getLogger("app.allowance.engine")


@dataclass(frozen=True)
class AccountSnapshot:
    Id: int
    UserId: int
    Kind: str
    Balance: Decimal
    SpendingLimit: Decimal | None
    IsActive: bool
    OwnerAccountId: int | None
    UpdatedAt: datetime | None = None

    @classmethod
    def FromModel(cls, account: Account) -> "AccountSnapshot":
        return cls(
            Id=account.Id,
            UserId=account.UserId,
            Kind=account.Kind,
            Balance=ToMoney(account.Balance),
            SpendingLimit=ToMoney(account.SpendingLimit) if account.SpendingLimit is not None else None,
            IsActive=bool(account.IsActive),
            OwnerAccountId=account.OwnerAccountId,
            UpdatedAt=account.UpdatedAt,
        )


@dataclass(frozen=True)
class LedgerEntrySnapshot:
    Id: int
    AccountId: int
    EntryType: str
    Status: str
    Amount: Decimal
    BalanceBefore: Decimal
    BalanceAfter: Decimal
    Description: str | None
    ProductName: str | None
    DeclineReason: str | None
    CreatedByUserId: int | None
    CreatedAt: datetime | None

    @classmethod
    def FromModel(cls, entry: LedgerEntry) -> "LedgerEntrySnapshot":
        return cls(
            Id=entry.Id,
            AccountId=entry.AccountId,
            EntryType=entry.EntryType,
            Status=entry.Status,
            Amount=ToMoney(entry.Amount),
            BalanceBefore=ToMoney(entry.BalanceBefore),
            BalanceAfter=ToMoney(entry.BalanceAfter),
            Description=entry.Description,
            ProductName=entry.ProductName,
            DeclineReason=entry.DeclineReason,
            CreatedByUserId=entry.CreatedByUserId,
            CreatedAt=entry.CreatedAt,
        )


@dataclass(frozen=True)
class TransactionOutcome:
    Account: AccountSnapshot
    Entry: LedgerEntrySnapshot


def _PurchaseRejectionReason(account: Account, amount: Decimal) -> str | None:
    if not account.IsActive:
        return AccountInactive.Reason
    limit = ToMoney(account.SpendingLimit)
    if amount > limit:
        return LimitExceeded.Reason
    if amount > ToMoney(account.Balance):
        return InsufficientFunds.Reason
    return None


class TransactionEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        max_attempts: int | None = None,
        store_factory: Callable[[Session], AccountStore] = AccountStore,
        ledger_factory: Callable[[Session], Ledger] = Ledger,
    ):
        self.SessionFactory = session_factory
        self.MaxAttempts = max(1, max_attempts if max_attempts is not None else Settings.MaxAttempts)
        self.StoreFactory = store_factory
        self.LedgerFactory = ledger_factory

    def Fund(
        self,
        account_id: int,
        amount,
        note: str | None = None,
        actor_user_id: int | None = None,
    ) -> TransactionOutcome:
        value = ParseMoney(amount)

        def _Attempt(store: AccountStore, ledger: Ledger) -> TransactionOutcome:
            account = store.Get(account_id)
            before = ToMoney(account.Balance)
            if before + value > MAX_MONEY:
                raise InvalidAmount("Amount would exceed the maximum balance")
            updated = store.ApplyDelta(account_id, value, before)
            entry = ledger.Append(
                account_id,
                ENTRY_TYPE_CREDIT,
                ENTRY_STATUS_COMPLETED,
                amount=value,
                balance_before=before,
                balance_after=ToMoney(updated.Balance),
                description=note,
                created_by_user_id=actor_user_id,
            )
            return TransactionOutcome(AccountSnapshot.FromModel(updated), LedgerEntrySnapshot.FromModel(entry))

        outcome = self._RunWithRetry("fund", account_id, _Attempt)
        logger.info(
            "account funded",
            extra={
                "account_id": account_id,
                "amount": str(value),
                "balance": str(outcome.Account.Balance),
                "entry_id": outcome.Entry.Id,
            },
        )
        return outcome

    def Purchase(
        self,
        account_id: int,
        amount,
        description: str | None = None,
        product_name: str | None = None,
        actor_user_id: int | None = None,
    ) -> TransactionOutcome:
        value = ParseMoney(amount)

        def _Attempt(store: AccountStore, ledger: Ledger) -> TransactionOutcome:
            account = store.Get(account_id)
            if account.Kind != ACCOUNT_KIND_CHILD:
                raise InvalidAccountKind("Only child accounts can make purchases")

            before = ToMoney(account.Balance)
            reason = _PurchaseRejectionReason(account, value)
            if reason is None:
                updated = store.ApplyDelta(account_id, -value, before)
                status = ENTRY_STATUS_COMPLETED
            else:
                # Zero-delta swap pins the declined record to the balance it was judged against.
                updated = store.ApplyDelta(account_id, Decimal("0.00"), before)
                status = ENTRY_STATUS_DECLINED

            entry = ledger.Append(
                account_id,
                ENTRY_TYPE_DEBIT,
                status,
                amount=value,
                balance_before=before,
                balance_after=ToMoney(updated.Balance),
                description=description,
                product_name=product_name,
                decline_reason=reason,
                created_by_user_id=actor_user_id,
            )
            return TransactionOutcome(AccountSnapshot.FromModel(updated), LedgerEntrySnapshot.FromModel(entry))

        outcome = self._RunWithRetry("purchase", account_id, _Attempt)
        entry = outcome.Entry
        if entry.Status == ENTRY_STATUS_DECLINED:
            logger.warning(
                "purchase declined",
                extra={
                    "account_id": account_id,
                    "amount": str(value),
                    "reason": entry.DeclineReason,
                    "balance": str(entry.BalanceBefore),
                    "entry_id": entry.Id,
                },
            )
            rejection = REJECTIONS_BY_REASON[entry.DeclineReason]
            raise rejection(account_id, value, entry.BalanceBefore, entry.Id)

        logger.info(
            "purchase completed",
            extra={
                "account_id": account_id,
                "amount": str(value),
                "balance": str(outcome.Account.Balance),
                "entry_id": entry.Id,
            },
        )
        return outcome

    def SetSpendingLimit(self, account_id: int, new_limit) -> AccountSnapshot:
        limit = ParseMoney(new_limit, field="SpendingLimit", allow_zero=True)
        return self._RunOnce(
            "set_spending_limit",
            account_id,
            lambda store: AccountSnapshot.FromModel(store.SetSpendingLimit(account_id, limit)),
        )

    def SetActive(self, account_id: int, active: bool) -> AccountSnapshot:
        return self._RunOnce(
            "set_active",
            account_id,
            lambda store: AccountSnapshot.FromModel(store.SetActive(account_id, active)),
        )

    def _RunOnce(self, operation: str, account_id: int, work: Callable[[AccountStore], AccountSnapshot]) -> AccountSnapshot:
        db = self.SessionFactory()
        try:
            snapshot = work(self.StoreFactory(db))
            db.commit()
            return snapshot
        except AllowanceError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("%s failed on storage", operation, extra={"account_id": account_id})
            raise TransientFailure(f"Could not complete {operation}. Try again later.") from exc
        finally:
            db.close()

    def _RunWithRetry(
        self,
        operation: str,
        account_id: int,
        attempt: Callable[[AccountStore, Ledger], TransactionOutcome],
    ) -> TransactionOutcome:
        for attempt_number in range(1, self.MaxAttempts + 1):
            db = self.SessionFactory()
            try:
                outcome = attempt(self.StoreFactory(db), self.LedgerFactory(db))
                db.commit()
                return outcome
            except BalanceConflict:
                db.rollback()
                logger.info(
                    "%s hit a balance conflict, retrying",
                    operation,
                    extra={"account_id": account_id, "attempt": attempt_number},
                )
            except AllowanceError:
                db.rollback()
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception("%s failed on storage", operation, extra={"account_id": account_id})
                raise TransientFailure(f"Could not complete {operation}. Try again later.") from exc
            finally:
                db.close()

        logger.error(
            "%s gave up after %s conflicting attempts",
            operation,
            self.MaxAttempts,
            extra={"account_id": account_id},
        )
        raise TransientFailure(f"Could not complete {operation}. Try again later.")
