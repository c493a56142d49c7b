from __future__ import annotations

from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.modules.allowance.errors import AccountNotFound, BalanceConflict, InvalidAccountKind, InvalidAmount
from app.modules.allowance.models import ACCOUNT_KIND_CHILD, ACCOUNT_KIND_PARENT, Account
from app.modules.allowance.utils.money import MAX_MONEY, ToMoney
from app.modules.auth.deps import NowUtc


class AccountStore:
    """Account records bound to one session.

    Balance changes only through ApplyDelta, a compare-and-swap on the stored
    balance. Field updates are flushed, never committed; the caller owns the
    transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    def Get(self, account_id: int) -> Account:
        account = (
            self.db.query(Account)
            .populate_existing()
            .filter(Account.Id == account_id, Account.IsDeleted == False)
            .first()
        )
        if not account:
            raise AccountNotFound(account_id)
        return account

    def GetByUserId(self, user_id: int) -> Account:
        account = (
            self.db.query(Account)
            .filter(Account.UserId == user_id, Account.IsDeleted == False)
            .first()
        )
        if not account:
            raise AccountNotFound(user_id)
        return account

    def ListChildren(self, owner_account_id: int) -> list[Account]:
        return (
            self.db.query(Account)
            .filter(
                Account.OwnerAccountId == owner_account_id,
                Account.Kind == ACCOUNT_KIND_CHILD,
                Account.IsDeleted == False,
            )
            .order_by(Account.Id.asc())
            .all()
        )

    def Create(
        self,
        kind: str,
        user_id: int,
        owner_account_id: int | None = None,
        spending_limit: Decimal | None = None,
    ) -> Account:
        if kind == ACCOUNT_KIND_PARENT:
            if owner_account_id is not None or spending_limit is not None:
                raise InvalidAccountKind("Parent accounts have no owner or spending limit")
        elif kind == ACCOUNT_KIND_CHILD:
            owner = self.Get(owner_account_id) if owner_account_id is not None else None
            if not owner or owner.Kind != ACCOUNT_KIND_PARENT:
                raise InvalidAccountKind("Child accounts must belong to a parent account")
        else:
            raise InvalidAccountKind(f"Unknown account kind: {kind}")

        now = NowUtc()
        account = Account(
            UserId=user_id,
            Kind=kind,
            Balance=Decimal("0.00"),
            SpendingLimit=ToMoney(spending_limit) if kind == ACCOUNT_KIND_CHILD else None,
            IsActive=True,
            OwnerAccountId=owner_account_id,
            IsDeleted=False,
            CreatedAt=now,
            UpdatedAt=now,
        )
        self.db.add(account)
        self.db.flush()
        return account

    def ApplyDelta(self, account_id: int, signed_amount: Decimal, expected_balance: Decimal) -> Account:
        expected = ToMoney(expected_balance)
        new_balance = ToMoney(expected + signed_amount)
        if new_balance < 0:
            raise InvalidAmount(f"Balance of account {account_id} cannot go below zero")
        if new_balance > MAX_MONEY:
            raise InvalidAmount(f"Balance of account {account_id} would exceed the maximum")

        result = self.db.execute(
            update(Account)
            .where(
                Account.Id == account_id,
                Account.Balance == expected,
                Account.IsDeleted == False,
            )
            .values(Balance=new_balance, UpdatedAt=NowUtc())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise BalanceConflict(account_id, expected)
        return self.Get(account_id)

    def SetSpendingLimit(self, account_id: int, spending_limit: Decimal) -> Account:
        account = self._GetChild(account_id)
        account.SpendingLimit = ToMoney(spending_limit)
        account.UpdatedAt = NowUtc()
        self.db.flush()
        return account

    def SetActive(self, account_id: int, active: bool) -> Account:
        account = self._GetChild(account_id)
        account.IsActive = bool(active)
        account.UpdatedAt = NowUtc()
        self.db.flush()
        return account

    def SoftDelete(self, account_id: int) -> Account:
        account = self._GetChild(account_id)
        account.IsDeleted = True
        account.IsActive = False
        account.UpdatedAt = NowUtc()
        self.db.flush()
        return account

    def _GetChild(self, account_id: int) -> Account:
        account = self.Get(account_id)
        if account.Kind != ACCOUNT_KIND_CHILD:
            raise InvalidAccountKind("Only child accounts have a spending limit and active flag")
        return account
