from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    event,
)
from sqlalchemy.orm import Session

from app.db import Base

ACCOUNT_KIND_PARENT = "Parent"
ACCOUNT_KIND_CHILD = "Child"

ENTRY_TYPE_CREDIT = "Credit"
ENTRY_TYPE_DEBIT = "Debit"

ENTRY_STATUS_COMPLETED = "Completed"
ENTRY_STATUS_DECLINED = "Declined"


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("Balance >= 0", name="ck_accounts_balance_non_negative"),
        CheckConstraint("SpendingLimit IS NULL OR SpendingLimit >= 0", name="ck_accounts_limit_non_negative"),
    )

    Id = Column(Integer, primary_key=True, index=True)
    UserId = Column(Integer, ForeignKey("users.Id"), nullable=False, unique=True, index=True)
    Kind = Column(String(20), nullable=False)
    Balance = Column(Numeric(12, 2), nullable=False, default=0)
    SpendingLimit = Column(Numeric(12, 2))
    IsActive = Column(Boolean, nullable=False, default=True)
    OwnerAccountId = Column(Integer, ForeignKey("accounts.Id"), index=True)
    IsDeleted = Column(Boolean, nullable=False, default=False)
    CreatedAt = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    UpdatedAt = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        CheckConstraint("Amount > 0", name="ck_ledger_entries_amount_positive"),
        Index("ix_ledger_entries_account_id_id", "AccountId", "Id"),
    )

    Id = Column(Integer, primary_key=True, index=True)
    AccountId = Column(Integer, ForeignKey("accounts.Id"), nullable=False, index=True)
    EntryType = Column(String(20), nullable=False)
    Status = Column(String(20), nullable=False)
    Amount = Column(Numeric(12, 2), nullable=False)
    BalanceBefore = Column(Numeric(12, 2), nullable=False)
    BalanceAfter = Column(Numeric(12, 2), nullable=False)
    Description = Column(String(500))
    ProductName = Column(String(200))
    DeclineReason = Column(String(40))
    CreatedByUserId = Column(Integer)
    CreatedAt = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)


class LedgerImmutableError(RuntimeError):
    pass


@event.listens_for(LedgerEntry, "before_update")
def _RejectLedgerUpdate(mapper, connection, target) -> None:
    raise LedgerImmutableError(f"Ledger entry {target.Id} is append-only")


@event.listens_for(LedgerEntry, "before_delete")
def _RejectLedgerDelete(mapper, connection, target) -> None:
    raise LedgerImmutableError(f"Ledger entry {target.Id} is append-only")


@event.listens_for(Session, "do_orm_execute")
def _RejectLedgerBulkWrites(orm_execute_state) -> None:
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    table = getattr(orm_execute_state.statement, "table", None)
    if getattr(table, "name", None) == LedgerEntry.__tablename__:
        raise LedgerImmutableError("Ledger entries are append-only")
