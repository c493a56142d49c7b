from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class AccountOut(BaseModel):
    Id: int
    UserId: int
    Kind: str
    Balance: Decimal
    SpendingLimit: Decimal | None = None
    IsActive: bool
    OwnerAccountId: int | None = None
    UpdatedAt: datetime | None = None


class ChildAccountOut(BaseModel):
    AccountId: int
    UserId: int
    Name: str
    Email: str
    Age: int | None = None
    Avatar: str | None = None
    Balance: Decimal
    SpendingLimit: Decimal | None = None
    IsActive: bool
    CreatedAt: datetime


class ChildCreate(BaseModel):
    Name: str = Field(min_length=1, max_length=120)
    Email: str = Field(min_length=3, max_length=254)
    Password: str = Field(max_length=200)
    Age: int = Field(ge=0, le=120)
    SpendingLimit: Decimal = Decimal("0.00")


class ChildUpdate(BaseModel):
    Name: str | None = Field(default=None, min_length=1, max_length=120)
    Age: int | None = Field(default=None, ge=0, le=120)


class SpendingLimitUpdate(BaseModel):
    SpendingLimit: Decimal


class ActiveUpdate(BaseModel):
    IsActive: bool


class FundRequest(BaseModel):
    Amount: Decimal
    Note: str | None = Field(default=None, max_length=500)


class PurchaseRequest(BaseModel):
    Amount: Decimal
    Description: str | None = Field(default=None, max_length=500)
    ProductName: str | None = Field(default=None, max_length=200)


class LedgerEntryOut(BaseModel):
    Id: int
    AccountId: int
    EntryType: str
    Status: str
    Amount: Decimal
    BalanceBefore: Decimal
    BalanceAfter: Decimal
    Description: str | None = None
    ProductName: str | None = None
    DeclineReason: str | None = None
    CreatedByUserId: int | None = None
    CreatedAt: datetime | None = None


class TransactionOut(BaseModel):
    Account: AccountOut
    Entry: LedgerEntryOut


class LedgerPageOut(BaseModel):
    AccountId: int
    Balance: Decimal
    Entries: list[LedgerEntryOut]
    NextAfterId: int | None = None


class LedgerVerificationOut(BaseModel):
    AccountId: int
    StoredBalance: Decimal
    ReplayedBalance: Decimal
    EntryCount: int
    IsConsistent: bool
    FirstInconsistentEntryId: int | None = None


class MessageOut(BaseModel):
    Message: str
