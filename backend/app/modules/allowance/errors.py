"""Typed failures raised by the account store, ledger and transaction engine.

Routers translate these into HTTP responses; nothing here knows about HTTP.
"""

from decimal import Decimal


class AllowanceError(Exception):
    Reason = "AllowanceError"

    def __init__(self, message: str):
        super().__init__(message)
        self.Message = message


class NotFound(AllowanceError):
    Reason = "NotFound"


class AccountNotFound(NotFound):
    Reason = "AccountNotFound"

    def __init__(self, account_id: int):
        super().__init__(f"Account {account_id} not found")
        self.AccountId = account_id


class LedgerEntryNotFound(NotFound):
    Reason = "LedgerEntryNotFound"

    def __init__(self, entry_id: int):
        super().__init__(f"Ledger entry {entry_id} not found")
        self.EntryId = entry_id


class InvalidAmount(AllowanceError):
    Reason = "InvalidAmount"


class InvalidAccountKind(AllowanceError):
    Reason = "InvalidAccountKind"


class PurchaseRejected(AllowanceError):
    """A purchase refused by policy. A Declined ledger entry always exists for it."""

    Reason = "PurchaseRejected"
    DefaultMessage = "Purchase declined"

    def __init__(self, account_id: int, amount: Decimal, balance: Decimal, declined_entry_id: int):
        super().__init__(self.DefaultMessage)
        self.AccountId = account_id
        self.Amount = amount
        self.Balance = balance
        self.DeclinedEntryId = declined_entry_id


class AccountInactive(PurchaseRejected):
    Reason = "AccountInactive"
    DefaultMessage = "Account is inactive"


class LimitExceeded(PurchaseRejected):
    Reason = "LimitExceeded"
    DefaultMessage = "Amount exceeds spending limit"


class InsufficientFunds(PurchaseRejected):
    Reason = "InsufficientFunds"
    DefaultMessage = "Insufficient balance"


class BalanceConflict(AllowanceError):
    """The balance changed between read and write. Retried inside the engine."""

    Reason = "Conflict"

    def __init__(self, account_id: int, expected_balance: Decimal):
        super().__init__(f"Balance of account {account_id} no longer equals {expected_balance}")
        self.AccountId = account_id
        self.ExpectedBalance = expected_balance


class TransientFailure(AllowanceError):
    Reason = "TransientFailure"


REJECTIONS_BY_REASON: dict[str, type[PurchaseRejected]] = {
    AccountInactive.Reason: AccountInactive,
    LimitExceeded.Reason: LimitExceeded,
    InsufficientFunds.Reason: InsufficientFunds,
}
