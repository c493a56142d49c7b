import threading
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.modules.allowance.errors import (
    AccountInactive,
    AccountNotFound,
    BalanceConflict,
    InsufficientFunds,
    InvalidAccountKind,
    InvalidAmount,
    LimitExceeded,
    TransientFailure,
)
from app.modules.allowance.models import (
    ENTRY_STATUS_COMPLETED,
    ENTRY_STATUS_DECLINED,
    ENTRY_TYPE_CREDIT,
    ENTRY_TYPE_DEBIT,
    LedgerEntry,
)
from app.modules.allowance.services.account_store import AccountStore
from app.modules.allowance.services.ledger_service import Ledger, ReplayBalance
from app.modules.allowance.services.transaction_engine import TransactionEngine


def _Entries(session_factory, account_id):
    session = session_factory()
    try:
        return Ledger(session).ListForAccount(account_id)
    finally:
        session.close()


def _Balance(session_factory, account_id):
    session = session_factory()
    try:
        return AccountStore(session).Get(account_id).Balance
    finally:
        session.close()


def test_purchase_within_limit_and_balance_debits_account(make_family, transaction_engine, session_factory):
    family = make_family(balance="50.00", spending_limit="30.00")

    outcome = transaction_engine.Purchase(family.ChildAccountId, "20", description="Comic book")

    assert outcome.Account.Balance == Decimal("30.00")
    assert outcome.Entry.EntryType == ENTRY_TYPE_DEBIT
    assert outcome.Entry.Status == ENTRY_STATUS_COMPLETED
    assert outcome.Entry.BalanceBefore == Decimal("50.00")
    assert outcome.Entry.BalanceAfter == Decimal("30.00")
    debits = [entry for entry in _Entries(session_factory, family.ChildAccountId) if entry.EntryType == ENTRY_TYPE_DEBIT]
    assert len(debits) == 1
    assert _Balance(session_factory, family.ChildAccountId) == Decimal("30.00")


def test_purchase_over_limit_is_declined_and_recorded(make_family, transaction_engine, session_factory):
    family = make_family(balance="50.00", spending_limit="30.00")
    transaction_engine.Purchase(family.ChildAccountId, "20")

    with pytest.raises(LimitExceeded) as exc_info:
        transaction_engine.Purchase(family.ChildAccountId, "35")

    assert exc_info.value.Balance == Decimal("30.00")
    assert _Balance(session_factory, family.ChildAccountId) == Decimal("30.00")
    declined = _Entries(session_factory, family.ChildAccountId)[-1]
    assert declined.Id == exc_info.value.DeclinedEntryId
    assert declined.Status == ENTRY_STATUS_DECLINED
    assert declined.DeclineReason == "LimitExceeded"
    assert declined.Amount == Decimal("35.00")
    assert declined.BalanceBefore == declined.BalanceAfter == Decimal("30.00")


def test_purchase_over_balance_is_declined_as_insufficient_funds(make_family, transaction_engine, session_factory):
    family = make_family(balance="10.00", spending_limit="100.00")

    with pytest.raises(InsufficientFunds) as exc_info:
        transaction_engine.Purchase(family.ChildAccountId, "50")

    assert exc_info.value.Balance == Decimal("10.00")
    assert _Balance(session_factory, family.ChildAccountId) == Decimal("10.00")
    declined = _Entries(session_factory, family.ChildAccountId)[-1]
    assert declined.Status == ENTRY_STATUS_DECLINED
    assert declined.DeclineReason == "InsufficientFunds"
    assert declined.BalanceBefore == declined.BalanceAfter == Decimal("10.00")


def test_fund_credits_account(make_family, transaction_engine):
    family = make_family(balance="30.00")

    outcome = transaction_engine.Fund(family.ChildAccountId, "25", note="Weekly allowance", actor_user_id=family.ParentUserId)

    assert outcome.Account.Balance == Decimal("55.00")
    assert outcome.Entry.EntryType == ENTRY_TYPE_CREDIT
    assert outcome.Entry.Status == ENTRY_STATUS_COMPLETED
    assert outcome.Entry.BalanceBefore == Decimal("30.00")
    assert outcome.Entry.BalanceAfter == Decimal("55.00")
    assert outcome.Entry.Description == "Weekly allowance"
    assert outcome.Entry.CreatedByUserId == family.ParentUserId


def test_competing_purchase_forces_revalidation_against_committed_balance(make_family, session_factory):
    family = make_family(balance="50.00", spending_limit="100.00")
    rival = TransactionEngine(session_factory)
    state = {"interleaved": False}

    class _InterleavingStore(AccountStore):
        def Get(self, account_id):
            account = super().Get(account_id)
            if not state["interleaved"]:
                state["interleaved"] = True
                rival.Purchase(account_id, "40")
            return account

    engine = TransactionEngine(session_factory, max_attempts=3, store_factory=_InterleavingStore)

    with pytest.raises(InsufficientFunds) as exc_info:
        engine.Purchase(family.ChildAccountId, "40")

    assert exc_info.value.Balance == Decimal("10.00")
    assert _Balance(session_factory, family.ChildAccountId) == Decimal("10.00")
    entries = _Entries(session_factory, family.ChildAccountId)
    completed = [entry for entry in entries if entry.EntryType == ENTRY_TYPE_DEBIT and entry.Status == ENTRY_STATUS_COMPLETED]
    declined = [entry for entry in entries if entry.Status == ENTRY_STATUS_DECLINED]
    assert len(completed) == 1
    assert len(declined) == 1
    assert declined[0].BalanceBefore == Decimal("10.00")


@pytest.mark.parametrize("amount", [0, "0", -5, "-5"])
def test_non_positive_amounts_are_rejected_without_ledger_entries(make_family, transaction_engine, session_factory, amount):
    family = make_family(balance="20.00")
    before = len(_Entries(session_factory, family.ChildAccountId))

    with pytest.raises(InvalidAmount):
        transaction_engine.Fund(family.ChildAccountId, amount)
    with pytest.raises(InvalidAmount):
        transaction_engine.Purchase(family.ChildAccountId, amount)

    assert len(_Entries(session_factory, family.ChildAccountId)) == before
    assert _Balance(session_factory, family.ChildAccountId) == Decimal("20.00")


def test_fractional_cents_are_rejected(make_family, transaction_engine):
    family = make_family(balance="20.00")

    with pytest.raises(InvalidAmount):
        transaction_engine.Fund(family.ChildAccountId, "1.005")


def test_fund_that_would_overflow_balance_is_rejected(make_family, transaction_engine):
    family = make_family(balance="9999999999.00")

    with pytest.raises(InvalidAmount):
        transaction_engine.Fund(family.ChildAccountId, "1.00")


def test_inactive_child_purchase_is_declined_before_limit_check(make_family, transaction_engine, session_factory):
    family = make_family(balance="50.00", spending_limit="10.00", active=False)

    with pytest.raises(AccountInactive) as exc_info:
        transaction_engine.Purchase(family.ChildAccountId, "40")

    declined = _Entries(session_factory, family.ChildAccountId)[-1]
    assert declined.Id == exc_info.value.DeclinedEntryId
    assert declined.DeclineReason == "AccountInactive"
    assert _Balance(session_factory, family.ChildAccountId) == Decimal("50.00")


def test_parent_account_cannot_purchase(make_family, transaction_engine, session_factory):
    family = make_family()

    with pytest.raises(InvalidAccountKind):
        transaction_engine.Purchase(family.ParentAccountId, "5")

    assert _Entries(session_factory, family.ParentAccountId) == []


def test_parent_account_can_be_funded(make_family, transaction_engine):
    family = make_family()

    outcome = transaction_engine.Fund(family.ParentAccountId, "12.50")

    assert outcome.Account.Balance == Decimal("12.50")


def test_unknown_account_is_not_found(transaction_engine):
    with pytest.raises(AccountNotFound):
        transaction_engine.Fund(999, "5")
    with pytest.raises(AccountNotFound):
        transaction_engine.Purchase(999, "5")


def test_soft_deleted_child_is_not_found(make_family, transaction_engine, session_factory):
    family = make_family(balance="10.00")
    session = session_factory()
    AccountStore(session).SoftDelete(family.ChildAccountId)
    session.commit()
    session.close()

    with pytest.raises(AccountNotFound):
        transaction_engine.Purchase(family.ChildAccountId, "1")


def test_persistent_conflicts_surface_as_transient_failure(make_family, session_factory):
    family = make_family(balance="50.00")
    attempts = {"count": 0}

    class _AlwaysConflictingStore(AccountStore):
        def ApplyDelta(self, account_id, signed_amount, expected_balance):
            attempts["count"] += 1
            raise BalanceConflict(account_id, expected_balance)

    engine = TransactionEngine(session_factory, max_attempts=3, store_factory=_AlwaysConflictingStore)
    entries_before = len(_Entries(session_factory, family.ChildAccountId))

    with pytest.raises(TransientFailure):
        engine.Purchase(family.ChildAccountId, "5")

    assert attempts["count"] == 3
    assert len(_Entries(session_factory, family.ChildAccountId)) == entries_before
    assert _Balance(session_factory, family.ChildAccountId) == Decimal("50.00")


def test_unavailable_store_surfaces_as_transient_failure(tmp_path):
    broken = create_engine(f"sqlite:///{tmp_path / 'missing' / 'nowhere.db'}")
    engine = TransactionEngine(sessionmaker(bind=broken, autocommit=False, autoflush=False))

    with pytest.raises(TransientFailure):
        engine.Fund(1, "5")


def test_spending_limit_and_active_updates_leave_ledger_untouched(make_family, transaction_engine, session_factory):
    family = make_family(balance="5.00")
    entries_before = len(_Entries(session_factory, family.ChildAccountId))

    limited = transaction_engine.SetSpendingLimit(family.ChildAccountId, "12.34")
    deactivated = transaction_engine.SetActive(family.ChildAccountId, False)

    assert limited.SpendingLimit == Decimal("12.34")
    assert deactivated.IsActive is False
    assert len(_Entries(session_factory, family.ChildAccountId)) == entries_before


def test_spending_limit_rules(make_family, transaction_engine):
    family = make_family()

    assert transaction_engine.SetSpendingLimit(family.ChildAccountId, "0").SpendingLimit == Decimal("0.00")
    with pytest.raises(InvalidAmount):
        transaction_engine.SetSpendingLimit(family.ChildAccountId, "-1")
    with pytest.raises(InvalidAccountKind):
        transaction_engine.SetSpendingLimit(family.ParentAccountId, "10")
    with pytest.raises(InvalidAccountKind):
        transaction_engine.SetActive(family.ParentAccountId, False)


def test_balance_always_equals_completed_ledger_deltas(make_family, transaction_engine, session_factory):
    family = make_family(balance="40.00", spending_limit="15.00")
    operations = [
        ("purchase", "15.00"),
        ("purchase", "20.00"),
        ("fund", "7.25"),
        ("purchase", "14.99"),
        ("purchase", "15.00"),
        ("fund", "0.01"),
        ("purchase", "3.27"),
    ]
    for kind, amount in operations:
        try:
            if kind == "fund":
                transaction_engine.Fund(family.ChildAccountId, amount)
            else:
                transaction_engine.Purchase(family.ChildAccountId, amount)
        except (LimitExceeded, InsufficientFunds):
            pass

    balance = _Balance(session_factory, family.ChildAccountId)
    entries = _Entries(session_factory, family.ChildAccountId)
    assert balance >= 0
    assert ReplayBalance(entries) == balance
    for entry in entries:
        if entry.Status == ENTRY_STATUS_DECLINED:
            assert entry.BalanceBefore == entry.BalanceAfter

    session = session_factory()
    try:
        account = AccountStore(session).Get(family.ChildAccountId)
        assert Ledger(session).VerifyAccount(account).IsConsistent is True
        assert session.query(LedgerEntry).filter(LedgerEntry.AccountId == family.ChildAccountId).count() == len(entries)
    finally:
        session.close()


def _RunConcurrentPurchases(engine, account_id, amount, workers):
    barrier = threading.Barrier(workers)
    outcomes = []
    lock = threading.Lock()

    def _Buy():
        barrier.wait()
        try:
            engine.Purchase(account_id, amount)
            result = "ok"
        except InsufficientFunds:
            result = "insufficient"
        except TransientFailure:
            result = "transient"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_Buy) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return outcomes


@pytest.mark.parametrize(
    ("balance", "amount", "workers"),
    [("50.00", "40.00", 2), ("40.00", "10.00", 8)],
)
def test_concurrent_purchases_never_overdraw(make_family, session_factory, balance, amount, workers):
    family = make_family(balance=balance, spending_limit="100.00")
    engine = TransactionEngine(session_factory, max_attempts=5)

    outcomes = _RunConcurrentPurchases(engine, family.ChildAccountId, amount, workers)

    assert len(outcomes) == workers
    succeeded = outcomes.count("ok")
    final = _Balance(session_factory, family.ChildAccountId)
    assert final >= 0
    assert final == Decimal(balance) - succeeded * Decimal(amount)
    assert succeeded <= int(Decimal(balance) // Decimal(amount))

    entries = _Entries(session_factory, family.ChildAccountId)
    completed_debits = [entry for entry in entries if entry.EntryType == ENTRY_TYPE_DEBIT and entry.Status == ENTRY_STATUS_COMPLETED]
    assert len(completed_debits) == succeeded
    assert ReplayBalance(entries) == final
