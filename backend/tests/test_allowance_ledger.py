from decimal import Decimal

import pytest
from sqlalchemy import delete, update

from app.modules.allowance.errors import LedgerEntryNotFound
from app.modules.allowance.models import (
    ENTRY_STATUS_COMPLETED,
    ENTRY_STATUS_DECLINED,
    ENTRY_TYPE_CREDIT,
    ENTRY_TYPE_DEBIT,
    LedgerEntry,
    LedgerImmutableError,
)
from app.modules.allowance.services.account_store import AccountStore
from app.modules.allowance.services.ledger_service import Ledger, ReplayBalance
from app.modules.allowance.utils.config import Settings


def test_append_rejects_mismatched_balances(make_family, db):
    family = make_family()
    ledger = Ledger(db)

    with pytest.raises(ValueError):
        ledger.Append(family.ChildAccountId, ENTRY_TYPE_CREDIT, ENTRY_STATUS_COMPLETED, Decimal("5"), Decimal("0"), Decimal("4"))
    with pytest.raises(ValueError):
        ledger.Append(family.ChildAccountId, ENTRY_TYPE_DEBIT, ENTRY_STATUS_COMPLETED, Decimal("5"), Decimal("10"), Decimal("10"))
    with pytest.raises(ValueError):
        ledger.Append(
            family.ChildAccountId,
            ENTRY_TYPE_DEBIT,
            ENTRY_STATUS_DECLINED,
            Decimal("5"),
            Decimal("10"),
            Decimal("5"),
            decline_reason="InsufficientFunds",
        )


def test_append_requires_positive_amount_and_decline_reason(make_family, db):
    family = make_family()
    ledger = Ledger(db)

    with pytest.raises(ValueError):
        ledger.Append(family.ChildAccountId, ENTRY_TYPE_CREDIT, ENTRY_STATUS_COMPLETED, Decimal("0"), Decimal("0"), Decimal("0"))
    with pytest.raises(ValueError):
        ledger.Append(family.ChildAccountId, ENTRY_TYPE_DEBIT, ENTRY_STATUS_DECLINED, Decimal("5"), Decimal("1"), Decimal("1"))
    with pytest.raises(ValueError):
        ledger.Append(family.ChildAccountId, "Refund", ENTRY_STATUS_COMPLETED, Decimal("5"), Decimal("0"), Decimal("5"))


def test_entries_cannot_be_updated_or_deleted(make_family, transaction_engine, session_factory):
    family = make_family(balance="10.00")

    session = session_factory()
    entry = Ledger(session).ListForAccount(family.ChildAccountId)[0]
    entry_id = entry.Id
    entry.Amount = Decimal("99.00")
    with pytest.raises(LedgerImmutableError):
        session.flush()
    session.rollback()

    entry = Ledger(session).Get(entry_id)
    session.delete(entry)
    with pytest.raises(LedgerImmutableError):
        session.flush()
    session.rollback()
    session.close()

    session = session_factory()
    stored = Ledger(session).Get(entry_id)
    assert stored.Amount == Decimal("10.00")
    session.close()


def test_bulk_update_and_delete_of_entries_are_refused(make_family, session_factory):
    family = make_family(balance="10.00")

    session = session_factory()
    with pytest.raises(LedgerImmutableError):
        session.query(LedgerEntry).filter(LedgerEntry.AccountId == family.ChildAccountId).update(
            {"Amount": Decimal("999.00")}
        )
    session.rollback()
    with pytest.raises(LedgerImmutableError):
        session.execute(update(LedgerEntry).values(Description="rewritten"))
    session.rollback()
    with pytest.raises(LedgerImmutableError):
        session.execute(delete(LedgerEntry).where(LedgerEntry.AccountId == family.ChildAccountId))
    session.rollback()
    session.close()

    session = session_factory()
    entries = Ledger(session).ListForAccount(family.ChildAccountId)
    assert [entry.Amount for entry in entries] == [Decimal("10.00")]
    assert entries[0].Description is None
    session.close()


def test_get_unknown_entry_raises_not_found(db):
    with pytest.raises(LedgerEntryNotFound):
        Ledger(db).Get(12345)


def test_read_page_is_restartable_from_cursor(make_family, transaction_engine, db):
    family = make_family()
    for amount in ["1.00", "2.00", "3.00", "4.00", "5.00"]:
        transaction_engine.Fund(family.ChildAccountId, amount)
    ledger = Ledger(db)

    first = ledger.ReadPage(family.ChildAccountId, limit=2)
    second = ledger.ReadPage(family.ChildAccountId, after_id=first.NextAfterId, limit=2)
    third = ledger.ReadPage(family.ChildAccountId, after_id=second.NextAfterId, limit=2)

    assert [entry.Amount for entry in first.Entries] == [Decimal("1.00"), Decimal("2.00")]
    assert [entry.Amount for entry in second.Entries] == [Decimal("3.00"), Decimal("4.00")]
    assert [entry.Amount for entry in third.Entries] == [Decimal("5.00")]
    assert third.NextAfterId is None

    again = ledger.ReadPage(family.ChildAccountId, after_id=first.NextAfterId, limit=2)
    assert [entry.Id for entry in again.Entries] == [entry.Id for entry in second.Entries]


def test_iter_for_account_walks_every_page(make_family, transaction_engine, db):
    family = make_family()
    for _ in range(7):
        transaction_engine.Fund(family.ChildAccountId, "1.00")

    entries = list(Ledger(db).IterForAccount(family.ChildAccountId, page_size=3))

    assert len(entries) == 7
    assert [entry.Id for entry in entries] == sorted(entry.Id for entry in entries)
    assert ReplayBalance(entries) == Decimal("7.00")


def test_iter_for_account_defaults_to_configured_page_size(make_family, transaction_engine, db, monkeypatch):
    family = make_family()
    for _ in range(5):
        transaction_engine.Fund(family.ChildAccountId, "1.00")
    monkeypatch.setattr(Settings, "LedgerMaxPageSize", 2)
    ledger = Ledger(db)
    limits = []
    read_page = ledger.ReadPage

    def _RecordingReadPage(account_id, after_id=None, limit=None):
        limits.append(limit)
        return read_page(account_id, after_id=after_id, limit=limit)

    monkeypatch.setattr(ledger, "ReadPage", _RecordingReadPage)

    entries = list(ledger.IterForAccount(family.ChildAccountId))

    assert len(entries) == 5
    assert limits == [2, 2, 2]


def test_ledger_pages_are_scoped_to_one_account(make_family, transaction_engine, db):
    first = make_family(balance="3.00")
    second = make_family(balance="4.00")

    page = Ledger(db).ReadPage(first.ChildAccountId)

    assert [entry.AccountId for entry in page.Entries] == [first.ChildAccountId]
    assert page.Entries[0].Amount == Decimal("3.00")
    assert second.ChildAccountId != first.ChildAccountId


def test_verify_account_detects_balance_drift(make_family, transaction_engine, session_factory):
    family = make_family(balance="20.00", spending_limit="50.00")
    transaction_engine.Purchase(family.ChildAccountId, "5.00")

    session = session_factory()
    account = AccountStore(session).Get(family.ChildAccountId)
    clean = Ledger(session).VerifyAccount(account)
    assert clean.IsConsistent is True
    assert clean.StoredBalance == clean.ReplayedBalance == Decimal("15.00")
    assert clean.EntryCount == 2

    # Bypass the engine to simulate a corrupted balance column.
    account.Balance = Decimal("99.00")
    session.commit()
    drifted = Ledger(session).VerifyAccount(AccountStore(session).Get(family.ChildAccountId))
    session.close()

    assert drifted.IsConsistent is False
    assert drifted.StoredBalance == Decimal("99.00")
    assert drifted.ReplayedBalance == Decimal("15.00")
    assert drifted.FirstInconsistentEntryId is None


def test_verify_account_points_at_first_broken_entry(make_family, db):
    family = make_family()
    db.add(
        LedgerEntry(
            AccountId=family.ChildAccountId,
            EntryType=ENTRY_TYPE_CREDIT,
            Status=ENTRY_STATUS_COMPLETED,
            Amount=Decimal("5.00"),
            BalanceBefore=Decimal("2.00"),
            BalanceAfter=Decimal("7.00"),
        )
    )
    db.commit()
    account = AccountStore(db).Get(family.ChildAccountId)

    result = Ledger(db).VerifyAccount(account)

    assert result.IsConsistent is False
    assert result.FirstInconsistentEntryId is not None
