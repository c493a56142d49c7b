import os
from decimal import Decimal
from types import SimpleNamespace


def _set_test_env() -> None:
    defaults = {
        "JWT_SECRET_KEY": "test-secret-key-with-enough-length-for-hs256",
        "JWT_ACCESS_TTL_MINUTES": "30",
        "AUTH_PASSWORD_MIN_LENGTH": "8",
        "ALLOWANCE_MAX_ATTEMPTS": "3",
        "ALLOWANCE_LEDGER_PAGE_SIZE": "50",
        "ALLOWANCE_LEDGER_MAX_PAGE_SIZE": "200",
        "LOG_LEVEL": "WARNING",
    }
    for key, value in defaults.items():
        os.environ.setdefault(key, value)


_set_test_env()

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from app.db import Base  # noqa: E402
from app.modules.allowance.models import ACCOUNT_KIND_CHILD, ACCOUNT_KIND_PARENT  # noqa: E402
from app.modules.allowance.services.account_store import AccountStore  # noqa: E402
from app.modules.allowance.services.transaction_engine import TransactionEngine  # noqa: E402
from app.modules.auth.models import ROLE_CHILD, ROLE_PARENT, User  # noqa: E402


@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'allowance.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def transaction_engine(session_factory):
    return TransactionEngine(session_factory, max_attempts=3)


@pytest.fixture
def make_family(session_factory, transaction_engine):
    counter = {"value": 0}

    def _make(balance="0.00", spending_limit="100.00", active=True):
        counter["value"] += 1
        suffix = counter["value"]
        session = session_factory()
        try:
            parent = User(
                Username=f"parent{suffix}",
                Email=f"parent{suffix}@example.com",
                PasswordHash="not-a-real-hash",
                Role=ROLE_PARENT,
            )
            session.add(parent)
            session.flush()
            store = AccountStore(session)
            parent_account = store.Create(ACCOUNT_KIND_PARENT, parent.Id)

            child = User(
                Username=f"child{suffix}",
                Email=f"child{suffix}@example.com",
                PasswordHash="not-a-real-hash",
                Role=ROLE_CHILD,
                ParentUserId=parent.Id,
            )
            session.add(child)
            session.flush()
            child_account = store.Create(
                ACCOUNT_KIND_CHILD,
                child.Id,
                owner_account_id=parent_account.Id,
                spending_limit=Decimal(spending_limit),
            )
            session.commit()
            family = SimpleNamespace(
                ParentUserId=parent.Id,
                ParentAccountId=parent_account.Id,
                ChildUserId=child.Id,
                ChildAccountId=child_account.Id,
            )
        finally:
            session.close()

        if Decimal(balance) > 0:
            transaction_engine.Fund(family.ChildAccountId, balance, actor_user_id=family.ParentUserId)
        if not active:
            transaction_engine.SetActive(family.ChildAccountId, False)
        return family

    return _make
