import logging
from threading import Lock

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError, ProgrammingError
from sqlalchemy.orm import Session

from app.core.migrations import RunMigrations
from app.db import GetDb, GetSessionFactory
from app.modules.allowance.errors import (
    AccountInactive,
    AllowanceError,
    InvalidAccountKind,
    InvalidAmount,
    NotFound,
    PurchaseRejected,
    TransientFailure,
)
from app.modules.allowance.models import ACCOUNT_KIND_CHILD, Account, LedgerEntry
from app.modules.allowance.schemas import (
    AccountOut,
    ActiveUpdate,
    ChildAccountOut,
    ChildCreate,
    ChildUpdate,
    FundRequest,
    LedgerEntryOut,
    LedgerPageOut,
    LedgerVerificationOut,
    MessageOut,
    PurchaseRequest,
    SpendingLimitUpdate,
    TransactionOut,
)
from app.modules.allowance.services.account_store import AccountStore
from app.modules.allowance.services.ledger_service import Ledger
from app.modules.allowance.services.transaction_engine import (
    AccountSnapshot,
    LedgerEntrySnapshot,
    TransactionEngine,
    TransactionOutcome,
)
from app.modules.allowance.utils.config import Settings
from app.modules.allowance.utils.money import ParseMoney, ToMoney
from app.modules.allowance.utils.rbac import LoadOwnedChild, RequireChild, RequireParent
from app.modules.auth.deps import RequireAuthenticated, UserContext
from app.modules.auth.models import ROLE_CHILD, User
from app.modules.auth.service import (
    BuildAvatar,
    EnsureEmailAvailable,
    EnsurePasswordLength,
    HashPassword,
    NormalizeEmail,
)

_allowance_storage_lock = Lock()
_allowance_storage_ready = False
_engine_lock = Lock()
_transaction_engine: TransactionEngine | None = None
logger = logging.getLogger("app.allowance")

_ALLOWANCE_TABLES = [User, Account, LedgerEntry]


def _handle_db_error(exc: Exception) -> None:
    logger.exception("allowance database error")
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Allowance storage not initialized. Run alembic upgrade head.",
    ) from exc


def _MissingTables(db: Session) -> list[str]:
    inspector = inspect(db.get_bind())
    return [
        table.__tablename__
        for table in _ALLOWANCE_TABLES
        if not inspector.has_table(table.__tablename__)
    ]


def EnsureAllowanceStorageReady(db: Session = Depends(GetDb)) -> None:
    global _allowance_storage_ready
    if _allowance_storage_ready:
        return

    with _allowance_storage_lock:
        if _allowance_storage_ready:
            return
        missing = _MissingTables(db)
        if not missing:
            _allowance_storage_ready = True
            return

        logger.info("allowance storage missing tables=%s", ",".join(missing))
        try:
            RunMigrations()
        except Exception:
            logger.exception("allowance storage migration failed")

        missing = _MissingTables(db)
        if missing:
            logger.error("allowance storage still missing tables=%s", ",".join(missing))
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Allowance storage migration failed. Check server logs.",
            )
        _allowance_storage_ready = True


def GetTransactionEngine() -> TransactionEngine:
    global _transaction_engine
    if _transaction_engine is None:
        with _engine_lock:
            if _transaction_engine is None:
                _transaction_engine = TransactionEngine(GetSessionFactory())
    return _transaction_engine


router = APIRouter(
    prefix="/api/allowance",
    tags=["allowance"],
    dependencies=[Depends(EnsureAllowanceStorageReady)],
)


def _RaiseForAllowanceError(exc: AllowanceError) -> None:
    if isinstance(exc, PurchaseRejected):
        status_code = (
            status.HTTP_403_FORBIDDEN if isinstance(exc, AccountInactive) else status.HTTP_400_BAD_REQUEST
        )
        raise HTTPException(
            status_code=status_code,
            detail={
                "Reason": exc.Reason,
                "Message": exc.Message,
                "DeclinedEntryId": exc.DeclinedEntryId,
                "Balance": str(exc.Balance),
            },
        ) from exc
    if isinstance(exc, NotFound):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.Message) from exc
    if isinstance(exc, (InvalidAmount, InvalidAccountKind)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.Message) from exc
    if isinstance(exc, TransientFailure):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.Message) from exc
    logger.error("unmapped allowance error reason=%s", exc.Reason)
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Unexpected error") from exc


def _BuildAccountOut(account: Account | AccountSnapshot) -> AccountOut:
    return AccountOut(
        Id=account.Id,
        UserId=account.UserId,
        Kind=account.Kind,
        Balance=ToMoney(account.Balance),
        SpendingLimit=ToMoney(account.SpendingLimit) if account.SpendingLimit is not None else None,
        IsActive=bool(account.IsActive),
        OwnerAccountId=account.OwnerAccountId,
        UpdatedAt=account.UpdatedAt,
    )


def _BuildLedgerOut(entry: LedgerEntry | LedgerEntrySnapshot) -> LedgerEntryOut:
    return LedgerEntryOut(
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


def _BuildTransactionOut(outcome: TransactionOutcome) -> TransactionOut:
    return TransactionOut(
        Account=_BuildAccountOut(outcome.Account),
        Entry=_BuildLedgerOut(outcome.Entry),
    )


def _BuildChildOut(account: Account, user: User) -> ChildAccountOut:
    return ChildAccountOut(
        AccountId=account.Id,
        UserId=user.Id,
        Name=user.Username,
        Email=user.Email,
        Age=user.Age,
        Avatar=user.Avatar,
        Balance=ToMoney(account.Balance),
        SpendingLimit=ToMoney(account.SpendingLimit),
        IsActive=bool(account.IsActive),
        CreatedAt=account.CreatedAt,
    )


def _LoadChildUser(db: Session, account: Account) -> User:
    user = db.query(User).filter(User.Id == account.UserId).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Child not found")
    return user


def _PageLimit(limit: int | None) -> int:
    if limit is None:
        return Settings.LedgerPageSize
    if limit < 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="limit must be at least 1")
    return min(limit, Settings.LedgerMaxPageSize)


def _ReadLedgerPage(db: Session, account: Account, after_id: int | None, limit: int | None) -> LedgerPageOut:
    page = Ledger(db).ReadPage(account.Id, after_id=after_id, limit=_PageLimit(limit))
    return LedgerPageOut(
        AccountId=account.Id,
        Balance=ToMoney(account.Balance),
        Entries=[_BuildLedgerOut(entry) for entry in page.Entries],
        NextAfterId=page.NextAfterId,
    )


@router.get("/children", response_model=list[ChildAccountOut])
def ListChildren(
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> list[ChildAccountOut]:
    try:
        accounts = AccountStore(db).ListChildren(user.AccountId)
        if not accounts:
            return []
        users = db.query(User).filter(User.Id.in_([account.UserId for account in accounts])).all()
        user_map = {record.Id: record for record in users}
        return [
            _BuildChildOut(account, user_map[account.UserId])
            for account in accounts
            if account.UserId in user_map
        ]
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.post("/children", response_model=ChildAccountOut, status_code=status.HTTP_201_CREATED)
def CreateChild(
    payload: ChildCreate,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> ChildAccountOut:
    name = payload.Name.strip()
    email = NormalizeEmail(payload.Email)
    if not name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Name required")
    try:
        spending_limit = ParseMoney(payload.SpendingLimit, field="SpendingLimit", allow_zero=True)
    except AllowanceError as exc:
        _RaiseForAllowanceError(exc)

    try:
        EnsureEmailAvailable(db, email)
        EnsurePasswordLength(payload.Password)
        child_user = User(
            Username=name,
            Email=email,
            PasswordHash=HashPassword(payload.Password),
            Role=ROLE_CHILD,
            ParentUserId=user.Id,
            Age=payload.Age,
            Avatar=BuildAvatar(name),
        )
        db.add(child_user)
        db.flush()
        account = AccountStore(db).Create(
            ACCOUNT_KIND_CHILD,
            child_user.Id,
            owner_account_id=user.AccountId,
            spending_limit=spending_limit,
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already in use")
    except AllowanceError as exc:
        db.rollback()
        _RaiseForAllowanceError(exc)
    except ProgrammingError as exc:
        db.rollback()
        _handle_db_error(exc)

    db.refresh(child_user)
    db.refresh(account)
    logger.info(
        "child created",
        extra={"parent_user_id": user.Id, "child_user_id": child_user.Id, "account_id": account.Id},
    )
    return _BuildChildOut(account, child_user)


@router.get("/children/{account_id}", response_model=ChildAccountOut)
def GetChild(
    account_id: int,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> ChildAccountOut:
    try:
        account = LoadOwnedChild(db, user, account_id)
        return _BuildChildOut(account, _LoadChildUser(db, account))
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.patch("/children/{account_id}", response_model=ChildAccountOut)
def UpdateChild(
    account_id: int,
    payload: ChildUpdate,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> ChildAccountOut:
    try:
        account = LoadOwnedChild(db, user, account_id)
        child_user = _LoadChildUser(db, account)
        if payload.Name is not None:
            name = payload.Name.strip()
            if not name:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Name required")
            child_user.Username = name
            child_user.Avatar = BuildAvatar(name)
        if payload.Age is not None:
            child_user.Age = payload.Age
        db.add(child_user)
        db.commit()
        db.refresh(child_user)
        return _BuildChildOut(account, child_user)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.put("/children/{account_id}/spending-limit", response_model=AccountOut)
def SetSpendingLimit(
    account_id: int,
    payload: SpendingLimitUpdate,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
    engine: TransactionEngine = Depends(GetTransactionEngine),
) -> AccountOut:
    try:
        LoadOwnedChild(db, user, account_id)
    except ProgrammingError as exc:
        _handle_db_error(exc)
    try:
        snapshot = engine.SetSpendingLimit(account_id, payload.SpendingLimit)
    except AllowanceError as exc:
        _RaiseForAllowanceError(exc)
    logger.info(
        "spending limit updated",
        extra={"account_id": account_id, "spending_limit": str(snapshot.SpendingLimit), "actor_user_id": user.Id},
    )
    return _BuildAccountOut(snapshot)


@router.put("/children/{account_id}/active", response_model=MessageOut)
def SetChildActive(
    account_id: int,
    payload: ActiveUpdate,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
    engine: TransactionEngine = Depends(GetTransactionEngine),
) -> MessageOut:
    try:
        LoadOwnedChild(db, user, account_id)
    except ProgrammingError as exc:
        _handle_db_error(exc)
    try:
        snapshot = engine.SetActive(account_id, payload.IsActive)
    except AllowanceError as exc:
        _RaiseForAllowanceError(exc)
    state = "activated" if snapshot.IsActive else "deactivated"
    logger.info("child %s", state, extra={"account_id": account_id, "actor_user_id": user.Id})
    return MessageOut(Message=f"Child account {state}")


@router.delete("/children/{account_id}", response_model=MessageOut)
def DeleteChild(
    account_id: int,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> MessageOut:
    try:
        LoadOwnedChild(db, user, account_id)
        AccountStore(db).SoftDelete(account_id)
        db.commit()
    except AllowanceError as exc:
        db.rollback()
        _RaiseForAllowanceError(exc)
    except ProgrammingError as exc:
        db.rollback()
        _handle_db_error(exc)
    logger.info("child deleted", extra={"account_id": account_id, "actor_user_id": user.Id})
    return MessageOut(Message="Child account deleted")


@router.post("/children/{account_id}/fund", response_model=TransactionOut, status_code=status.HTTP_201_CREATED)
def FundChild(
    account_id: int,
    payload: FundRequest,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
    engine: TransactionEngine = Depends(GetTransactionEngine),
) -> TransactionOut:
    try:
        LoadOwnedChild(db, user, account_id)
    except ProgrammingError as exc:
        _handle_db_error(exc)
    try:
        outcome = engine.Fund(account_id, payload.Amount, note=payload.Note, actor_user_id=user.Id)
    except AllowanceError as exc:
        _RaiseForAllowanceError(exc)
    return _BuildTransactionOut(outcome)


@router.get("/children/{account_id}/ledger", response_model=LedgerPageOut)
def GetChildLedger(
    account_id: int,
    after_id: int | None = None,
    limit: int | None = None,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> LedgerPageOut:
    try:
        account = LoadOwnedChild(db, user, account_id)
        return _ReadLedgerPage(db, account, after_id, limit)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.get("/children/{account_id}/ledger/verify", response_model=LedgerVerificationOut)
def VerifyChildLedger(
    account_id: int,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireParent()),
) -> LedgerVerificationOut:
    try:
        account = LoadOwnedChild(db, user, account_id)
        result = Ledger(db).VerifyAccount(account)
    except ProgrammingError as exc:
        _handle_db_error(exc)
    if not result.IsConsistent:
        logger.warning(
            "ledger drift detected",
            extra={
                "account_id": account_id,
                "stored_balance": str(result.StoredBalance),
                "replayed_balance": str(result.ReplayedBalance),
                "first_inconsistent_entry_id": result.FirstInconsistentEntryId,
            },
        )
    return LedgerVerificationOut(
        AccountId=result.AccountId,
        StoredBalance=result.StoredBalance,
        ReplayedBalance=result.ReplayedBalance,
        EntryCount=result.EntryCount,
        IsConsistent=result.IsConsistent,
        FirstInconsistentEntryId=result.FirstInconsistentEntryId,
    )


@router.get("/me", response_model=AccountOut)
def GetOwnAccount(
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireAuthenticated),
) -> AccountOut:
    try:
        return _BuildAccountOut(AccountStore(db).Get(user.AccountId))
    except AllowanceError as exc:
        _RaiseForAllowanceError(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.get("/me/ledger", response_model=LedgerPageOut)
def GetOwnLedger(
    after_id: int | None = None,
    limit: int | None = None,
    db: Session = Depends(GetDb),
    user: UserContext = Depends(RequireAuthenticated),
) -> LedgerPageOut:
    try:
        account = AccountStore(db).Get(user.AccountId)
        return _ReadLedgerPage(db, account, after_id, limit)
    except AllowanceError as exc:
        _RaiseForAllowanceError(exc)
    except ProgrammingError as exc:
        _handle_db_error(exc)


@router.post("/me/purchases", response_model=TransactionOut, status_code=status.HTTP_201_CREATED)
def CreatePurchase(
    payload: PurchaseRequest,
    user: UserContext = Depends(RequireChild()),
    engine: TransactionEngine = Depends(GetTransactionEngine),
) -> TransactionOut:
    try:
        outcome = engine.Purchase(
            user.AccountId,
            payload.Amount,
            description=payload.Description,
            product_name=payload.ProductName,
            actor_user_id=user.Id,
        )
    except AllowanceError as exc:
        _RaiseForAllowanceError(exc)
    return _BuildTransactionOut(outcome)
