import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db import GetDb
from app.modules.allowance.errors import AccountNotFound
from app.modules.allowance.models import ACCOUNT_KIND_PARENT
from app.modules.allowance.services.account_store import AccountStore
from app.modules.auth.deps import RequireAuthenticated, UserContext
from app.modules.auth.models import ROLE_PARENT, User
from app.modules.auth.schemas import (
    LoginRequest,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
    UpdateProfileRequest,
    UserOut,
)
from app.modules.auth.service import (
    BuildAvatar,
    CreateAccessToken,
    EnsureEmailAvailable,
    EnsurePasswordLength,
    HashPassword,
    NormalizeEmail,
    VerifyPassword,
)

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger("app.auth")


def _BuildUserOut(user: User, account_id: int | None) -> UserOut:
    return UserOut(
        Id=user.Id,
        Username=user.Username,
        Email=user.Email,
        Role=user.Role,
        AccountId=account_id,
        ParentUserId=user.ParentUserId,
        CreatedAt=user.CreatedAt,
    )


@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
def Register(payload: RegisterRequest, db: Session = Depends(GetDb)) -> RegisterResponse:
    username = payload.Username.strip()
    email = NormalizeEmail(payload.Email)
    if not username:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username required")
    if not email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email required")

    EnsureEmailAvailable(db, email)
    EnsurePasswordLength(payload.Password)

    record = User(
        Username=username,
        Email=email,
        PasswordHash=HashPassword(payload.Password),
        Role=ROLE_PARENT,
        Avatar=BuildAvatar(username),
    )
    db.add(record)
    try:
        db.flush()
        account = AccountStore(db).Create(ACCOUNT_KIND_PARENT, record.Id)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already in use")
    db.refresh(record)

    logger.info("parent registered", extra={"user_id": record.Id, "account_id": account.Id})
    return RegisterResponse(
        Message="Parent registered successfully",
        User=_BuildUserOut(record, account.Id),
    )


@router.post("/login", response_model=TokenResponse)
def Login(payload: LoginRequest, db: Session = Depends(GetDb)) -> TokenResponse:
    email = NormalizeEmail(payload.Email)
    user = db.query(User).filter(User.Email == email).first()
    if not user or not VerifyPassword(payload.Password, user.PasswordHash):
        logger.info("login rejected", extra={"email": email})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

    try:
        account = AccountStore(db).GetByUserId(user.Id)
    except AccountNotFound:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

    access_token, expires_in = CreateAccessToken(user.Id, user.Username, user.Role, account.Id)
    return TokenResponse(
        AccessToken=access_token,
        ExpiresIn=expires_in,
        UserId=user.Id,
        AccountId=account.Id,
        Username=user.Username,
        Role=user.Role,
        ParentUserId=user.ParentUserId,
    )


@router.get("/me", response_model=UserOut)
def GetProfile(
    user: UserContext = Depends(RequireAuthenticated),
    db: Session = Depends(GetDb),
) -> UserOut:
    record = db.query(User).filter(User.Id == user.Id).first()
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return _BuildUserOut(record, user.AccountId)


@router.patch("/me", response_model=UserOut)
def UpdateProfile(
    payload: UpdateProfileRequest,
    user: UserContext = Depends(RequireAuthenticated),
    db: Session = Depends(GetDb),
) -> UserOut:
    record = db.query(User).filter(User.Id == user.Id).first()
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    if payload.Username is not None:
        username = payload.Username.strip()
        if not username:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username required")
        record.Username = username
    if payload.Email is not None:
        email = NormalizeEmail(payload.Email)
        if not email:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email required")
        EnsureEmailAvailable(db, email, exclude_user_id=record.Id)
        record.Email = email

    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already in use")
    db.refresh(record)
    return _BuildUserOut(record, user.AccountId)
