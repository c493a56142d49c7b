from datetime import timedelta

import jwt
from fastapi import HTTPException, status
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from app.modules.auth.deps import NowUtc, _require_env
from app.modules.auth.models import User

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def HashPassword(password: str) -> str:
    return pwd_context.hash(password)


def VerifyPassword(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def CreateAccessToken(user_id: int, username: str, role: str, account_id: int) -> tuple[str, int]:
    secret = _require_env("JWT_SECRET_KEY")
    ttl_minutes = int(_require_env("JWT_ACCESS_TTL_MINUTES"))
    now = NowUtc()
    expires = now + timedelta(minutes=ttl_minutes)
    payload = {
        "sub": str(user_id),
        "username": username,
        "role": role,
        "account_id": account_id,
        "iat": int(now.timestamp()),
        "exp": int(expires.timestamp()),
    }
    token = jwt.encode(payload, secret, algorithm="HS256")
    return token, ttl_minutes * 60


def PasswordMinLength() -> int:
    return int(_require_env("AUTH_PASSWORD_MIN_LENGTH"))


def NormalizeEmail(value: str | None) -> str:
    return (value or "").strip().lower()


def BuildAvatar(name: str) -> str:
    stripped = (name or "").strip()
    return stripped[:1].upper() if stripped else "?"


def EnsurePasswordLength(password: str) -> None:
    min_length = PasswordMinLength()
    if len(password) < min_length:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Password must be at least {min_length} characters",
        )


def EnsureEmailAvailable(db: Session, email: str, exclude_user_id: int | None = None) -> None:
    query = db.query(User).filter(User.Email == email)
    if exclude_user_id is not None:
        query = query.filter(User.Id != exclude_user_id)
    if query.first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already in use")
