from datetime import datetime

from pydantic import BaseModel, Field


class TokenResponse(BaseModel):
    AccessToken: str
    TokenType: str = "bearer"
    ExpiresIn: int
    UserId: int
    AccountId: int
    Username: str
    Role: str
    ParentUserId: int | None = None


class LoginRequest(BaseModel):
    Email: str = Field(..., max_length=254)
    Password: str = Field(..., max_length=200)


class RegisterRequest(BaseModel):
    Username: str = Field(..., max_length=120)
    Email: str = Field(..., max_length=254)
    Password: str = Field(..., max_length=200)


class UserOut(BaseModel):
    Id: int
    Username: str
    Email: str
    Role: str
    AccountId: int | None = None
    ParentUserId: int | None = None
    CreatedAt: datetime


class RegisterResponse(BaseModel):
    Message: str
    User: UserOut


class UpdateProfileRequest(BaseModel):
    Username: str | None = Field(default=None, max_length=120)
    Email: str | None = Field(default=None, max_length=254)
