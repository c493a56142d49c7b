from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from app.db import Base

ROLE_PARENT = "Parent"
ROLE_CHILD = "Child"


class User(Base):
    __tablename__ = "users"

    Id = Column(Integer, primary_key=True, index=True)
    Username = Column(String(120), nullable=False)
    Email = Column(String(254), nullable=False, unique=True, index=True)
    PasswordHash = Column(String(255), nullable=False)
    Role = Column(String(20), nullable=False, default=ROLE_PARENT)
    ParentUserId = Column(Integer, ForeignKey("users.Id"), index=True)
    Age = Column(Integer)
    Avatar = Column(String(8))
    CreatedAt = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
